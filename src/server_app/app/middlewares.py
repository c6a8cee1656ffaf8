"""
Middlewares and middleware chains.

Two chains are assembled here, each made of named slots in a fixed order:

- the initial chain runs before the routes:
  helmet -> force_https -> cors -> logger -> json -> urlencoded
- the final chain runs after the routes:
  not_found -> validation_errors -> errors

Every slot can be overridden with another middleware or disabled with ``False``.
Overrides of the validation_errors and errors slots are called as error steps,
``step(ctx, error)``, whether or not they carry the error_handler marker.
Default middlewares are only built for slots that are neither overridden nor disabled,
so building the chain has no side effect for a slot that is not used (for instance the
production CORS warning).
"""

import functools
import json
import logging
from time import time
from typing import Any, Callable, Dict, Final, List, Mapping, NamedTuple, Optional

import sentry_sdk
from aiohttp import web
from ulid import ULID

from server_app.app.chain import (
    NEXT,
    Outcome,
    RequestContext,
    error_handler,
    is_error_handler,
    fail,
    respond,
)
from server_app.app.config import (
    REQUEST_BODY_KEY,
    REQUEST_ID_KEY,
    REQUEST_LOG_KEY,
    Settings,
)
from server_app.app.cors import enable_cors
from server_app.app.errors import (
    is_validation_error,
    normalize_error,
    not_found_error,
    render,
)
from server_app.app.log import serialize_error, serialize_request, serialize_response

logger = logging.getLogger(__name__)

http_logger = logging.getLogger("server_app.http")

DEFAULT_BODY_LIMIT = 100 * 1024

HELMET_HEADERS: Final[Dict[str, str]] = {
    "Content-Security-Policy": (
        "default-src 'self';base-uri 'self';block-all-mixed-content;"
        "font-src 'self' https: data:;frame-ancestors 'self';img-src 'self' data:;"
        "object-src 'none';script-src 'self';script-src-attr 'none';"
        "style-src 'self' https: 'unsafe-inline';upgrade-insecure-requests"
    ),
    "X-DNS-Prefetch-Control": "off",
    "Expect-CT": "max-age=0",
    "X-Frame-Options": "SAMEORIGIN",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-Download-Options": "noopen",
    "X-Content-Type-Options": "nosniff",
    "X-Permitted-Cross-Domain-Policies": "none",
    "Referrer-Policy": "no-referrer",
    "X-XSS-Protection": "0",
}


def helmet(headers: Optional[Mapping[str, Optional[str]]] = None):
    """
    Security headers middleware.

    ``headers`` overrides the defaults; a value of None drops the header.
    """
    security_headers = dict(HELMET_HEADERS)
    for name, value in (headers or {}).items():
        if value is None:
            security_headers.pop(name, None)
        else:
            security_headers[name] = value

    async def helmet_middleware(ctx: RequestContext) -> Outcome:
        for name, value in security_headers.items():
            ctx.set_header(name, value)
        return NEXT

    return helmet_middleware


def force_https(port: int = 443, *, settings: Optional[Settings] = None):
    """
    Redirect plain HTTP requests to HTTPS in production.

    The redirect target is built from the Host header as sent by the client. The
    header is not validated, so the application must sit behind a proxy or load
    balancer that only forwards known hosts. Behind a proxy, Application.trust_proxy
    is needed for secure requests to be recognised.
    """
    settings = settings or Settings()  # type: ignore
    hostname_port = f":{port}" if port != 443 else ""

    async def force_https_middleware(ctx: RequestContext) -> Outcome:
        request = ctx.request
        if not settings.is_production or request.secure:
            return NEXT

        host = request.headers.get("Host", request.host)
        location = f"https://{host}{hostname_port}{request.rel_url}"
        return respond(web.Response(status=301, headers={"Location": location}))

    return force_https_middleware


def _log_completed(
    log: logging.Logger, ctx: RequestContext, response: Optional[web.StreamResponse]
) -> None:
    status = response.status if response is not None else 500
    payload: Dict[str, Any] = {
        "req": serialize_request(ctx.request),
        # The response is not prepared yet: pending headers are still on the context.
        "res": serialize_response(response, pending_headers=ctx.headers),
        "responseTime": round((time() - ctx.started_at) * 1000),
    }

    error = ctx.rendered_error or ctx.error
    if error is not None:
        payload["err"] = serialize_error(error, status)

    if status >= 500:
        log.error("request errored", extra=payload)
    elif status >= 400:
        log.warning("request completed", extra=payload)
    else:
        log.info("request completed", extra=payload)


def request_logger(log: Optional[logging.Logger] = None):
    """
    Request logging middleware.

    Assigns a request id, exposes a request scoped logger as ``request["log"]`` and
    logs every completed request.
    """
    log = log or http_logger

    async def logger_middleware(ctx: RequestContext) -> Outcome:
        request = ctx.request
        request_id = request.get(REQUEST_ID_KEY) or str(ULID())
        request[REQUEST_ID_KEY] = request_id
        request[REQUEST_LOG_KEY] = logging.LoggerAdapter(log, {"req_id": request_id})
        ctx.on_finish(functools.partial(_log_completed, log))
        return NEXT

    return logger_middleware


async def _read_body(request: web.Request, limit: int) -> bytes:
    if request.content_length is not None and request.content_length > limit:
        raise web.HTTPRequestEntityTooLarge(
            max_size=limit, actual_size=request.content_length
        )
    raw = await request.read()
    if len(raw) > limit:
        raise web.HTTPRequestEntityTooLarge(max_size=limit, actual_size=len(raw))
    return raw


def json_body(limit: int = DEFAULT_BODY_LIMIT):
    """Parse ``application/json`` request bodies into ``request["body"]``."""

    async def json_middleware(ctx: RequestContext) -> Outcome:
        request = ctx.request
        request.setdefault(REQUEST_BODY_KEY, {})
        if not request.body_exists or request.content_type != "application/json":
            return NEXT

        raw = await _read_body(request, limit)
        if not raw.strip():
            return NEXT
        try:
            request[REQUEST_BODY_KEY] = json.loads(raw)
        except ValueError:
            return fail(web.HTTPBadRequest(text="Malformed JSON body"))
        return NEXT

    return json_middleware


def urlencoded_body(limit: int = DEFAULT_BODY_LIMIT):
    """
    Parse ``application/x-www-form-urlencoded`` request bodies into ``request["body"]``.

    Repeated keys are collected into lists.
    """

    async def urlencoded_middleware(ctx: RequestContext) -> Outcome:
        request = ctx.request
        request.setdefault(REQUEST_BODY_KEY, {})
        if (
            not request.body_exists
            or request.content_type != "application/x-www-form-urlencoded"
        ):
            return NEXT

        await _read_body(request, limit)
        try:
            form = await request.post()
        except ValueError:
            return fail(web.HTTPBadRequest(text="Malformed form body"))
        body: Dict[str, Any] = {}
        for key in form.keys():
            if key in body:
                continue
            values = form.getall(key)
            body[key] = values[0] if len(values) == 1 else list(values)
        request[REQUEST_BODY_KEY] = body
        return NEXT

    return urlencoded_middleware


def handle_404(ctx: RequestContext) -> Outcome:
    return fail(not_found_error())


@error_handler
def handle_validation_errors(ctx: RequestContext, error: BaseException) -> Outcome:
    """Turn schema validation failures into 422 errors, pass anything else on."""
    if is_validation_error(error):
        return fail(normalize_error(error))
    return fail(error)


@error_handler
def handle_errors(ctx: RequestContext, error: BaseException) -> Outcome:
    outcome = render(error, ctx)
    if ctx.rendered_error is not None and ctx.rendered_error.is_server:
        sentry_sdk.capture_exception(ctx.rendered_error.original or ctx.rendered_error)
    return outcome


class Slot(NamedTuple):
    name: str
    factory: Callable[[Settings, logging.Logger], Any]
    handles_errors: bool = False


def _as_error_step(step):
    """Mark an override of an error slot so it is called with ``(ctx, error)``."""
    if is_error_handler(step):
        return step

    @error_handler
    @functools.wraps(step)
    def error_step(ctx: RequestContext, error: BaseException):
        return step(ctx, error)

    return error_step


INITIAL_SLOTS: Final = (
    Slot("helmet", lambda settings, log: helmet()),
    Slot("force_https", lambda settings, log: force_https(settings=settings)),
    Slot("cors", lambda settings, log: enable_cors(settings, log=log)),
    Slot("logger", lambda settings, log: request_logger(log=log)),
    Slot("json", lambda settings, log: json_body()),
    Slot("urlencoded", lambda settings, log: urlencoded_body()),
)

FINAL_SLOTS: Final = (
    Slot("not_found", lambda settings, log: handle_404),
    Slot("validation_errors", lambda settings, log: handle_validation_errors, True),
    Slot("errors", lambda settings, log: handle_errors, True),
)


def compose(
    slots,
    options: Optional[Mapping[str, Any]],
    settings: Settings,
    log: logging.Logger,
) -> List[Any]:
    options = dict(options or {})
    unknown = set(options) - {slot.name for slot in slots}
    if unknown:
        raise ValueError(f"Unknown middleware slots: {sorted(unknown)}")
    invalid = [
        name for name, value in options.items()
        if value is not None and value is not False and not callable(value)
    ]
    if invalid:
        raise ValueError(f"Middleware overrides must be callable: {sorted(invalid)}")

    chain = []
    for slot in slots:
        override = options.get(slot.name)
        if override is False:
            continue
        if override is None:
            chain.append(slot.factory(settings, log))
        elif slot.handles_errors:
            chain.append(_as_error_step(override))
        else:
            chain.append(override)
    return chain


def build_initial_chain(
    options: Optional[Mapping[str, Any]] = None,
    *,
    settings: Optional[Settings] = None,
    log: Optional[logging.Logger] = None,
) -> List[Any]:
    return compose(
        INITIAL_SLOTS,
        options,
        settings or Settings(),  # type: ignore
        log or http_logger,
    )


def build_final_chain(
    options: Optional[Mapping[str, Any]] = None,
    *,
    settings: Optional[Settings] = None,
    log: Optional[logging.Logger] = None,
) -> List[Any]:
    return compose(
        FINAL_SLOTS,
        options,
        settings or Settings(),  # type: ignore
        log or http_logger,
    )

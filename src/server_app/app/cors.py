import logging
import re
from typing import Dict, Iterable, List, Optional, Pattern, Union

from aiohttp import web

from server_app.app.chain import NEXT, Outcome, RequestContext, respond
from server_app.app.config import Settings
from server_app.app.helpers import CorsOrigin, parse_cors_origin_whitelist

logger = logging.getLogger(__name__)

DEFAULT_METHODS = ("GET", "HEAD", "PUT", "PATCH", "POST", "DELETE")


def is_origin_allowed(
    origin: Optional[str],
    allowed: Union[CorsOrigin, List[Union[str, Pattern[str]]]],
) -> bool:
    if origin is None:
        return False
    if isinstance(allowed, list):
        return any(is_origin_allowed(origin, entry) for entry in allowed)
    if isinstance(allowed, str):
        return origin == allowed
    if isinstance(allowed, re.Pattern):
        return allowed.search(origin) is not None
    return bool(allowed)


def get_cors_headers(
    origin_value: Optional[str],
    allowed: CorsOrigin,
    *,
    credentials: bool = False,
    exposed_headers: Optional[Iterable[str]] = None,
) -> Dict[str, str]:
    """Return the CORS headers of a simple (non preflight) request."""
    headers: Dict[str, str] = {}

    if allowed == "*":
        headers["Access-Control-Allow-Origin"] = "*"
    elif isinstance(allowed, str):
        headers["Access-Control-Allow-Origin"] = allowed
        headers["Vary"] = "Origin"
    else:
        if is_origin_allowed(origin_value, allowed):
            headers["Access-Control-Allow-Origin"] = origin_value  # type: ignore
        headers["Vary"] = "Origin"

    if credentials:
        headers["Access-Control-Allow-Credentials"] = "true"

    if exposed_headers:
        headers["Access-Control-Expose-Headers"] = ",".join(exposed_headers)

    return headers


def get_preflight_headers(
    origin_value: Optional[str],
    allowed: CorsOrigin,
    *,
    methods: Iterable[str] = DEFAULT_METHODS,
    allowed_headers: Optional[Iterable[str]] = None,
    requested_headers: Optional[str] = None,
    credentials: bool = False,
    exposed_headers: Optional[Iterable[str]] = None,
    max_age: Optional[int] = None,
) -> Dict[str, str]:
    headers = get_cors_headers(
        origin_value,
        allowed,
        credentials=credentials,
        exposed_headers=exposed_headers,
    )
    headers["Access-Control-Allow-Methods"] = ",".join(methods)

    if allowed_headers is not None:
        headers["Access-Control-Allow-Headers"] = ",".join(allowed_headers)
    elif requested_headers:
        # Reflect what the browser asked for.
        headers["Access-Control-Allow-Headers"] = requested_headers
        headers["Vary"] = (
            f"{headers['Vary']}, Access-Control-Request-Headers"
            if "Vary" in headers
            else "Access-Control-Request-Headers"
        )

    if max_age is not None:
        headers["Access-Control-Max-Age"] = str(max_age)

    return headers


def cors(
    origin: CorsOrigin = "*",
    *,
    methods: Iterable[str] = DEFAULT_METHODS,
    allowed_headers: Optional[Iterable[str]] = None,
    exposed_headers: Optional[Iterable[str]] = None,
    credentials: bool = False,
    max_age: Optional[int] = None,
    options_success_status: int = 204,
):
    """
    CORS middleware.

    A falsy origin ("" or False) disables the CORS headers entirely. Preflight
    requests are answered directly with ``options_success_status``.
    """
    methods = tuple(methods)

    async def cors_middleware(ctx: RequestContext) -> Outcome:
        if not origin:
            return NEXT

        request = ctx.request
        origin_value = request.headers.get("Origin")

        if request.method == "OPTIONS":
            headers = get_preflight_headers(
                origin_value,
                origin,
                methods=methods,
                allowed_headers=allowed_headers,
                requested_headers=request.headers.get("Access-Control-Request-Headers"),
                credentials=credentials,
                exposed_headers=exposed_headers,
                max_age=max_age,
            )
            headers["Content-Length"] = "0"
            return respond(web.Response(status=options_success_status, headers=headers))

        for name, value in get_cors_headers(
            origin_value,
            origin,
            credentials=credentials,
            exposed_headers=exposed_headers,
        ).items():
            ctx.set_header(name, value)
        return NEXT

    return cors_middleware


def enable_cors(
    settings: Optional[Settings] = None,
    *,
    log: Optional[logging.Logger] = None,
    **options,
):
    """
    Build the CORS middleware from the CORS_ORIGIN_WHITELIST setting.

    In production an unset whitelist logs a warning, once per call.
    """
    settings = settings or Settings()  # type: ignore
    log = log or logger

    whitelist = settings.cors_origin_whitelist
    if settings.is_production and whitelist is None:
        log.warning("CORS requests are allowed from all origins")

    return cors(parse_cors_origin_whitelist(whitelist), **options)

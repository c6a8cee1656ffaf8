"""
Request Pipeline Executor

Middlewares in this package are plain callables ("steps") that receive the
per-request RequestContext and return an Outcome:

- NEXT: hand over to the next step
- respond(response): stop and send the response
- fail(error): skip regular steps and hand the error to the next error step

Error steps are marked with the error_handler decorator and are called as
``step(ctx, error)``. They only run while an error is pending, and regular
steps only run while none is. An error step returning NEXT clears the error.

run_chain walks the steps once, in order, so no step is ever invoked twice for
the same request. Anything a step raises is converted into fail(error), which
gives synchronous and asynchronous failures the same path to the error steps.
"""

import enum
import inspect
import logging
from dataclasses import dataclass, field
from time import time
from typing import (
    Any,
    Awaitable,
    Callable,
    List,
    Optional,
    Sequence,
)

from aiohttp import web
from multidict import CIMultiDict

from server_app.app.config import CONTEXT_KEY

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]
FinishCallback = Callable[["RequestContext", Optional[web.StreamResponse]], None]


class Signal(enum.Enum):
    NEXT = "next"
    RESPOND = "respond"
    FAIL = "fail"


@dataclass(frozen=True)
class Outcome:
    signal: Signal
    response: Optional[web.StreamResponse] = None
    error: Optional[BaseException] = None


NEXT: Outcome = Outcome(Signal.NEXT)


def respond(response: web.StreamResponse) -> Outcome:
    return Outcome(Signal.RESPOND, response=response)


def fail(error: BaseException) -> Outcome:
    return Outcome(Signal.FAIL, error=error)


def error_handler(fn):
    """Mark a step as an error step, called with ``(ctx, error)``."""
    fn.__error_handler__ = True
    return fn


def is_error_handler(step: Any) -> bool:
    return getattr(step, "__error_handler__", False) is True


@dataclass(eq=False)
class RequestContext:
    """
    State shared by the steps of a single request.

    Headers added through set_header are applied to whatever response aiohttp
    eventually prepares for this request, unless the response already carries
    a header of that name.
    """

    request: web.Request
    handler: Handler
    headers: CIMultiDict = field(default_factory=CIMultiDict)
    error: Optional[BaseException] = None
    rendered_error: Optional[Any] = None
    response: Optional[web.StreamResponse] = None
    started_at: float = field(default_factory=time)
    _finish_callbacks: List[FinishCallback] = field(default_factory=list)

    def set_header(self, name: str, value: str) -> None:
        self.headers[name] = value

    def remove_header(self, name: str) -> None:
        self.headers.popall(name, None)

    def on_finish(self, callback: FinishCallback) -> None:
        self._finish_callbacks.append(callback)

    @property
    def headers_sent(self) -> bool:
        return self.response is not None and self.response.prepared

    def apply_headers(self, response: web.StreamResponse) -> None:
        for name, value in self.headers.items():
            if name not in response.headers:
                response.headers[name] = value

    def finish(self, response: Optional[web.StreamResponse]) -> None:
        for callback in self._finish_callbacks:
            try:
                callback(self, response)
            except Exception:
                logger.exception("finish callback failed")


async def on_response_prepare(
    request: web.Request, response: web.StreamResponse
) -> None:
    """aiohttp signal handler tracking the response of each pipeline request."""
    ctx: Optional[RequestContext] = request.get(CONTEXT_KEY)
    if ctx is None:
        return
    ctx.apply_headers(response)
    ctx.response = response


async def dispatch(ctx: RequestContext) -> Outcome:
    """Run the matched route handler. Unmatched paths fall through."""
    request = ctx.request
    if isinstance(request.match_info.http_exception, web.HTTPNotFound):
        return NEXT

    try:
        response = await ctx.handler(request)
    except web.HTTPException as e:
        if e.status >= 400:
            raise
        # Redirects and other non-error statuses raised as exceptions.
        headers = {
            k: v
            for k, v in e.headers.items()
            if k.lower() not in ("content-type", "content-length")
        }
        return respond(web.Response(status=e.status, headers=headers, text=e.text))
    return respond(response)


async def _call(step: Any, ctx: RequestContext, error: Optional[BaseException]):
    result = step(ctx, error) if error is not None else step(ctx)
    if inspect.isawaitable(result):
        result = await result
    return NEXT if result is None else result


async def run_chain(steps: Sequence[Any], ctx: RequestContext) -> web.StreamResponse:
    """
    Execute steps in order and return the response one of them produced.

    An error still pending after the last step is raised, leaving it to
    aiohttp. A chain that ends without a response or an error raises
    HTTPNotFound, aiohttp's own behavior for unrouted requests.
    """
    error: Optional[BaseException] = None

    for step in steps:
        if is_error_handler(step) != (error is not None):
            continue

        try:
            outcome = await _call(step, ctx, error)
        except Exception as e:
            outcome = fail(e)

        if outcome.signal is Signal.RESPOND:
            return outcome.response
        if outcome.signal is Signal.FAIL:
            error = outcome.error
            ctx.error = error
        else:
            error = None

    if error is not None:
        raise error
    raise web.HTTPNotFound()

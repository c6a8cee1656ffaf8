import functools
import inspect
import re
from typing import Any, Awaitable, Callable, List, Optional, Pattern, Union

from aiohttp import web

CorsOrigin = Union[str, bool, Pattern[str], List[Union[str, Pattern[str]]]]

_REGEX_TOKEN = re.compile(r"^/(.+)/$")


def parse_cors_origin_whitelist(value: Optional[str]) -> CorsOrigin:
    """
    Parse a CORS_ORIGIN_WHITELIST value into an origin specification.

    * ``None`` allows every origin (``"*"``).
    * ``""`` is passed through and disables the CORS headers.
    * ``"true"`` / ``"false"`` become booleans.
    * Anything else is a comma separated list. Entries wrapped in slashes
      (``/\\.example\\.com$/``) are compiled as regular expressions. A single
      entry is returned unwrapped.
    """
    if value is None:
        return "*"
    if value == "":
        return ""
    if value == "false":
        return False
    if value == "true":
        return True

    origins: List[Union[str, Pattern[str]]] = []
    for token in value.split(","):
        token = token.strip()
        if not token:
            continue
        is_regex = _REGEX_TOKEN.match(token)
        if is_regex:
            origins.append(re.compile(is_regex.group(1)))
        else:
            origins.append(token)

    if len(origins) == 1:
        return origins[0]
    return origins


def wrap_async(
    fn: Callable[[web.Request], Any],
) -> Callable[[web.Request], Awaitable[web.StreamResponse]]:
    """
    Turn a sync or async handler into a coroutine handler.

    Whatever the handler raises, synchronously or while awaited, surfaces from
    the returned coroutine so the request pipeline routes it to the final
    error middlewares.
    """

    @functools.wraps(fn)
    async def wrapper(request: web.Request) -> web.StreamResponse:
        result = fn(request)
        if inspect.isawaitable(result):
            result = await result
        return result

    return wrapper

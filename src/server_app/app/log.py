"""
Log payload serializers.

Request logs only carry an allow-listed subset of headers: credentials such as the
Authorization header or cookies never reach the logs. Error stacks are kept for server
errors only; client errors are expected and their stacks are noise.
"""

import traceback
from typing import Any, Dict, Mapping, Optional

from aiohttp import web
from multidict import CIMultiDict

from server_app.app.config import REQUEST_ID_KEY

REQUEST_HEADERS = ("host", "origin", "user-agent")

RESPONSE_HEADERS = (
    "access-control-allow-credentials",
    "access-control-allow-headers",
    "access-control-allow-methods",
    "access-control-allow-origin",
    "access-control-expose-headers",
    "access-control-max-age",
    "content-type",
    "x-robots-tag",
)


def serialize_request(request: web.BaseRequest) -> Dict[str, Any]:
    return {
        "id": request.get(REQUEST_ID_KEY),
        "method": request.method,
        "url": str(request.rel_url),
        "headers": {
            name: request.headers[name]
            for name in REQUEST_HEADERS
            if name in request.headers
        },
        "remoteAddress": request.remote,
    }


def serialize_response(
    response: Optional[web.StreamResponse],
    pending_headers: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """
    Serialize a response for the request log.

    ``pending_headers`` are the headers that will be added when the response is
    prepared; headers already on the response take precedence.
    """
    if response is None:
        return {}

    headers = CIMultiDict(pending_headers or {})
    headers.update(response.headers)
    return {
        "statusCode": response.status,
        "headers": {
            name: headers[name]
            for name in RESPONSE_HEADERS
            if name in headers
        },
    }


def serialize_error(err: BaseException, status_code: int = 500) -> Dict[str, Any]:
    original = getattr(err, "original", None) or err
    serialized: Dict[str, Any] = {
        "type": type(original).__name__,
        "message": str(original),
    }
    if status_code >= 500:
        serialized["stack"] = "".join(
            traceback.format_exception(type(original), original, original.__traceback__)
        )
    return serialized

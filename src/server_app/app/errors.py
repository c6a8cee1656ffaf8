"""
HTTP Error Normalization

Every failure that reaches the final middlewares is converted into an HttpError: a
status code in [400, 599], response headers and a JSON payload shaped like hapi's Boom
output (``{"statusCode", "error", "message"}``).

Error kinds are carried by the ``kind`` attribute rather than by subclasses:

- CLIENT: any 4xx
- NOT_FOUND: 404
- VALIDATION: 422 produced from a schema validation failure, with field level detail
- SERVER: any 5xx. The message sent to clients is replaced by a generic one.

normalize_error never raises; whatever it is given, it returns a renderable HttpError.
"""

import enum
import logging
from http import HTTPStatus
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from aiohttp import web
from pydantic import ValidationError

from server_app.app.chain import Outcome, RequestContext, fail, respond
from server_app.app.config import REQUEST_ID_KEY
from server_app.app.validation import RequestValidationError

logger = logging.getLogger(__name__)

VALIDATION_ERROR_MESSAGE = "Validation Error"
NOT_FOUND_MESSAGE = "Not Found"
SERVER_ERROR_MESSAGE = "An internal server error occurred"

_SKIPPED_EXCEPTION_HEADERS = ("content-type", "content-length")


class ErrorKind(str, enum.Enum):
    CLIENT = "client_error"
    SERVER = "server_error"
    VALIDATION = "validation_error"
    NOT_FOUND = "not_found"


def reason_phrase(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Unknown"


def kind_for_status(status_code: int) -> ErrorKind:
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code >= 500:
        return ErrorKind.SERVER
    return ErrorKind.CLIENT


class HttpError(Exception):
    """
    Structured HTTP error.

    Instances are read-only: use with_request_id to obtain a copy bound to a request.
    """

    def __init__(
        self,
        status_code: int = 500,
        message: Optional[str] = None,
        *,
        kind: Optional[ErrorKind] = None,
        headers: Optional[Mapping[str, str]] = None,
        data: Optional[Mapping[str, Any]] = None,
        request_id: Optional[str] = None,
        original: Optional[BaseException] = None,
    ) -> None:
        if not 400 <= status_code <= 599:
            raise ValueError(f"HttpError status code must be within 400-599, got {status_code}")

        self._status_code = status_code
        self._kind = kind or kind_for_status(status_code)
        self._message = message or reason_phrase(status_code)
        self._headers = MappingProxyType(dict(headers or {}))
        self._data = MappingProxyType(dict(data or {}))
        self._request_id = request_id
        self._original = original

        payload: Dict[str, Any] = {
            "statusCode": status_code,
            "error": reason_phrase(status_code),
            "message": SERVER_ERROR_MESSAGE if status_code >= 500 else self._message,
        }
        payload.update(self._data)
        self._payload = MappingProxyType(payload)

        super().__init__(self._message)

    @property
    def status_code(self) -> int:
        return self._status_code

    @property
    def kind(self) -> ErrorKind:
        return self._kind

    @property
    def message(self) -> str:
        return self._message

    @property
    def headers(self) -> Mapping[str, str]:
        return self._headers

    @property
    def payload(self) -> Mapping[str, Any]:
        return self._payload

    @property
    def request_id(self) -> Optional[str]:
        return self._request_id

    @property
    def original(self) -> Optional[BaseException]:
        return self._original

    @property
    def is_server(self) -> bool:
        return self._status_code >= 500

    def with_request_id(self, request_id: Optional[str]) -> "HttpError":
        return HttpError(
            self._status_code,
            self._message,
            kind=self._kind,
            headers=self._headers,
            data=self._data,
            request_id=request_id,
            original=self._original,
        )

    def body(self) -> Dict[str, Any]:
        body = dict(self._payload)
        if self._request_id is not None:
            body["id"] = self._request_id
        return body

    def __repr__(self) -> str:
        return f"HttpError({self._status_code}, {self._message!r}, kind={self._kind.value})"


def not_found_error() -> HttpError:
    return HttpError(404, NOT_FOUND_MESSAGE, kind=ErrorKind.NOT_FOUND)


def is_validation_error(err: BaseException) -> bool:
    if isinstance(err, HttpError):
        return err.kind is ErrorKind.VALIDATION
    return isinstance(err, (RequestValidationError, ValidationError))


def _describe(error: Mapping[str, Any]) -> Tuple[str, str, Optional[str]]:
    # pydantic reports a missing field at the field's own location.
    loc = [str(part) for part in error.get("loc", ())]
    if error.get("type") == "missing" and loc:
        return "required", ".".join(loc[:-1]), loc[-1]
    return str(error.get("type", "")), ".".join(loc), None


def format_validation_errors(
    errors: Mapping[str, Iterable[Mapping[str, Any]]],
) -> Dict[str, List[str]]:
    """
    Group validation failures by dotted path.

    The path is ``<property>.<data path>``, with the name of the missing property
    appended for ``required`` failures. Each path maps to the failing keywords in
    the order they were reported.
    """
    details: Dict[str, List[str]] = {}
    for request_property, property_errors in errors.items():
        for error in property_errors:
            keyword, data_path, missing_property = _describe(error)
            segments = [request_property, data_path.lstrip("."), missing_property]
            path = ".".join(s for s in segments if s)
            details.setdefault(path, []).append(keyword)
    return details


def _validation_error(err: BaseException) -> HttpError:
    if isinstance(err, RequestValidationError):
        errors = err.errors
    elif isinstance(err, ValidationError):
        errors = {"body": err.errors()}
    else:
        errors = {}
    return HttpError(
        422,
        VALIDATION_ERROR_MESSAGE,
        kind=ErrorKind.VALIDATION,
        data={"validationErrors": format_validation_errors(errors)},
        original=err,
    )


def _status_of(err: BaseException) -> int:
    status = getattr(err, "status_code", None)
    if status is None and isinstance(err, web.HTTPException):
        status = err.status
    if isinstance(status, int) and 400 <= status <= 599:
        return status
    return 500


def _message_of(err: BaseException, status: int) -> str:
    if isinstance(err, web.HTTPException):
        # aiohttp fills text with "<status>: <reason>" unless given one.
        if err.text and err.text != f"{err.status}: {err.reason}":
            return err.text
        return err.reason
    return str(err) or reason_phrase(status)


def _headers_of(err: BaseException) -> Dict[str, str]:
    if not isinstance(err, web.HTTPException):
        return {}
    return {
        k: v for k, v in err.headers.items() if k.lower() not in _SKIPPED_EXCEPTION_HEADERS
    }


def normalize_error(err: BaseException) -> HttpError:
    """Convert any exception into an HttpError."""
    if isinstance(err, HttpError):
        return err
    if is_validation_error(err):
        return _validation_error(err)

    try:
        status = _status_of(err)
        return HttpError(
            status,
            _message_of(err, status),
            headers=_headers_of(err),
            original=err,
        )
    except Exception:
        logger.exception("Unable to normalize %s", type(err).__name__)
        return HttpError(500, original=err)


def render(error: BaseException, ctx: RequestContext) -> Outcome:
    """
    Render an error as a JSON response.

    Once the response headers are sent nothing can be written anymore: the error is
    handed on unchanged instead.
    """
    http_error = normalize_error(error).with_request_id(ctx.request.get(REQUEST_ID_KEY))
    ctx.rendered_error = http_error

    if ctx.headers_sent:
        return fail(error)

    return respond(
        web.json_response(
            http_error.body(),
            status=http_error.status_code,
            headers=dict(http_error.headers),
        )
    )

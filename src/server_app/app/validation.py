import functools
import logging
from typing import Any, Dict, List, Mapping, Optional, Type

from aiohttp import web
from pydantic import BaseModel, ValidationError

from server_app.app.config import REQUEST_BODY_KEY, VALIDATED_KEY

logger = logging.getLogger(__name__)

REQUEST_PROPERTIES = ("params", "query", "headers", "body")


class RequestValidationError(Exception):
    """
    Raised when one or more request properties fail schema validation.

    ``errors`` maps the request property (``query``, ``body``, ...) to the list of
    pydantic error dictionaries reported for it.
    """

    def __init__(self, errors: Mapping[str, List[Dict[str, Any]]]) -> None:
        super().__init__("Validation Error")
        self.errors = dict(errors)


async def _request_property(request: web.Request, name: str) -> Any:
    if name == "params":
        return dict(request.match_info)
    if name == "query":
        return {k: v for k, v in request.query.items()}
    if name == "headers":
        return {k.lower(): v for k, v in request.headers.items()}

    if REQUEST_BODY_KEY in request:
        return request[REQUEST_BODY_KEY]
    if request.can_read_body and request.content_type == "application/json":
        try:
            return await request.json()
        except ValueError:
            raise web.HTTPBadRequest(text="Malformed JSON body")
    return {}


class Validator:
    """
    Validate request properties against pydantic models.

    >>> validator = Validator()
    >>> @validator.validate(query=SearchQuery)
    ... async def handle_search(request):
    ...     query = request["validated"]["query"]

    Every property is checked before failing, so the resulting error lists all
    problems at once.
    """

    def __init__(self, *, strict: Optional[bool] = None) -> None:
        self.strict = strict

    async def check(
        self, request: web.Request, schemas: Mapping[str, Type[BaseModel]]
    ) -> Dict[str, BaseModel]:
        validated: Dict[str, BaseModel] = {}
        errors: Dict[str, List[Dict[str, Any]]] = {}

        for name in REQUEST_PROPERTIES:
            model = schemas.get(name)
            if model is None:
                continue
            data = await _request_property(request, name)
            try:
                validated[name] = model.model_validate(data, strict=self.strict)
            except ValidationError as e:
                errors[name] = e.errors()

        if errors:
            raise RequestValidationError(errors)
        return validated

    def validate(self, **schemas: Type[BaseModel]):
        unknown = set(schemas) - set(REQUEST_PROPERTIES)
        if unknown:
            raise ValueError(f"Unknown request properties: {sorted(unknown)}")

        def decorator(handler):
            @functools.wraps(handler)
            async def wrapper(request: web.Request) -> web.StreamResponse:
                request[VALIDATED_KEY] = await self.check(request, schemas)
                return await handler(request)

            return wrapper

        return decorator

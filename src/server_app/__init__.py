"""
aiohttp-server-app

Conventions for aiohttp services: a pre-configured middleware pipeline, Boom-style JSON
errors and layered environment configuration.

>>> from server_app import application
>>> app = application().use_initial_middlewares().use_healthy_route()
>>> app.use_api_final_middlewares().run()
"""

from server_app.app.application import Application, application
from server_app.app.config import Settings, get_config, load_settings
from server_app.app.errors import HttpError, ErrorKind, normalize_error
from server_app.app.helpers import parse_cors_origin_whitelist, wrap_async
from server_app.app.middlewares import build_final_chain, build_initial_chain
from server_app.app.validation import RequestValidationError, Validator

__all__ = [
    "Application",
    "ErrorKind",
    "HttpError",
    "RequestValidationError",
    "Settings",
    "Validator",
    "application",
    "build_final_chain",
    "build_initial_chain",
    "get_config",
    "load_settings",
    "normalize_error",
    "parse_cors_origin_whitelist",
    "wrap_async",
]

"""
Application Layer

This package wraps aiohttp's web.Application with a conventional request pipeline:
security headers, HTTPS enforcement, CORS, request logging and body parsing before the
routes, then 404 handling, validation error translation and JSON error rendering after
them.

Key Components:
- application.py: Application builder (routes, chains, trust proxy, start/stop)
- chain.py: Request pipeline executor and per-request context
- middlewares.py: Middleware implementations and the initial/final chain composers
- cors.py: CORS headers and the CORS middleware
- errors.py: HTTP error normalization and rendering
- validation.py: Request validation with pydantic models
- log.py: Log payload serializers
- helpers.py: CORS whitelist parsing and the async handler wrapper
- config.py: Environment, settings and config bundle loading
- handlers/: Default route handlers
- cli.py: Logging configuration and the default server entry point
"""

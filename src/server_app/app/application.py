import ipaddress
import logging
from typing import (
    Any,
    Callable,
    Iterable,
    List,
    Optional,
    Union,
)

from aiohttp import web
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from server_app.app.chain import RequestContext, dispatch, on_response_prepare, run_chain
from server_app.app.config import CONTEXT_KEY, Settings, SettingsAppKey
from server_app.app.handlers.internal import handle_healthy, make_root_handler
from server_app.app.helpers import wrap_async
from server_app.app.middlewares import build_final_chain, build_initial_chain

logger = logging.getLogger(__name__)

TrustProxy = Union[bool, str, Iterable[str], None]

PROXY_PRESETS = {
    "loopback": ("127.0.0.1/8", "::1/128"),
    "linklocal": ("169.254.0.0/16", "fe80::/10"),
    "uniquelocal": ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16", "fc00::/7"),
}


def compile_trust(value: TrustProxy) -> Callable[[Optional[str]], bool]:
    """
    Build the predicate telling whether a peer address is a trusted proxy.

    ``value`` is True (trust everyone), False/None (trust no one), or addresses,
    networks and the loopback/linklocal/uniquelocal presets, either as an iterable
    or as a comma separated string.
    """
    if value is True:
        return lambda address: True
    if not value:
        return lambda address: False

    entries = value.split(",") if isinstance(value, str) else list(value)
    networks = []
    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        for network in PROXY_PRESETS.get(entry, (entry,)):
            networks.append(ipaddress.ip_network(network, strict=False))

    def is_trusted(address: Optional[str]) -> bool:
        if address is None:
            return False
        try:
            ip = ipaddress.ip_address(address)
        except ValueError:
            return False
        return any(ip in network for network in networks)

    return is_trusted


def _pipeline_middleware(application: "Application"):
    @web.middleware
    async def pipeline_middleware(request: web.Request, handler):
        return await application.handle(request, handler)

    return pipeline_middleware


class Application:
    """
    aiohttp application with the conventional middleware chains.

    Steps installed with ``use`` run in order around the route dispatch. The router
    takes its place in the chain the first time a route or the final middlewares are
    installed, so the usual sequence is:

    >>> app = (
    ...     Application()
    ...     .use_initial_middlewares()
    ...     .use_healthy_route()
    ...     .use_root_route()
    ...     .use_api_final_middlewares()
    ... )
    >>> app.run()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        log: Optional[logging.Logger] = None,
    ) -> None:
        if settings is None:
            settings = Settings()  # type: ignore
        if settings.sentry_dsn:
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                send_default_pii=False,
                integrations=[AioHttpIntegration()],
            )

        self.settings = settings
        self.log = log or logger
        self._http_log = log
        self.app = web.Application(middlewares=[_pipeline_middleware(self)])
        self.app[SettingsAppKey] = settings
        self.app.on_response_prepare.append(on_response_prepare)

        self._steps: List[Any] = []
        self._router_index: Optional[int] = None
        self._is_trusted_proxy = compile_trust(None)
        self._runner: Optional[web.AppRunner] = None

    def steps(self) -> List[Any]:
        steps = list(self._steps)
        index = len(steps) if self._router_index is None else self._router_index
        steps.insert(index, dispatch)
        return steps

    def _mount_router(self) -> None:
        if self._router_index is None:
            self._router_index = len(self._steps)

    def _forwarded(self, request: web.Request) -> web.Request:
        if not self._is_trusted_proxy(request.remote):
            return request

        changes = {}
        proto = request.headers.get("X-Forwarded-Proto")
        if proto:
            changes["scheme"] = proto.split(",")[0].strip().lower()

        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            addresses = [a.strip() for a in forwarded_for.split(",") if a.strip()]
            client = addresses[0] if addresses else None
            # Closest address that is not one of our proxies.
            for address in reversed(addresses):
                if not self._is_trusted_proxy(address):
                    client = address
                    break
            if client:
                changes["remote"] = client

        return request.clone(**changes) if changes else request

    async def handle(self, request: web.Request, handler) -> web.StreamResponse:
        forwarded = self._forwarded(request)
        ctx = RequestContext(request=forwarded, handler=handler)
        request[CONTEXT_KEY] = ctx
        forwarded[CONTEXT_KEY] = ctx

        response: Optional[web.StreamResponse] = None
        try:
            response = await run_chain(self.steps(), ctx)
            return response
        finally:
            ctx.finish(response)

    def use(self, *steps: Any) -> "Application":
        self._steps.extend(steps)
        return self

    def route(self, method: str, path: str, handler, **kwargs) -> "Application":
        self._mount_router()
        self.app.router.add_route(method, path, wrap_async(handler), **kwargs)
        return self

    def get(self, path: str, handler, **kwargs) -> "Application":
        self._mount_router()
        self.app.router.add_get(path, wrap_async(handler), **kwargs)
        return self

    def post(self, path: str, handler, **kwargs) -> "Application":
        return self.route("POST", path, handler, **kwargs)

    def put(self, path: str, handler, **kwargs) -> "Application":
        return self.route("PUT", path, handler, **kwargs)

    def patch(self, path: str, handler, **kwargs) -> "Application":
        return self.route("PATCH", path, handler, **kwargs)

    def delete(self, path: str, handler, **kwargs) -> "Application":
        return self.route("DELETE", path, handler, **kwargs)

    def add_routes(self, routes: Iterable[web.AbstractRouteDef]) -> "Application":
        self._mount_router()
        self.app.add_routes(routes)
        return self

    def trust_proxy(self, value: TrustProxy = "127.0.0.1") -> "Application":
        self._is_trusted_proxy = compile_trust(value)
        return self

    def use_initial_middlewares(self, options=None) -> "Application":
        return self.use(*build_initial_chain(options, settings=self.settings, log=self._http_log))

    def use_api_final_middlewares(self, options=None) -> "Application":
        self._mount_router()
        return self.use(*build_final_chain(options, settings=self.settings, log=self._http_log))

    def use_healthy_route(self) -> "Application":
        return self.get("/healthy", handle_healthy)

    def use_root_route(self, greeting: Optional[str] = None) -> "Application":
        return self.get("/", make_root_handler(greeting or self.settings.root_greeting))

    async def start(self, port: int = 3000) -> "Application":
        if self._runner is not None:
            raise RuntimeError("Application already started")

        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        await web.TCPSite(self._runner, port=port).start()
        self.log.info("Application started. Visit: http://localhost:%s.", port)
        return self

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()

    def run(self, port: Optional[int] = None) -> None:
        """Serve until interrupted."""
        port = port or self.settings.http_port
        self.log.info("Application started. Visit: http://localhost:%s.", port)
        web.run_app(self.app, port=port, print=None)


def application(settings: Optional[Settings] = None, **kwargs) -> Application:
    return Application(settings, **kwargs)

from aiohttp import web


async def handle_healthy(request: web.Request):
    return web.Response(text="true", content_type="application/json")


def make_root_handler(greeting: str = "Hello!"):
    async def handle_root(request: web.Request):
        return web.Response(text=greeting, content_type="text/plain")

    return handle_root

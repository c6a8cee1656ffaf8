"""
Shared test configuration and fixtures.

Provides environment isolation, request context construction and aiohttp test
clients used across the test modules.
"""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer, make_mocked_request

from server_app.app.chain import RequestContext

# Environment variables read by Settings and the environment loader.
ENVIRONMENT_VARIABLES = (
    "NODE_ENV",
    "APP_ENV",
    "DEBUG",
    "CONFIG_DIR",
    "DOTENV_PATH",
    "CORS_ORIGIN_WHITELIST",
    "PORT",
    "ROOT_GREETING",
    "SENTRY_DSN",
)


def isolate_env(monkeypatch, *names):
    """Remove variables for the duration of a test, restoring them afterwards.

    Setting before deleting makes monkeypatch restore the original state even when
    the code under test writes the variable straight into os.environ.
    """
    for name in names:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Every test starts without any of the application's environment variables."""
    isolate_env(monkeypatch, *ENVIRONMENT_VARIABLES)
    yield


@pytest.fixture
def production(monkeypatch):
    monkeypatch.setenv("NODE_ENV", "production")
    yield


def make_ctx(request=None, handler=None, **request_kwargs) -> RequestContext:
    """Build a RequestContext around a mocked aiohttp request."""
    if request is None:
        request = make_mocked_request(
            request_kwargs.pop("method", "GET"),
            request_kwargs.pop("path", "/"),
            **request_kwargs,
        )
    return RequestContext(request=request, handler=handler or AsyncMock())


@pytest_asyncio.fixture
async def make_client():
    """Start a test server for an Application and return a client bound to it."""
    clients = []

    async def factory(application) -> TestClient:
        client = TestClient(TestServer(application.app))
        await client.start_server()
        clients.append(client)
        return client

    yield factory

    for client in clients:
        await client.close()


@pytest.fixture
def chdir_tmp(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    yield tmp_path

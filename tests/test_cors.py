"""
Tests for server_app.app.cors
"""

import re
from unittest.mock import Mock, patch

import pytest

from conftest import make_ctx
from server_app.app.chain import NEXT, Signal
from server_app.app.config import Settings
from server_app.app.cors import (
    cors,
    enable_cors,
    get_cors_headers,
    get_preflight_headers,
    is_origin_allowed,
)


class TestIsOriginAllowed:

    def test_string(self):
        assert is_origin_allowed("https://a.com", "https://a.com")
        assert not is_origin_allowed("https://b.com", "https://a.com")

    def test_regex(self):
        pattern = re.compile(r"\.example\.com$")
        assert is_origin_allowed("https://www.example.com", pattern)
        assert not is_origin_allowed("https://example.com.evil", pattern)

    def test_list(self):
        allowed = ["https://a.com", re.compile(r"\.b\.com$")]
        assert is_origin_allowed("https://a.com", allowed)
        assert is_origin_allowed("https://x.b.com", allowed)
        assert not is_origin_allowed("https://c.com", allowed)

    def test_boolean(self):
        assert is_origin_allowed("https://a.com", True)
        assert not is_origin_allowed("https://a.com", False)

    def test_missing_origin(self):
        assert not is_origin_allowed(None, True)


class TestGetCorsHeaders:
    """Test suite for get_cors_headers."""

    def test_wildcard(self):
        assert get_cors_headers("https://a.com", "*") == {"Access-Control-Allow-Origin": "*"}

    def test_fixed_origin(self):
        assert get_cors_headers("https://b.com", "https://a.com") == {
            "Access-Control-Allow-Origin": "https://a.com",
            "Vary": "Origin",
        }

    def test_reflects_allowed_origin(self):
        headers = get_cors_headers("https://x.b.com", [re.compile(r"\.b\.com$"), "https://a.com"])
        assert headers == {"Access-Control-Allow-Origin": "https://x.b.com", "Vary": "Origin"}

    def test_disallowed_origin(self):
        headers = get_cors_headers("https://c.com", ["https://a.com", "https://b.com"])
        assert headers == {"Vary": "Origin"}

    def test_credentials_and_exposed_headers(self):
        headers = get_cors_headers(
            "https://a.com", True, credentials=True, exposed_headers=["X-Total", "X-Page"]
        )
        assert headers["Access-Control-Allow-Origin"] == "https://a.com"
        assert headers["Access-Control-Allow-Credentials"] == "true"
        assert headers["Access-Control-Expose-Headers"] == "X-Total,X-Page"


class TestGetPreflightHeaders:

    def test_defaults(self):
        headers = get_preflight_headers("https://a.com", "*")
        assert headers["Access-Control-Allow-Methods"] == "GET,HEAD,PUT,PATCH,POST,DELETE"
        assert "Access-Control-Allow-Headers" not in headers
        assert "Access-Control-Max-Age" not in headers

    def test_reflects_requested_headers(self):
        headers = get_preflight_headers(
            "https://a.com", "*", requested_headers="X-Custom, Content-Type"
        )
        assert headers["Access-Control-Allow-Headers"] == "X-Custom, Content-Type"
        assert headers["Vary"] == "Access-Control-Request-Headers"

    def test_configured_headers_and_max_age(self):
        headers = get_preflight_headers(
            "https://a.com",
            "https://a.com",
            methods=["GET"],
            allowed_headers=["Content-Type"],
            requested_headers="X-Ignored",
            max_age=600,
        )
        assert headers["Access-Control-Allow-Methods"] == "GET"
        assert headers["Access-Control-Allow-Headers"] == "Content-Type"
        assert headers["Access-Control-Max-Age"] == "600"
        assert headers["Vary"] == "Origin"


class TestCorsMiddleware:
    """Test suite for the cors middleware."""

    @pytest.mark.asyncio
    async def test_sets_headers(self):
        ctx = make_ctx(headers={"Origin": "https://a.com"})
        assert await cors()(ctx) is NEXT
        assert ctx.headers["Access-Control-Allow-Origin"] == "*"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("origin", ["", False])
    async def test_disabled(self, origin):
        ctx = make_ctx(method="OPTIONS", headers={"Origin": "https://a.com"})
        assert await cors(origin)(ctx) is NEXT
        assert "Access-Control-Allow-Origin" not in ctx.headers

    @pytest.mark.asyncio
    async def test_preflight(self):
        ctx = make_ctx(
            method="OPTIONS",
            headers={
                "Origin": "https://a.com",
                "Access-Control-Request-Method": "PUT",
            },
        )

        outcome = await cors("https://a.com")(ctx)

        assert outcome.signal is Signal.RESPOND
        assert outcome.response.status == 204
        assert outcome.response.headers["Access-Control-Allow-Origin"] == "https://a.com"
        assert outcome.response.headers["Content-Length"] == "0"

    @pytest.mark.asyncio
    async def test_preflight_status(self):
        ctx = make_ctx(method="OPTIONS", headers={"Origin": "https://a.com"})
        outcome = await cors(options_success_status=200)(ctx)
        assert outcome.response.status == 200


class TestEnableCors:
    """Test suite for enable_cors."""

    def test_warns_in_production_without_whitelist(self):
        log = Mock()
        enable_cors(Settings(environment="production"), log=log)
        log.warning.assert_called_once_with("CORS requests are allowed from all origins")

    def test_warns_on_every_call(self):
        log = Mock()
        settings = Settings(environment="production")
        enable_cors(settings, log=log)
        enable_cors(settings, log=log)
        assert log.warning.call_count == 2

    @pytest.mark.parametrize(
        "whitelist",
        ["", "false", "https://a.com", "https://a.com,https://b.com", "/localhost/"],
    )
    def test_no_warning_with_whitelist(self, whitelist):
        log = Mock()
        enable_cors(
            Settings(environment="production", cors_origin_whitelist=whitelist), log=log
        )
        log.warning.assert_not_called()

    def test_no_warning_outside_production(self):
        log = Mock()
        enable_cors(Settings(), log=log)
        log.warning.assert_not_called()

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("NODE_ENV", "production")
        monkeypatch.setenv("CORS_ORIGIN_WHITELIST", "https://a.com")
        log = Mock()

        with patch("server_app.app.cors.cors") as cors_mock:
            enable_cors(log=log)

        log.warning.assert_not_called()
        cors_mock.assert_called_once_with("https://a.com")

    def test_forwards_options(self):
        with patch("server_app.app.cors.cors") as cors_mock:
            enable_cors(Settings(cors_origin_whitelist="true"), credentials=True, max_age=60)

        cors_mock.assert_called_once_with(True, credentials=True, max_age=60)

    @pytest.mark.asyncio
    async def test_whitelist_regex(self):
        middleware = enable_cors(Settings(cors_origin_whitelist=r"/\.example\.com$/"))

        ctx = make_ctx(headers={"Origin": "https://app.example.com"})
        await middleware(ctx)
        assert ctx.headers["Access-Control-Allow-Origin"] == "https://app.example.com"

        ctx = make_ctx(headers={"Origin": "https://example.org"})
        await middleware(ctx)
        assert "Access-Control-Allow-Origin" not in ctx.headers

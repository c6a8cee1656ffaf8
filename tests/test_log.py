"""
Tests for the log payload serializers.
"""

from aiohttp import web
from aiohttp.test_utils import make_mocked_request

from server_app.app.errors import HttpError, normalize_error
from server_app.app.log import serialize_error, serialize_request, serialize_response


class TestSerializeRequest:

    def test_allow_listed_headers_only(self):
        """Credentials never reach the logs."""
        request = make_mocked_request(
            "GET",
            "/things?page=2",
            headers={
                "Host": "api.test",
                "User-Agent": "pytest",
                "Authorization": "Bearer secret",
                "Cookie": "session=secret",
            },
        )
        request["id"] = "01REQUEST"

        serialized = serialize_request(request)

        assert serialized["id"] == "01REQUEST"
        assert serialized["method"] == "GET"
        assert serialized["url"] == "/things?page=2"
        assert serialized["headers"] == {"host": "api.test", "user-agent": "pytest"}

    def test_without_request_id(self):
        serialized = serialize_request(make_mocked_request("POST", "/"))
        assert serialized["id"] is None


class TestSerializeResponse:

    def test_response(self):
        response = web.json_response(
            {}, status=201, headers={"Set-Cookie": "session=secret", "X-Robots-Tag": "none"}
        )

        serialized = serialize_response(response)

        assert serialized["statusCode"] == 201
        assert serialized["headers"]["content-type"].startswith("application/json")
        assert serialized["headers"]["x-robots-tag"] == "none"
        assert "set-cookie" not in serialized["headers"]

    def test_pending_headers(self):
        """Headers still waiting to be applied are logged; response headers win."""
        response = web.Response(text="ok", content_type="text/plain")

        serialized = serialize_response(
            response,
            pending_headers={
                "Access-Control-Allow-Origin": "*",
                "Content-Type": "text/html",
                "X-Frame-Options": "SAMEORIGIN",
            },
        )

        assert serialized["headers"]["access-control-allow-origin"] == "*"
        assert serialized["headers"]["content-type"].startswith("text/plain")
        assert "x-frame-options" not in serialized["headers"]

    def test_no_response(self):
        assert serialize_response(None) == {}


class TestSerializeError:

    def test_server_error_has_stack(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError as e:
            error = normalize_error(e)

        serialized = serialize_error(error, 500)

        assert serialized["type"] == "RuntimeError"
        assert serialized["message"] == "boom"
        assert "raise RuntimeError" in serialized["stack"]

    def test_client_error_has_no_stack(self):
        serialized = serialize_error(HttpError(404, "Not Found"), 404)

        assert serialized == {"type": "HttpError", "message": "Not Found"}

"""
Request Context Middleware Tests.

WHAT: Unit tests for the RequestContextMiddleware.

WHY: The request id ties together the audit entries of one billing action.
These tests ensure correct behavior for:
- Client IP extraction (direct and through proxies)
- Request id reuse and generation
- Context availability during the request and cleanup after it
"""

import uuid

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from starlette.requests import Request

from practice_billing.middleware.request_context import (
    MAX_REQUEST_ID_LENGTH,
    RequestContextMiddleware,
    get_client_ip,
    get_request_context,
    resolve_request_id,
)


def make_request(headers: dict = None, client_host: str = None) -> Request:
    scope = {
        "type": "http",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": (client_host, 12345) if client_host else None,
    }
    return Request(scope)


class TestGetClientIp:
    def test_x_real_ip_wins(self):
        request = make_request({"X-Real-IP": "192.168.1.100"}, client_host="10.0.0.1")
        assert get_client_ip(request) == "192.168.1.100"

    def test_first_forwarded_for_entry(self):
        request = make_request(
            {"X-Forwarded-For": "203.0.113.50, 70.41.3.18, 150.172.238.178"},
            client_host="10.0.0.1",
        )
        assert get_client_ip(request) == "203.0.113.50"

    def test_direct_connection(self):
        assert get_client_ip(make_request(client_host="10.0.0.1")) == "10.0.0.1"

    def test_unknown(self):
        assert get_client_ip(make_request()) == "unknown"


class TestResolveRequestId:
    def test_inbound_id_is_reused(self):
        request = make_request({"X-Request-ID": "support-4711"})
        assert resolve_request_id(request) == "support-4711"

    def test_generated_when_absent(self):
        generated = resolve_request_id(make_request())
        assert uuid.UUID(generated).version == 4

    def test_overlong_id_is_replaced(self):
        request = make_request({"X-Request-ID": "x" * (MAX_REQUEST_ID_LENGTH + 1)})
        assert len(resolve_request_id(request)) == 36


@pytest.mark.asyncio
class TestRequestContextMiddleware:
    @pytest.fixture
    def app(self):
        app = FastAPI()
        app.add_middleware(RequestContextMiddleware)

        @app.get("/context")
        async def context(request: Request):
            ctx = get_request_context()
            return {
                "request_id": ctx.request_id,
                "state_request_id": request.state.context.request_id,
                "path": ctx.path,
                "method": ctx.method,
                "ip_address": ctx.ip_address,
            }

        return app

    async def test_context_inside_request(self, app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.get(
                "/context", headers={"X-Request-ID": "req-42", "X-Real-IP": "198.51.100.7"}
            )

        data = response.json()
        assert data["request_id"] == "req-42"
        assert data["state_request_id"] == "req-42"
        assert data["path"] == "/context"
        assert data["method"] == "GET"
        assert data["ip_address"] == "198.51.100.7"
        assert response.headers["X-Request-ID"] == "req-42"

    async def test_generated_id_is_echoed(self, app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.get("/context")

        assert response.headers["X-Request-ID"] == response.json()["request_id"]

    async def test_context_cleared_after_request(self, app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            await ac.get("/context")

        assert get_request_context() is None

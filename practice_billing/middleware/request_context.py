"""
Request context middleware for audit logging.

WHAT: Middleware that gives every request an id (reusing an inbound
X-Request-ID when the caller supplies one) and makes it, together with the
client address and route, available throughout the request lifecycle.

WHY: Billing audit entries are written from services that never see the
request object. The request id stored on each entry is what ties the
"started", "completed" and "failed" records of one billing action together.

HOW: The context lives in request.state for handlers and in a ContextVar
for services, so concurrent requests never see each other's ids.
"""

import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Optional, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 64


@dataclass(frozen=True)
class RequestContext:
    """
    Container for request-scoped context data.

    Fields:
    - request_id: Identifier stored on every audit entry of the request
    - ip_address: Client IP (considering proxies)
    - path: Request path
    - method: HTTP method
    """

    request_id: str
    ip_address: str
    path: str
    method: str


_request_context: ContextVar[Optional[RequestContext]] = ContextVar(
    "request_context", default=None
)


def get_request_context() -> Optional[RequestContext]:
    """
    Get the current request context.

    Returns:
        RequestContext if within a request, None otherwise (e.g. in tests
        that call services directly)
    """
    return _request_context.get()


def get_client_ip(request: Request) -> str:
    """
    Extract the real client IP address from a request.

    HOW: Checks X-Real-IP, then the first entry of X-Forwarded-For, then the
    direct connection address.
    """
    x_real_ip = request.headers.get("X-Real-IP")
    if x_real_ip:
        return x_real_ip.strip()

    x_forwarded_for = request.headers.get("X-Forwarded-For")
    if x_forwarded_for:
        return x_forwarded_for.split(",")[0].strip()

    if request.client and request.client.host:
        return request.client.host

    return "unknown"


def resolve_request_id(request: Request) -> str:
    """
    Reuse a sane inbound request id, otherwise mint a UUID4.

    WHY: The front end sends its own id so a support ticket can be matched
    to the audit trail. Overlong values are ignored rather than truncated.
    """
    inbound = request.headers.get(REQUEST_ID_HEADER, "").strip()
    if inbound and len(inbound) <= MAX_REQUEST_ID_LENGTH:
        return inbound
    return str(uuid.uuid4())


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that captures and stores request context.

    Example:
        @app.post("/api/billing/actions")
        async def handle(request: Request):
            ctx = get_request_context()
            logger.info("billing action", extra={"request_id": ctx.request_id})
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        context = RequestContext(
            request_id=resolve_request_id(request),
            ip_address=get_client_ip(request),
            path=request.url.path,
            method=request.method,
        )

        request.state.context = context
        token = _request_context.set(context)

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = context.request_id
            return response
        finally:
            _request_context.reset(token)

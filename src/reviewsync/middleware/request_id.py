"""Request context middleware — request id and acting user in every log line.

Learn: Every request gets a UUID, either from the incoming X-Request-ID
header (for distributed tracing) or auto-generated. The id, the acting
user (X-User-Id) and the client's mutation id (X-Mutation-Id), when
present, are bound to structlog's contextvars so service log entries
can be tied back to the request and to the change events it caused.
"""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_CONTEXT_HEADERS = {
    "X-User-Id": "user_id",
    "X-Mutation-Id": "mutation_id",
}


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Generate and propagate a unique request ID."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            **{
                key: request.headers[header]
                for header, key in _CONTEXT_HEADERS.items()
                if request.headers.get(header)
            },
        )

        response: Response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

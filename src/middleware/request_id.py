"""Request ID tracing middleware: adds X-Request-ID to every response."""
from __future__ import annotations

import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Read by the logging filter so every log line carries the request ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

_MAX_INBOUND_ID_LENGTH = 64


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request ID to every request/response for log correlation.

    Inbound X-Request-ID values are honored when they are short enough to be
    safe to log; otherwise a fresh UUID4 hex is generated.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        inbound = request.headers.get("x-request-id", "")
        rid = inbound if 0 < len(inbound) <= _MAX_INBOUND_ID_LENGTH else uuid.uuid4().hex
        token = request_id_var.set(rid)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = rid
        return response

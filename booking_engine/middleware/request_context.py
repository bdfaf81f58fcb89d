"""
RequestContext Middleware - tags every request with a request id.

The id is taken from an incoming X-Request-ID header (so a voice platform can
correlate its own calls) or generated, stored on request.state, bound into
structlog's context variables for every log line emitted while handling the
request, and echoed back in the X-Request-ID response header.
"""

import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from booking_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = self._incoming_request_id(request) or str(uuid.uuid4())
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.debug("Request started", method=request.method, path=request.url.path)

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    def _incoming_request_id(self, request: Request) -> str | None:
        value = request.headers.get(REQUEST_ID_HEADER)
        if not value:
            return None
        value = value.strip()
        if not value or len(value) > MAX_REQUEST_ID_LENGTH:
            return None
        return value

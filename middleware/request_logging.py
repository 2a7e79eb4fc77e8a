"""
Request logging middleware. Logs method, path, status, duration and a request id.
Never logs headers, body, or query params (may contain tokens or chat text).
"""
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from config.logging_config import request_id_var

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _incoming_request_id(request: Request) -> str:
    value = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    # Caller-supplied ids are only trusted when short and printable.
    if value and len(value) <= 64 and value.isprintable():
        return value
    return uuid.uuid4().hex


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log each request: method, path (no query), status_code, duration_ms."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = _incoming_request_id(request)
        token = request_id_var.set(request_id)
        method = request.method
        path = request.scope.get("path", "")
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        duration_ms = (time.perf_counter() - start) * 1000
        response.headers[REQUEST_ID_HEADER] = request_id

        status = response.status_code
        if status >= 500:
            log = logger.error
        elif status >= 400:
            log = logger.warning
        else:
            log = logger.info
        # For event streams this is time-to-headers, not stream length.
        log(
            "request_finished method=%s path=%s status=%s duration_ms=%.1f request_id=%s",
            method, path, status, duration_ms, request_id,
        )
        return response

from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from lumen.context import reset_correlation_id, set_correlation_id

CORRELATION_HEADER = "x-correlation-id"
_FALLBACK_HEADERS = ("x-request-id",)
_MAX_LENGTH = 128


def resolve_correlation_id(request: Request) -> str:
    for header in (CORRELATION_HEADER, *_FALLBACK_HEADERS):
        value = (request.headers.get(header) or "").strip()
        if value and len(value) <= _MAX_LENGTH:
            return value
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds one correlation id to the request, its logs, spans, and lifecycle entries."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request)
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response

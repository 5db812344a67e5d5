from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from lumen.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("lumen.request")


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


def _request_fields(request: Request, path: str, status_code: int, duration_ms: float) -> dict[str, Any]:
    return {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
        # set by the auth dependency once the route has resolved the caller
        "user_id": getattr(request.state, "user_sub", None),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        path = resolve_http_path_label(request)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = _elapsed_ms(started)
            observe_http_request(method=request.method, path=path, status=500, duration=duration_ms / 1000)
            logger.error("http.error", exc_info=True, extra=_request_fields(request, path, 500, duration_ms))
            raise

        duration_ms = _elapsed_ms(started)
        observe_http_request(
            method=request.method,
            path=path,
            status=response.status_code,
            duration=duration_ms / 1000,
        )
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(level, "http.request", extra=_request_fields(request, path, response.status_code, duration_ms))
        return response

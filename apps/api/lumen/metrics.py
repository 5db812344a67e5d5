from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

subscription_transitions_total = Counter(
    "subscription_transitions_total",
    "Total successful subscription lifecycle transitions",
    ["action"],
)

subscription_transition_rejections_total = Counter(
    "subscription_transition_rejections_total",
    "Total rejected subscription lifecycle operations by error code",
    ["action", "code"],
)

subscription_side_effect_failures_total = Counter(
    "subscription_side_effect_failures_total",
    "Total swallowed lifecycle side-effect failures",
    ["sink"],
)

subscription_sweep_duration_seconds = Histogram(
    "subscription_sweep_duration_seconds",
    "Lifecycle sweep duration in seconds",
)

billing_records_created_total = Counter(
    "billing_records_created_total",
    "Total billing records created by kind",
    ["kind"],
)

scope_denied_total = Counter(
    "scope_denied_total",
    "Total requests denied by ownership scope",
    ["resource", "operation"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_transition(action: str) -> None:
    subscription_transitions_total.labels(action=action).inc()


def observe_transition_rejected(action: str, code: str) -> None:
    subscription_transition_rejections_total.labels(action=action, code=code).inc()


def observe_side_effect_failure(sink: str) -> None:
    subscription_side_effect_failures_total.labels(sink=sink).inc()


def observe_sweep(duration: float) -> None:
    subscription_sweep_duration_seconds.observe(duration)


def observe_billing_record_created(kind: str) -> None:
    billing_records_created_total.labels(kind=kind).inc()


def observe_scope_denied(resource: str, operation: str) -> None:
    scope_denied_total.labels(resource=resource, operation=operation).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST

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

pipeline_transitions_total = Counter(
    "pipeline_transitions_total",
    "Accepted pipeline stage transitions",
    ["entity_kind", "from_stage", "to_stage"],
)

pipeline_transition_rejections_total = Counter(
    "pipeline_transition_rejections_total",
    "Rejected pipeline stage transitions by error code",
    ["entity_kind", "reason"],
)

pipeline_conversions_total = Counter(
    "pipeline_conversions_total",
    "Leads converted into companies",
)

pipeline_stats_duration_seconds = Histogram(
    "pipeline_stats_duration_seconds",
    "Pipeline statistics computation time in seconds",
    ["entity_kind", "scope"],
)

rls_denied_writes_count = Counter(
    "rls_denied_writes_count",
    "Total denied writes by community scope",
    ["resource", "scope_type"],
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
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_transition(entity_kind: str, from_stage: str, to_stage: str) -> None:
    pipeline_transitions_total.labels(entity_kind=entity_kind, from_stage=from_stage, to_stage=to_stage).inc()


def observe_transition_rejected(entity_kind: str, reason: str) -> None:
    pipeline_transition_rejections_total.labels(entity_kind=entity_kind, reason=reason).inc()


def observe_conversion() -> None:
    pipeline_conversions_total.inc()


def observe_stats_duration(entity_kind: str, scope: str, duration: float) -> None:
    pipeline_stats_duration_seconds.labels(entity_kind=entity_kind, scope=scope).observe(duration)


def observe_rls_denied_write(resource: str, scope_type: str) -> None:
    rls_denied_writes_count.labels(resource=resource, scope_type=scope_type).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST

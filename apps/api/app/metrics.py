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

workflow_dispatches_total = Counter(
    "workflow_dispatches_total",
    "Total domain events dispatched to the workflow engine",
    ["event_kind"],
)

workflow_executions_total = Counter(
    "workflow_executions_total",
    "Total workflow executions by outcome",
    ["event_kind", "outcome"],
)

workflow_replays_total = Counter(
    "workflow_replays_total",
    "Total workflow matches skipped because the event was already processed",
    ["event_kind"],
)

workflow_dispatch_errors_total = Counter(
    "workflow_dispatch_errors_total",
    "Total dispatch-level workflow errors by stage",
    ["stage"],
)

workflow_action_attempts_total = Counter(
    "workflow_action_attempts_total",
    "Total workflow action attempts by kind and status",
    ["action_kind", "status"],
)

workflow_action_duration_seconds = Histogram(
    "workflow_action_duration_seconds",
    "Workflow action duration in seconds, retries included",
    ["action_kind"],
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


def observe_dispatch(event_kind: str) -> None:
    workflow_dispatches_total.labels(event_kind=event_kind).inc()


def observe_workflow_execution(event_kind: str, outcome: str) -> None:
    workflow_executions_total.labels(event_kind=event_kind, outcome=outcome).inc()


def observe_workflow_replay(event_kind: str) -> None:
    workflow_replays_total.labels(event_kind=event_kind).inc()


def observe_dispatch_error(stage: str) -> None:
    workflow_dispatch_errors_total.labels(stage=stage).inc()


def observe_action_attempt(action_kind: str, status: str) -> None:
    workflow_action_attempts_total.labels(action_kind=action_kind, status=status).inc()


def observe_action_duration(action_kind: str, duration: float) -> None:
    workflow_action_duration_seconds.labels(action_kind=action_kind).observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST

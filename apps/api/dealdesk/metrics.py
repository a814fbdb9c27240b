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

pipeline_stage_transitions_total = Counter(
    "pipeline_stage_transitions_total",
    "Applied lead stage transitions",
    ["from_stage", "to_stage", "trigger"],
)

pipeline_side_effect_failures_total = Counter(
    "pipeline_side_effect_failures_total",
    "Best-effort side effects that failed and were swallowed",
    ["side_effect"],
)

challenge_tokens_issued_total = Counter(
    "challenge_tokens_issued_total",
    "Challenge tokens issued",
)

challenge_token_rate_limited_total = Counter(
    "challenge_token_rate_limited_total",
    "Challenge token requests rejected by the hourly quota",
)

challenge_token_validations_total = Counter(
    "challenge_token_validations_total",
    "Challenge token validation attempts by outcome",
    ["outcome"],
)


_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    return _INT_RE.sub("/{id}", path)


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


def observe_stage_transition(from_stage: str, to_stage: str, trigger: str) -> None:
    pipeline_stage_transitions_total.labels(from_stage=from_stage, to_stage=to_stage, trigger=trigger).inc()


def observe_side_effect_failure(side_effect: str) -> None:
    pipeline_side_effect_failures_total.labels(side_effect=side_effect).inc()


def observe_challenge_token_issued() -> None:
    challenge_tokens_issued_total.inc()


def observe_challenge_token_rate_limited() -> None:
    challenge_token_rate_limited_total.inc()


def observe_challenge_token_validation(outcome: str) -> None:
    challenge_token_validations_total.labels(outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST

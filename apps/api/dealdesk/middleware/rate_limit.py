from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from dealdesk.core.auth import request_subject
from dealdesk.core.config import get_settings
from dealdesk.pipeline.api import error_response

PIPELINE_PREFIX = "/api/pipeline/"
WINDOW_SECONDS = 60
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float


class TokenBucketLimiter:
    """Buckets keyed by (subject, route group); each refills to capacity once per window."""

    def __init__(self, clock=time.monotonic) -> None:  # type: ignore[no-untyped-def]
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def acquire(self, key: tuple[str, str], capacity: int, window_seconds: int = WINDOW_SECONDS) -> int:
        """Take one token. Returns 0 on success, otherwise the seconds until one is available."""
        if capacity <= 0:
            return window_seconds

        rate = capacity / float(window_seconds)
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._buckets[key] = _Bucket(tokens=float(capacity), refilled_at=now)
            else:
                bucket.tokens = min(float(capacity), bucket.tokens + (now - bucket.refilled_at) * rate)
                bucket.refilled_at = now

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return 0
            return max(1, math.ceil((1.0 - bucket.tokens) / rate))

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = TokenBucketLimiter()


def route_group(path: str) -> str:
    # /api/pipeline/<group>/...
    group, _, _ = path[len(PIPELINE_PREFIX):].partition("/")
    return group or "pipeline"


class PipelineMutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or request.method.upper() not in MUTATING_METHODS
            or not path.startswith(PIPELINE_PREFIX)
        ):
            return await call_next(request)

        retry_after = _limiter.acquire(
            (request_subject(request), route_group(path)),
            capacity=settings.rate_limit_pipeline_mutations_per_minute,
        )
        if not retry_after:
            return await call_next(request)

        return error_response(
            request,
            status_code=429,
            code="RATE_LIMITED",
            message="Too many requests",
            details={"retry_after_seconds": retry_after},
            headers={"Retry-After": str(retry_after)},
        )


def reset_rate_limiter() -> None:
    _limiter.clear()

from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from funnelcrm.context import get_correlation_id
from funnelcrm.core.auth import ANONYMOUS, bearer_token, decode_token
from funnelcrm.core.config import get_settings

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
# Nested routes are charged to the innermost resource they touch.
_RESOURCE_SEGMENTS = ("funnels", "stages", "leads", "transactions", "companies")


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float


class TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def take(self, caller: str, resource: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        """Spend one token; returns ``(allowed, retry_after_seconds)``."""
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        per_second = capacity / float(window_seconds)
        with self._lock:
            bucket = self._buckets.setdefault((caller, resource), _Bucket(tokens=float(capacity), refilled_at=now))
            bucket.tokens = min(float(capacity), bucket.tokens + max(0.0, now - bucket.refilled_at) * per_second)
            bucket.refilled_at = now
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return True, 0
            return False, max(1, math.ceil((1.0 - bucket.tokens) / per_second))

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = TokenBucketLimiter()


def resolve_resource(path: str) -> str:
    parts = [part for part in path.split("/") if part][1:]
    resource = parts[0] if parts else "api"
    for part in parts:
        if part in _RESOURCE_SEGMENTS:
            resource = part
    return resource


def resolve_caller(request: Request) -> str:
    token = bearer_token(request)
    payload = decode_token(token) if token else None
    if payload is None or payload.get("sub") is None:
        return ANONYMOUS
    company_id = payload.get("company_id")
    subject = str(payload["sub"])
    return f"{company_id}:{subject}" if company_id is not None else subject


class MutationRateLimitMiddleware(BaseHTTPMiddleware):
    """Token bucket per caller and resource for write requests under /api."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if (
            settings.rate_limit_disabled
            or request.method.upper() not in MUTATING_METHODS
            or not request.url.path.startswith("/api/")
        ):
            return await call_next(request)

        allowed, retry_after = _limiter.take(
            caller=resolve_caller(request),
            resource=resolve_resource(request.url.path),
            capacity=settings.rate_limit_mutations_per_minute,
            window_seconds=settings.rate_limit_window_seconds,
        )
        if allowed:
            return await call_next(request)

        correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None) or str(uuid.uuid4())
        return JSONResponse(
            status_code=429,
            content={
                "code": "rate_limited",
                "message": "Too many requests",
                "details": {"retry_after": retry_after},
                "correlation_id": correlation_id,
            },
            headers={"Retry-After": str(retry_after), "X-Correlation-Id": correlation_id},
        )


def reset_rate_limiter() -> None:
    _limiter.clear()

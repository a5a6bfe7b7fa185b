from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass, field

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from leadflow.context import get_correlation_id
from leadflow.core.auth import bearer_token, decode_token
from leadflow.core.config import get_settings


logger = logging.getLogger("leadflow.rate_limit")

WINDOW_SECONDS = 60
STALE_BUCKET_SECONDS = 10 * WINDOW_SECONDS
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass(slots=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float


@dataclass
class TokenBucketLimiter:
    """Per-key token buckets that refill continuously over ``window_seconds``."""

    window_seconds: int = WINDOW_SECONDS
    buckets: dict[str, _Bucket] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def take(self, key: str, capacity: int) -> RateLimitDecision:
        if capacity <= 0:
            return RateLimitDecision(allowed=False, limit=0, remaining=0, retry_after=self.window_seconds)

        now = time.monotonic()
        refill_per_second = capacity / float(self.window_seconds)
        with self._lock:
            self._prune(now)
            bucket = self.buckets.setdefault(key, _Bucket(tokens=float(capacity), refilled_at=now))
            bucket.tokens = min(float(capacity), bucket.tokens + (now - bucket.refilled_at) * refill_per_second)
            bucket.refilled_at = now

            if bucket.tokens < 1.0:
                retry_after = max(1, math.ceil((1.0 - bucket.tokens) / refill_per_second))
                return RateLimitDecision(allowed=False, limit=capacity, remaining=0, retry_after=retry_after)

            bucket.tokens -= 1.0
            return RateLimitDecision(allowed=True, limit=capacity, remaining=int(bucket.tokens))

    def _prune(self, now: float) -> None:
        stale = [key for key, bucket in self.buckets.items() if now - bucket.refilled_at > STALE_BUCKET_SECONDS]
        for key in stale:
            del self.buckets[key]

    def clear(self) -> None:
        with self._lock:
            self.buckets.clear()


_limiter = TokenBucketLimiter()


class CrmMutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or not path.startswith("/api/crm")
            or request.method.upper() not in MUTATING_METHODS
        ):
            return await call_next(request)

        caller = caller_key(request)
        decision = _limiter.take(f"{caller}|{route_group(path)}", settings.rate_limit_crm_mutations_per_minute)
        if not decision.allowed:
            logger.warning("rate_limit.exceeded", extra={"path": path, "method": request.method, "status_code": 429})
            return _limited_response(request, decision)

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return response


def _limited_response(request: Request, decision: RateLimitDecision) -> JSONResponse:
    correlation_id = (
        get_correlation_id()
        or getattr(request.state, "correlation_id", None)
        or request.headers.get("x-correlation-id")
        or str(uuid.uuid4())
    )
    return JSONResponse(
        status_code=429,
        content={
            "code": "rate_limited",
            "message": "Too many requests",
            "details": {"retry_after": decision.retry_after},
            "correlation_id": correlation_id,
        },
        headers={
            "Retry-After": str(decision.retry_after),
            "X-RateLimit-Limit": str(decision.limit),
            "X-RateLimit-Remaining": "0",
            "x-correlation-id": correlation_id,
        },
    )


def route_group(path: str) -> str:
    """Resource segment after ``/api/crm``; ``/api/crm/leads/<id>/convert`` -> ``leads``."""
    parts = [part for part in path.split("/") if part]
    return parts[2] if len(parts) > 2 else "crm"


def caller_key(request: Request) -> str:
    claims = decode_token(bearer_token(request)) or {}
    organization = request.headers.get("x-organization-id") or claims.get("org_id") or "-"
    return f"{organization}:{claims.get('sub') or 'anonymous'}"


def reset_rate_limiter() -> None:
    _limiter.clear()

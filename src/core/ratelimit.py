"""Rate limiting for the assessment endpoints.

Two backends share the `limit(identifier)` contract of `upstash_ratelimit`:

- Upstash Redis sliding window, used when `UPSTASH_REDIS_REST_URL` and
  `UPSTASH_REDIS_REST_TOKEN` are configured (shared across workers).
- `InMemoryRateLimiter`, a fixed-window counter bounded in key count and
  evicted by TTL, used for single-process deployments.

The limiter is built once per application by `build_ratelimiter` and kept on
`app.state.ratelimiter`; nothing here is a module-level singleton.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Annotated, Protocol

from fastapi import Depends, HTTPException, Request, status

from core.config import Settings, get_settings


logger = logging.getLogger(__name__)

# Paths that bypass rate limiting (health checks, etc.)
RATE_LIMIT_BYPASS_PATHS: set[str] = {
    "/api/v1/health",
    "/api/v1/health/",
    "/health",
    "/health/",
}


class RateLimitResponse(Protocol):
    allowed: bool
    remaining: int
    reset: float  # epoch milliseconds


class RateLimiter(Protocol):
    def limit(self, identifier: str) -> RateLimitResponse: ...


@dataclass(frozen=True, slots=True)
class WindowDecision:
    allowed: bool
    remaining: int
    reset: float


@dataclass(slots=True)
class _Window:
    started_at: float
    count: int


class InMemoryRateLimiter:
    """Fixed-window request counter for one process.

    Keys are evicted once their window has expired and, when more than
    `max_keys` identifiers are tracked, oldest-window first. Increment and
    compare happen under one lock.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        max_keys: int = 10_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_requests < 1 or window_seconds <= 0 or max_keys < 1:
            raise ValueError("max_requests, window_seconds and max_keys must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.max_keys = max_keys
        self._clock = clock
        self._windows: OrderedDict[str, _Window] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._windows)

    def _evict(self, now: float) -> None:
        # Windows are kept in start order, so expired entries sit at the front.
        while self._windows:
            _, oldest = next(iter(self._windows.items()))
            if now - oldest.started_at < self.window_seconds:
                break
            self._windows.popitem(last=False)
        while len(self._windows) >= self.max_keys:
            self._windows.popitem(last=False)

    def limit(self, identifier: str) -> WindowDecision:
        with self._lock:
            now = self._clock()
            window = self._windows.get(identifier)
            if window is None or now - window.started_at >= self.window_seconds:
                self._windows.pop(identifier, None)
                self._evict(now)
                window = _Window(started_at=now, count=0)
                self._windows[identifier] = window

            reset_ms = (window.started_at + self.window_seconds) * 1000
            if window.count >= self.max_requests:
                return WindowDecision(allowed=False, remaining=0, reset=reset_ms)
            window.count += 1
            return WindowDecision(
                allowed=True,
                remaining=self.max_requests - window.count,
                reset=reset_ms,
            )


def _build_upstash_ratelimiter(settings: Settings) -> RateLimiter | None:
    from upstash_ratelimit import Ratelimit, SlidingWindow
    from upstash_redis import Redis

    try:
        redis = Redis(
            url=settings.UPSTASH_REDIS_REST_URL,
            token=settings.UPSTASH_REDIS_REST_TOKEN,
        )
        return Ratelimit(
            redis=redis,
            limiter=SlidingWindow(
                max_requests=settings.RATE_LIMIT_REQUESTS,
                window=settings.RATE_LIMIT_WINDOW_SECONDS,
            ),
            prefix="veritas:ratelimit",
        )
    except Exception as e:
        logger.error("Failed to initialize Upstash rate limiter: %s", e)
        return None


def build_ratelimiter(settings: Settings) -> RateLimiter | None:
    """Create the limiter for one application instance (None disables limiting)."""
    if not settings.RATE_LIMIT_ENABLED:
        logger.info("Rate limiting disabled by configuration")
        return None

    if settings.UPSTASH_REDIS_REST_URL and settings.UPSTASH_REDIS_REST_TOKEN:
        limiter = _build_upstash_ratelimiter(settings)
        if limiter is not None:
            logger.info(
                "Upstash rate limiting enabled: %d requests per %d seconds",
                settings.RATE_LIMIT_REQUESTS,
                settings.RATE_LIMIT_WINDOW_SECONDS,
            )
            return limiter

    logger.info(
        "In-process rate limiting enabled: %d requests per %d seconds",
        settings.RATE_LIMIT_REQUESTS,
        settings.RATE_LIMIT_WINDOW_SECONDS,
    )
    return InMemoryRateLimiter(
        settings.RATE_LIMIT_REQUESTS,
        settings.RATE_LIMIT_WINDOW_SECONDS,
        max_keys=settings.RATE_LIMIT_MAX_KEYS,
    )


def get_ratelimiter(request: Request) -> RateLimiter | None:
    """Return the limiter attached to the running application, if any."""
    return getattr(request.app.state, "ratelimiter", None)


def _get_client_identifier(request: Request) -> str:
    """Extract client identifier from request for rate limiting.

    Uses X-Forwarded-For header if present (for reverse proxy setups),
    otherwise falls back to the direct client IP.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain (original client)
        return forwarded_for.split(",")[0].strip()

    if request.client and request.client.host:
        return request.client.host

    # Unidentifiable clients get their own bucket rather than sharing one
    return f"unknown:{uuid.uuid4()}"


async def check_rate_limit(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
) -> None:
    """FastAPI dependency to enforce rate limits on endpoints.

    Raises HTTPException with 429 status if rate limit is exceeded.
    Limiter failures are logged and the request is let through.

    Usage:
        @router.post("/assess-stream", dependencies=[Depends(check_rate_limit)])
        async def assess_stream(...): ...
    """
    path = request.url.path
    if path in RATE_LIMIT_BYPASS_PATHS:
        return

    ratelimiter = get_ratelimiter(request)
    if ratelimiter is None:
        return

    identifier = _get_client_identifier(request)

    try:
        response = ratelimiter.limit(identifier)

        if not response.allowed:
            current_time_ms = int(time.time() * 1000)
            retry_after = max(1, int(response.reset - current_time_ms) // 1000)
            logger.warning(
                "Rate limit exceeded on %s. Reset in %d seconds.",
                path,
                retry_after,
            )
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later.",
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(settings.RATE_LIMIT_REQUESTS),
                    "X-RateLimit-Remaining": str(response.remaining),
                },
            )
    except HTTPException:
        raise
    except Exception as e:
        # Log but don't block requests if rate limiting fails
        logger.error("Rate limit check failed: %s", e)

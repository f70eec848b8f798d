"""In-memory sliding-window rate limiter.

Requests are counted per caller: the authenticated user when the Clerk
middleware has run, otherwise the client IP.  Endpoints that call Withings
on the caller's behalf (manual sync, subscribe, re-link) get a much smaller
budget so one patient cannot burn the application's provider quota.

State is per process, which is fine for a single-instance deployment.
Provider-originated traffic (webhook, OAuth callback) is never throttled.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.config import Settings, get_settings
from src.wearables.errors import RateLimited

EXEMPT_PATHS: set[str] = {
    "/health",
    "/integrations/withings/webhook",
    "/integrations/withings/callback",
}

PROVIDER_BOUND_PATHS: set[str] = {
    "/integrations/withings/sync",
    "/integrations/withings/subscribe",
    "/integrations/withings/force-relink",
}

WINDOW_SECONDS = 60


class SlidingWindow:
    """Timestamps of recent hits per key."""

    def __init__(self, limit: int, window_seconds: float = WINDOW_SECONDS) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._hits: dict[str, list[float]] = defaultdict(list)

    def hit(self, key: str, now: float) -> float | None:
        """Record a hit.  Returns seconds to wait when the key is over its limit."""
        cutoff = now - self.window_seconds
        hits = [t for t in self._hits[key] if t > cutoff]
        if len(hits) >= self.limit:
            self._hits[key] = hits
            return max(self.window_seconds - (now - hits[0]), 1.0)
        hits.append(now)
        self._hits[key] = hits
        return None

    def remaining(self, key: str) -> int:
        return max(self.limit - len(self._hits[key]), 0)


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: Any, settings: Settings | None = None) -> None:
        super().__init__(app)
        s = settings or get_settings()
        self._general = SlidingWindow(s.rate_limit_per_minute)
        self._provider_bound = SlidingWindow(s.provider_calls_per_minute)

    @staticmethod
    def _caller_key(request: Request) -> str:
        auth = getattr(request.state, "auth", None)
        if auth is not None:
            return f"user:{auth.user_id}"
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return f"ip:{forwarded.split(',')[0].strip()}"
        return f"ip:{request.client.host if request.client else 'unknown'}"

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in EXEMPT_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        key = self._caller_key(request)
        now = time.monotonic()
        window = self._provider_bound if path in PROVIDER_BOUND_PATHS else self._general

        retry_after = window.hit(key, now)
        if retry_after is not None:
            error = RateLimited("Too many requests; try again shortly")
            return JSONResponse(
                status_code=error.status_code,
                content=error.to_payload(),
                headers={"Retry-After": str(int(retry_after))},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(window.limit)
        response.headers["X-RateLimit-Remaining"] = str(window.remaining(key))
        return response

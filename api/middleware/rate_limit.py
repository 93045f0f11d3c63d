"""
Rate limiting middleware for the Loan Lead Pipeline API.

Sliding-window limits per client IP. Return-link redemption has its own,
tighter window since every request there is a token guess.
"""

import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

UNLIMITED_PATHS = ("/health", "/metrics", "/docs", "/openapi.json")
RETURN_LINK_PREFIX = "/api/v1/return/"


class SlidingWindow:
    """Request timestamps per key inside a fixed window. Empty keys are dropped."""

    def __init__(self, limit: int, window_seconds: float = 60):
        self.limit = limit
        self.window_seconds = window_seconds
        self._hits: Dict[str, List[float]] = {}

    def hit(self, key: str, now: float) -> Tuple[bool, int]:
        """Record a request if allowed; returns (allowed, remaining)."""
        window_start = now - self.window_seconds
        recent = [t for t in self._hits.get(key, ()) if t > window_start]

        if len(recent) >= self.limit:
            self._hits[key] = recent
            return False, 0

        recent.append(now)
        self._hits[key] = recent
        return True, self.limit - len(recent)

    def prune(self, now: float) -> None:
        window_start = now - self.window_seconds
        for key in list(self._hits):
            recent = [t for t in self._hits[key] if t > window_start]
            if recent:
                self._hits[key] = recent
            else:
                del self._hits[key]

    def __len__(self) -> int:
        return len(self._hits)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-client rate limiter with a separate window for return links."""

    def __init__(
        self,
        app,
        requests_per_minute: int = 120,
        return_link_requests_per_minute: int = 20,
        clock: Optional[Callable[[], float]] = None,
    ):
        super().__init__(app)
        self.general = SlidingWindow(requests_per_minute)
        self.return_links = SlidingWindow(return_link_requests_per_minute)
        self._clock = clock or time.monotonic
        self._last_prune = self._clock()

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in UNLIMITED_PATHS:
            return await call_next(request)

        now = self._clock()
        self._prune(now)
        client_id = self._get_client_id(request)
        window = self.return_links if path.startswith(RETURN_LINK_PREFIX) else self.general

        allowed, remaining = window.hit(client_id, now)
        if not allowed:
            logger.warning(f"Rate limit exceeded for {client_id} on {path}")
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": "Too many requests. Please try again later."},
                headers={"Retry-After": str(int(window.window_seconds))},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(window.limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response

    def _prune(self, now: float) -> None:
        # Once per window is enough to keep idle clients from accumulating.
        if now - self._last_prune < self.general.window_seconds:
            return
        self._last_prune = now
        self.general.prune(now)
        self.return_links.prune(now)

    @staticmethod
    def _get_client_id(request: Request) -> str:
        return f"ip:{request.client.host}" if request.client else "ip:unknown"

"""Rate limiting and security headers.

Security Impact:
    - Login and password-reset requests are throttled per client address,
      which slows credential stuffing and reset-token guessing
    - Responses carry no-store caching so patient data is not kept by
      browsers or intermediaries
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Paths never rate limited
UNLIMITED_PATHS = frozenset({"/", "/api/health", "/api/docs", "/api/redoc", "/api/openapi.json"})

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
}
HSTS_HEADER = "max-age=31536000; includeSubDomains"


def get_client_ip(request: Request) -> str:
    """Client address, honoring the first X-Forwarded-For hop behind a proxy."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def get_rate_limit_config() -> Dict[str, Tuple[int, int]]:
    """Path prefixes mapped to (requests, window seconds)."""
    return {
        "/api/auth/login": (10, 60),
        "/api/auth/password-reset": (5, 60),
        "/api/patients/sync-all": (10, 60),
        "/api/export": (30, 60),
    }


class SlidingWindowCounter:
    """Request timestamps per (client, bucket) over a sliding window.

    Parameters:
        clock: Monotonic time source (seconds)
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._hits: Dict[Tuple[str, str], Deque[float]] = {}
        self._lock = threading.Lock()

    def hit(self, client: str, bucket: str, limit: int, window: int) -> Tuple[bool, int, int]:
        """Register one request if the window has room.

        Returns:
            Tuple of (allowed, remaining, retry_after_seconds)
        """
        now = self._clock()
        with self._lock:
            hits = self._hits.setdefault((client, bucket), deque())
            while hits and hits[0] <= now - window:
                hits.popleft()
            if len(hits) >= limit:
                return False, 0, max(1, int(hits[0] + window - now))
            hits.append(now)
            return True, limit - len(hits), 0

    def prune(self, max_window: int) -> None:
        """Drop clients with no request inside ``max_window`` seconds."""
        cutoff = self._clock() - max_window
        with self._lock:
            for key in [k for k, hits in self._hits.items() if not hits or hits[-1] <= cutoff]:
                del self._hits[key]


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-client rate limits, with tighter limits on sensitive path prefixes.

    State lives in this middleware instance, so every application built by
    ``create_app`` starts with empty counters.

    Parameters:
        app: ASGI application
        default_limit: Requests per window for paths without their own limit
        default_window: Window in seconds for the default limit
        per_endpoint_limits: Path prefixes mapped to (limit, window)
    """

    PRUNE_EVERY = 1000

    def __init__(
        self,
        app,
        default_limit: int = 120,
        default_window: int = 60,
        per_endpoint_limits: Optional[Dict[str, Tuple[int, int]]] = None
    ):
        super().__init__(app)
        self.default = (default_limit, default_window)
        self.per_endpoint_limits = per_endpoint_limits or {}
        self.counter = SlidingWindowCounter()
        self._requests_seen = 0

    def limits_for(self, path: str) -> Tuple[str, int, int]:
        for prefix, (limit, window) in self.per_endpoint_limits.items():
            if path.startswith(prefix):
                return prefix, limit, window
        return "default", *self.default

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in UNLIMITED_PATHS:
            return await call_next(request)

        self._requests_seen += 1
        if self._requests_seen % self.PRUNE_EVERY == 0:
            self.counter.prune(max(window for _, window in [self.default, *self.per_endpoint_limits.values()]))

        client = get_client_ip(request)
        bucket, limit, window = self.limits_for(path)
        allowed, remaining, retry_after = self.counter.hit(client, bucket, limit, window)

        if not allowed:
            logger.warning(f"Rate limit exceeded: {client} on {bucket} ({limit}/{window}s)")
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"error": "Too many requests"},
                headers={
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                    "Retry-After": str(retry_after),
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds ``SECURITY_HEADERS`` (and HSTS when enabled) to every response."""

    def __init__(self, app, enable_hsts: bool = False):
        super().__init__(app)
        self.headers = dict(SECURITY_HEADERS)
        if enable_hsts:
            self.headers["Strict-Transport-Security"] = HSTS_HEADER

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        for header, value in self.headers.items():
            response.headers.setdefault(header, value)
        return response

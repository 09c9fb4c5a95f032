import time
from threading import Lock
from typing import Dict, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse


class RateLimiter:
    """
    In-memory fixed-window rate limiter.

    Tracks requests per identifier within a window of ``window_seconds``.
    Expired windows are dropped at most once per window.
    """

    def __init__(self, max_requests: int, window_seconds: float = 60.0, clock=time.time):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        # identifier -> (count, window_start_time)
        self.requests: Dict[str, Tuple[int, float]] = {}
        self._lock = Lock()
        self._last_cleanup = clock()

    def cleanup(self) -> int:
        """Remove expired windows; returns how many were dropped."""
        now = self.clock()
        with self._lock:
            return self._cleanup(now)

    def _cleanup(self, now: float) -> int:
        expired = [key for key, (_, start) in self.requests.items() if now - start > self.window_seconds]
        for key in expired:
            del self.requests[key]
        self._last_cleanup = now
        return len(expired)

    def is_allowed(self, identifier: str) -> bool:
        now = self.clock()
        with self._lock:
            if now - self._last_cleanup > self.window_seconds:
                self._cleanup(now)

            count, start_time = self.requests.get(identifier, (0, now))

            if now - start_time > self.window_seconds:
                # New window
                self.requests[identifier] = (1, now)
                return True

            if count >= self.max_requests:
                return False

            self.requests[identifier] = (count + 1, start_time)
            return True


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Per-client rate limiting for ``/api``; authentication endpoints get a
    stricter limiter of their own.
    """

    def __init__(self, app, api_limiter: RateLimiter, auth_limiter: RateLimiter, enabled: bool = True):
        super().__init__(app)
        self.api_limiter = api_limiter
        self.auth_limiter = auth_limiter
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not self.enabled or not path.startswith("/api/"):
            return await call_next(request)

        client = request.client.host if request.client else "unknown"
        if path.startswith("/api/auth/"):
            limiter, message = self.auth_limiter, "Too many authentication attempts, please try again later."
        else:
            limiter, message = self.api_limiter, "Too many requests from this IP, please try again later."

        if not limiter.is_allowed(client):
            return JSONResponse(status_code=429, content={"success": False, "message": message})
        return await call_next(request)

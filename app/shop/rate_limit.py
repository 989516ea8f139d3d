from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import Flask, Request, current_app, g, request

from app.shop.errors import error_response


class SlidingWindowRateLimiter:
    """
    In-memory sliding-window limiter: identifier -> timestamps of accepted requests.

    Single process only. Rejected requests are not recorded, so a client that
    keeps hammering is let back in as soon as its oldest accepted request ages out.
    """

    def __init__(self, window_seconds: float, max_requests: int, clock: Callable[[], float] = time.time):
        self.window_seconds = float(window_seconds)
        self.max_requests = int(max_requests)
        self._clock = clock
        self._requests: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def _live(self, identifier: str, now: float) -> list[float]:
        window_start = now - self.window_seconds
        stamps = [t for t in self._requests.get(identifier, ()) if t > window_start]
        if stamps:
            self._requests[identifier] = stamps
        else:
            self._requests.pop(identifier, None)
        return stamps

    def is_allowed(self, identifier: str) -> bool:
        with self._lock:
            now = self._clock()
            stamps = self._live(identifier, now)
            if len(stamps) >= self.max_requests:
                return False
            stamps.append(now)
            self._requests[identifier] = stamps
            return True

    def remaining(self, identifier: str) -> int:
        with self._lock:
            return max(0, self.max_requests - len(self._live(identifier, self._clock())))

    def reset_time(self, identifier: str) -> float:
        """Epoch seconds at which the oldest recorded request leaves the window (0 when none)."""
        with self._lock:
            stamps = self._live(identifier, self._clock())
            if not stamps:
                return 0
            return min(stamps) + self.window_seconds

    def now(self) -> float:
        return self._clock()

    def clear(self) -> None:
        with self._lock:
            self._requests.clear()


def client_identifier(req: Request) -> str:
    forwarded = (req.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    return (
        forwarded
        or (req.headers.get("X-Real-IP") or "").strip()
        or (req.headers.get("CF-Connecting-IP") or "").strip()
        or req.remote_addr
        or "anonymous"
    )


def _limiter(name: str) -> SlidingWindowRateLimiter:
    return current_app.extensions["rate_limiters"][name]


def _check(limiter: SlidingWindowRateLimiter):
    identifier = client_identifier(request)
    g.rate_limit = (limiter, identifier)
    if limiter.is_allowed(identifier):
        return None

    reset = limiter.reset_time(identifier)
    retry_after = max(1, math.ceil(reset - limiter.now()))
    current_app.logger.warning(
        "Rate limit exceeded: id=%s path=%s limit=%s request_id=%s",
        identifier,
        request.path,
        limiter.max_requests,
        getattr(g, "request_id", None),
    )
    resp, status = error_response("Too many requests. Please try again later.", 429, retryAfter=retry_after)
    resp.status_code = status
    resp.headers["Retry-After"] = str(retry_after)
    resp.headers["X-RateLimit-Limit"] = str(limiter.max_requests)
    resp.headers["X-RateLimit-Remaining"] = "0"
    resp.headers["X-RateLimit-Reset"] = str(math.ceil(reset))
    g.rate_limit = None
    return resp


def strict_limit(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Apply the strict limiter (auth endpoints) on top of the API-wide one."""

    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        rejected = _check(_limiter("strict"))
        if rejected is not None:
            return rejected
        return fn(*args, **kwargs)

    return wrapped


def init_rate_limiting(app: Flask) -> None:
    app.extensions["rate_limiters"] = {
        "api": SlidingWindowRateLimiter(app.config["API_RATE_WINDOW"], app.config["API_RATE_LIMIT"]),
        "strict": SlidingWindowRateLimiter(app.config["STRICT_RATE_WINDOW"], app.config["STRICT_RATE_LIMIT"]),
    }

    @app.before_request
    def _api_rate_limit():
        if not request.path.startswith("/api/"):
            return None
        return _check(_limiter("api"))

    @app.after_request
    def _rate_limit_headers(response):
        state = getattr(g, "rate_limit", None)
        if state:
            limiter, identifier = state
            response.headers["X-RateLimit-Limit"] = str(limiter.max_requests)
            response.headers["X-RateLimit-Remaining"] = str(limiter.remaining(identifier))
            response.headers["X-RateLimit-Reset"] = str(math.ceil(limiter.reset_time(identifier)))
        return response

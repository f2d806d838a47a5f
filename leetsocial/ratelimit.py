"""
Fixed-window rate limiting.

Counters live in a ``RateLimiter`` instance owned by the application
(``app.state.rate_limiter``). They are process local and reset on restart, so
this is a best-effort throttle for a single instance.
"""
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from fastapi import Request, Response

from .core import RATE_LIMITED
from .errors import RateLimited


@dataclass(frozen=True)
class LimitConfig:
    window_ms: int
    max_requests: int


DEFAULT_LIMITS: Dict[str, LimitConfig] = {
    'auth': LimitConfig(window_ms=15 * 60 * 1000, max_requests=5),
    'api': LimitConfig(window_ms=60 * 1000, max_requests=60),
    'strict': LimitConfig(window_ms=60 * 1000, max_requests=10),
    'message': LimitConfig(window_ms=60 * 1000, max_requests=20),
}


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float  # ms on the limiter clock
    limit: int

    def retry_after(self, now_ms: float) -> int:
        return max(0, int((self.reset_at - now_ms + 999) // 1000))


class RateLimiter:
    def __init__(self, limits: Optional[Dict[str, LimitConfig]] = None,
                 clock: Callable[[], float] = time.monotonic,
                 cleanup_probability: float = 0.01):
        self.limits = dict(limits or DEFAULT_LIMITS)
        self._clock = clock
        self._cleanup_probability = cleanup_probability
        self._windows: Dict[Tuple[str, str], list] = {}
        self._lock = threading.Lock()

    def now_ms(self) -> float:
        return self._clock() * 1000

    def check(self, kind: str, key: str, now: Optional[float] = None) -> RateLimitResult:
        """Count one hit for ``key`` under limit class ``kind``.

        ``now`` is in milliseconds on the limiter clock.
        """
        config = self.limits[kind]
        now = self.now_ms() if now is None else now
        with self._lock:
            if random.random() < self._cleanup_probability:
                self._purge(now)
            window = self._windows.get((kind, key))
            if window is None or window[1] <= now:
                window = [0, now + config.window_ms]
                self._windows[(kind, key)] = window
            window[0] += 1
            count, reset_at = window
        allowed = count <= config.max_requests
        if not allowed:
            RATE_LIMITED.labels(kind=kind).inc()
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, config.max_requests - count),
            reset_at=reset_at,
            limit=config.max_requests,
        )

    def _purge(self, now: float):
        expired = [k for k, (_, reset_at) in self._windows.items() if reset_at <= now]
        for k in expired:
            del self._windows[k]

    def reset(self):
        with self._lock:
            self._windows.clear()

    def __len__(self):
        return len(self._windows)


def client_address(request: Request) -> str:
    forwarded = request.headers.get('x-forwarded-for')
    if forwarded:
        first = forwarded.split(',')[0].strip()
        if first:
            return first
    real_ip = request.headers.get('x-real-ip')
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return 'unknown'


def rate_limit(kind: str = 'api'):
    """FastAPI dependency enforcing limit class ``kind`` per client address."""

    async def dependency(request: Request, response: Response):
        limiter: RateLimiter = request.app.state.rate_limiter
        result = limiter.check(kind, client_address(request))
        if not result.allowed:
            raise RateLimited(retry_after=result.retry_after(limiter.now_ms()))
        response.headers['X-RateLimit-Limit'] = str(result.limit)
        response.headers['X-RateLimit-Remaining'] = str(result.remaining)
        return result

    return dependency

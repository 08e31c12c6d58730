"""
Fixed-window rate limiting for upstream-bound calls and general traffic.

Two interchangeable backends share the ``check(identity, config)`` contract:
``InMemoryRateLimiter`` for a single process and ``RedisRateLimiter`` when
windows must be shared across processes.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Mapping, Optional, Protocol

import redis

from listings.models import RateLimitConfig, RateLimitResult, RateWindow

logger = logging.getLogger(__name__)


class RateLimiter(Protocol):
    def check(self, identity: str, config: RateLimitConfig) -> RateLimitResult:
        ...


class InMemoryRateLimiter:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._windows: Dict[str, RateWindow] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def check(self, identity: str, config: RateLimitConfig) -> RateLimitResult:
        key = f"{config.key_prefix}:{identity}"
        with self._lock:
            now = self._clock()
            self._cleanup(now)
            window = self._windows.get(key)

            if window is None or now > window.window_reset_at:
                window = RateWindow(identity=identity, count=1, window_reset_at=now + config.window_seconds)
                self._windows[key] = window
                return RateLimitResult(True, config.max_requests - 1, window.window_reset_at)

            if window.count >= config.max_requests:
                logger.debug("Rate limit exhausted for %s (%s)", identity, config.key_prefix)
                return RateLimitResult(False, 0, window.window_reset_at)

            window.count += 1
            return RateLimitResult(True, config.max_requests - window.count, window.window_reset_at)

    def window_for(self, identity: str, config: RateLimitConfig) -> Optional[RateWindow]:
        with self._lock:
            return self._windows.get(f"{config.key_prefix}:{identity}")

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {"backend": "memory", "tracked_identities": len(self._windows)}

    def _cleanup(self, now: float) -> None:
        expired = [key for key, window in self._windows.items() if now > window.window_reset_at]
        for key in expired:
            del self._windows[key]


class RedisRateLimiter:
    """
    Redis-backed fixed window.

    ``SET NX PX`` opens the window with its expiry and ``INCR`` counts inside
    it; both run in one MULTI block so concurrent callers never observe a
    half-initialised window. Requests over the limit still increment the
    counter, which keeps them denied until the key expires.
    """

    def __init__(self, client, clock: Callable[[], float] = time.time) -> None:
        self.client = client
        self._clock = clock

    def check(self, identity: str, config: RateLimitConfig) -> RateLimitResult:
        key = f"{config.key_prefix}:{identity}"
        window_ms = max(1, int(config.window_seconds * 1000))
        now = self._clock()
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.set(key, 0, px=window_ms, nx=True)
            pipe.incr(key)
            pipe.pttl(key)
            _, count, ttl_ms = pipe.execute()
        except Exception as exc:
            # Fail open.
            logger.error("Redis rate limiter error for %s: %s", key, exc)
            return RateLimitResult(True, config.max_requests - 1, now + config.window_seconds)

        ttl_ms = ttl_ms if ttl_ms and ttl_ms > 0 else window_ms
        reset_at = now + ttl_ms / 1000.0
        count = int(count)
        if count > config.max_requests:
            logger.debug("Rate limit exhausted for %s (%s)", identity, config.key_prefix)
            return RateLimitResult(False, 0, reset_at)
        return RateLimitResult(True, config.max_requests - count, reset_at)

    def snapshot(self) -> Dict[str, object]:
        return {"backend": "redis"}


def build_rate_limiter(settings) -> RateLimiter:
    if settings.redis_url:
        logger.info("Using Redis rate limiter")
        return RedisRateLimiter(redis.Redis.from_url(settings.redis_url))
    return InMemoryRateLimiter()


def client_identifier(headers: Mapping[str, str], remote_addr: Optional[str] = None) -> str:
    """Derive the caller identity from proxy headers, falling back to the socket address."""
    forwarded = headers.get("X-Forwarded-For") or ""
    first_hop = forwarded.split(",")[0].strip()
    for candidate in (first_hop, headers.get("X-Real-IP"), headers.get("CF-Connecting-IP"), remote_addr):
        if candidate and candidate.strip():
            return candidate.strip()
    return "unknown"

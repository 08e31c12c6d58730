"""
Response cache for upstream listing pages.

``ResponseCache`` keeps entries in memory with a per-entry TTL and evicts the
least recently accessed entry when a new key arrives at capacity. An optional
daemon sweeper removes expired entries between accesses. ``RedisResponseCache``
exposes the same interface over a shared Redis instance, serializing
``FetchResult`` payloads to JSON and leaving eviction to the server.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

import redis

from listings.models import CacheEntry, FetchResult, SortMode, TimeWindow, fetch_result_from_dict, fetch_result_to_dict

logger = logging.getLogger(__name__)

KEY_PREFIX = "listings"


def cache_key(
    channel: str,
    sort_mode: SortMode | str,
    time_window: Optional[TimeWindow | str] = None,
    cursor: Optional[str] = None,
) -> str:
    sort_value = SortMode(sort_mode).value
    window_value = TimeWindow(time_window).value if time_window else "none"
    return ":".join([KEY_PREFIX, channel.lower(), sort_value, window_value, cursor or "initial"])


class ListingCache(Protocol):
    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ...


class ResponseCache:
    def __init__(
        self,
        max_entries: int = 200,
        default_ttl: float = 600.0,
        sweep_interval: float = 0.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                logger.debug("Cache miss %s", key)
                return None

            now = self._clock()
            if now > entry.expires_at:
                del self._entries[key]
                self.misses += 1
                logger.debug("Cache expired %s", key)
                return None

            entry.access_count += 1
            entry.last_accessed_at = now
            self.hits += 1
            logger.debug("Cache hit %s (hits=%d)", key, entry.access_count)
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            now = self._clock()
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_lru()
            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                inserted_at=now,
                expires_at=now + (self.default_ttl if ttl is None else ttl),
                access_count=0,
                last_accessed_at=now,
            )

    def has(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if self._clock() > entry.expires_at:
                del self._entries[key]
                return False
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def sweep(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Cache sweep removed %d entries (%d left)", len(expired), len(self._entries))
        return len(expired)

    def start_sweeper(self) -> None:
        if self.sweep_interval <= 0 or self._sweeper is not None:
            return
        self._stop.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="listings-cache-sweeper", daemon=True)
        self._sweeper.start()

    def stop(self) -> None:
        self._stop.set()
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None:
            sweeper.join(timeout=1.0)

    def snapshot(self) -> Dict[str, object]:
        """Return a lightweight view for status endpoints without exposing payload content."""
        with self._lock:
            now = self._clock()
            entries: List[Dict[str, object]] = [
                {
                    "key": key,
                    "age_seconds": round(now - entry.inserted_at, 2),
                    "access_count": entry.access_count,
                    "expires_in_seconds": round(max(0.0, entry.expires_at - now), 2),
                }
                for key, entry in self._entries.items()
            ]
        entries.sort(key=lambda item: item["access_count"], reverse=True)
        return {
            "backend": "memory",
            "size": len(entries),
            "max_entries": self.max_entries,
            "default_ttl": self.default_ttl,
            "hits": self.hits,
            "misses": self.misses,
            "entries": entries,
        }

    def _evict_lru(self) -> None:
        oldest_key = min(self._entries, key=lambda k: self._entries[k].last_accessed_at, default=None)
        if oldest_key is not None:
            evicted = self._entries.pop(oldest_key)
            logger.debug("LRU eviction %s (last accessed %.3f)", oldest_key, evicted.last_accessed_at)

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            try:
                self.sweep()
            except Exception as exc:  # pragma: no cover - keep the sweeper alive
                logger.warning("Cache sweep failed: %s", exc)


class RedisResponseCache:
    def __init__(self, client, default_ttl: float = 600.0) -> None:
        self.client = client
        self.default_ttl = default_ttl

    def get(self, key: str) -> Optional[FetchResult]:
        try:
            raw = self.client.get(key)
        except Exception as exc:
            logger.warning("Redis cache read failed for %s: %s", key, exc)
            return None
        if raw is None:
            logger.debug("Cache miss %s", key)
            return None
        try:
            return fetch_result_from_dict(json.loads(raw))
        except (TypeError, ValueError) as exc:
            logger.warning("Discarding undecodable cache entry %s: %s", key, exc)
            return None

    def set(self, key: str, value: FetchResult, ttl: Optional[float] = None) -> None:
        ttl_ms = max(1, int((self.default_ttl if ttl is None else ttl) * 1000))
        try:
            self.client.set(key, json.dumps(fetch_result_to_dict(value)), px=ttl_ms)
        except Exception as exc:
            logger.warning("Redis cache write failed for %s: %s", key, exc)

    def snapshot(self) -> Dict[str, object]:
        return {"backend": "redis", "default_ttl": self.default_ttl}

    def stop(self) -> None:
        self.client.close()


def build_response_cache(settings) -> ListingCache:
    if settings.redis_url:
        logger.info("Using Redis response cache")
        return RedisResponseCache(redis.Redis.from_url(settings.redis_url), default_ttl=settings.cache_ttl_seconds)
    cache = ResponseCache(
        max_entries=settings.cache_max_entries,
        default_ttl=settings.cache_ttl_seconds,
        sweep_interval=settings.cache_sweep_interval,
    )
    cache.start_sweeper()
    return cache

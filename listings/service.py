"""
Wiring of the shared pipeline services behind one facade.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Sequence

from listings.aggregator import AggregationEngine, AggregationSession
from listings.cache import ListingCache, build_response_cache
from listings.credentials import CredentialCache
from listings.fetcher import ChannelFetcher
from listings.http_client import UpstreamHttp
from listings.models import AggregatedPage, ChannelStatus, FetchResult, SortMode, SourceQuery, TimeWindow
from listings.rate_limiter import RateLimiter, build_rate_limiter
from listings.settings import ListingsSettings

logger = logging.getLogger(__name__)


def _status_to_dict(status: ChannelStatus) -> Dict[str, Any]:
    return {
        "name": status.name,
        "healthy": status.healthy,
        "last_error": status.last_error,
        "last_success": status.last_success.isoformat() if status.last_success else None,
        "items_last_fetch": status.items_last_fetch,
        "latency_ms": round(status.latency_ms, 1) if status.latency_ms is not None else None,
        "from_cache": status.from_cache,
    }


class ListingsService:
    def __init__(
        self,
        settings: ListingsSettings,
        *,
        http: UpstreamHttp,
        credentials: CredentialCache,
        rate_limiter: RateLimiter,
        cache: ListingCache,
    ) -> None:
        self.settings = settings
        self.http = http
        self.credentials = credentials
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.fetcher = ChannelFetcher(
            http=http,
            credentials=credentials,
            rate_limiter=rate_limiter,
            cache=cache,
            rate_config=settings.upstream_rate,
            api_base=settings.api_base,
            cache_ttl=settings.cache_ttl_seconds,
        )
        self.engine = AggregationEngine(self.fetcher, max_channels=settings.max_channels)

    @classmethod
    def from_settings(cls, settings: ListingsSettings) -> "ListingsService":
        http = UpstreamHttp(
            user_agent=settings.user_agent,
            timeout=settings.http_timeout,
            max_retries=settings.http_retries,
        )
        credentials = CredentialCache(
            settings.client_id,
            settings.client_secret,
            http=http,
            auth_url=settings.auth_url,
            safety_margin=settings.token_safety_margin,
        )
        if not settings.has_credentials:
            logger.warning("Upstream client credentials missing; uncached listing calls will fail")
        return cls(
            settings,
            http=http,
            credentials=credentials,
            rate_limiter=build_rate_limiter(settings),
            cache=build_response_cache(settings),
        )

    def get_listing(self, query: SourceQuery, *, identity: str = "global") -> FetchResult:
        return self.fetcher.fetch(query, identity=identity)

    def aggregate(
        self,
        channels: Sequence[str],
        sort_mode: SortMode | str = SortMode.HOT,
        time_window: Optional[TimeWindow | str] = None,
        cursors: Optional[Mapping[str, Optional[str]]] = None,
        *,
        page_size: Optional[int] = None,
        identity: str = "global",
    ) -> AggregatedPage:
        return self.engine.fetch_page(
            channels,
            sort_mode,
            time_window,
            cursors,
            page_size=page_size or self.settings.default_page_size,
            identity=identity,
        )

    def session(
        self,
        channels: Sequence[str],
        sort_mode: SortMode | str = SortMode.HOT,
        time_window: Optional[TimeWindow | str] = None,
        *,
        page_size: Optional[int] = None,
        identity: str = "global",
    ) -> AggregationSession:
        return AggregationSession(
            self.engine,
            channels,
            sort_mode,
            time_window,
            page_size=page_size or self.settings.default_page_size,
            identity=identity,
        )

    def status(self) -> Dict[str, Any]:
        """Structured status payload for health dashboards; never includes secrets."""
        cache_snapshot = self.cache.snapshot() if hasattr(self.cache, "snapshot") else {}
        limiter_snapshot = self.rate_limiter.snapshot() if hasattr(self.rate_limiter, "snapshot") else {}
        channels = [_status_to_dict(entry) for entry in self.engine.last_status()]
        return {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "aggregation": {
                "channels": channels,
                "channel_count": len(channels),
                "healthy_channels": sum(1 for entry in channels if entry["healthy"]),
            },
            "cache": cache_snapshot,
            "rate_limiter": limiter_snapshot,
            "credentials": self.credentials.snapshot(),
            "config": self.settings.summary(),
        }

    def close(self) -> None:
        stop = getattr(self.cache, "stop", None)
        if stop is not None:
            stop()
        self.http.close()

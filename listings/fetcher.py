"""
Per-channel page fetcher: cache, rate limit, credential, upstream call, normalize.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from listings.cache import ListingCache, cache_key
from listings.credentials import CredentialCache
from listings.errors import ClientRateLimited, UpstreamError
from listings.http_client import UpstreamHttp
from listings.models import FetchResult, RateLimitConfig, SortMode, SourceQuery
from listings.normalizer import normalize_listing
from listings.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class ChannelFetcher:
    def __init__(
        self,
        *,
        http: UpstreamHttp,
        credentials: CredentialCache,
        rate_limiter: RateLimiter,
        cache: ListingCache,
        rate_config: RateLimitConfig,
        api_base: str,
        cache_ttl: float = 600.0,
    ) -> None:
        self.http = http
        self.credentials = credentials
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.rate_config = rate_config
        self.api_base = api_base.rstrip("/")
        self.cache_ttl = cache_ttl

    def fetch(self, query: SourceQuery, *, identity: str = "global") -> FetchResult:
        key = cache_key(query.channel, query.sort_mode, query.time_window, query.cursor)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Serving %s from cache", key)
            return FetchResult(posts=list(cached.posts), next_cursor=cached.next_cursor, from_cache=True)

        decision = self.rate_limiter.check(identity, self.rate_config)
        if not decision.allowed:
            logger.info("Upstream call for %s refused by rate limiter (identity=%s)", query.channel, identity)
            raise ClientRateLimited(decision.reset_at, decision.remaining, identity)

        credential = self.credentials.get_token()
        started = time.time()
        status, body = self.http.get_json(
            self._listing_url(query),
            params=self._listing_params(query),
            headers={"Authorization": f"bearer {credential.token}"},
            channel=query.channel,
        )
        latency_ms = (time.time() - started) * 1000

        if status == 401:
            self.credentials.invalidate()
        if not 200 <= status < 300:
            message = _upstream_message(status, body, query.channel)
            logger.warning("Upstream error for %s: %s", query.channel, message)
            raise UpstreamError(status, query.channel, message)

        posts, next_cursor = normalize_listing(body, query.channel)
        result = FetchResult(posts=posts, next_cursor=next_cursor)
        self.cache.set(key, result, self.cache_ttl)
        logger.info(
            "Fetched %s/%s: %d posts in %.0fms (more=%s)",
            query.channel,
            query.sort_mode.value,
            len(posts),
            latency_ms,
            next_cursor is not None,
        )
        return result

    def _listing_url(self, query: SourceQuery) -> str:
        return f"{self.api_base}/r/{query.channel}/{query.sort_mode.value}.json"

    @staticmethod
    def _listing_params(query: SourceQuery) -> Dict[str, Any]:
        params: Dict[str, Any] = {"limit": query.page_size, "raw_json": 1}
        if query.sort_mode is SortMode.TOP and query.time_window is not None:
            params["t"] = query.time_window.value
        if query.cursor:
            params["after"] = query.cursor
        return params


def _upstream_message(status: int, body: Optional[Any], channel: str) -> str:
    message = f"Upstream returned HTTP {status} for {channel}"
    if isinstance(body, dict):
        if body.get("message"):
            message += f" ({body['message']})"
        if body.get("reason"):
            message += f" reason={body['reason']}"
    return message

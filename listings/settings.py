"""
Centralised settings for the listings pipeline (env-first, code-light).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from listings.models import DEFAULT_PAGE_SIZE, RateLimitConfig, clamp_page_size
from utils.security import is_configured_key

logger = logging.getLogger(__name__)

DEFAULT_AUTH_URL = "https://www.reddit.com/api/v1/access_token"
DEFAULT_API_BASE = "https://oauth.reddit.com"
DEFAULT_USER_AGENT = "listings-aggregator/1.0"


@dataclass(frozen=True)
class ListingsSettings:
    client_id: Optional[str]
    client_secret: Optional[str]
    user_agent: str
    auth_url: str
    api_base: str
    http_timeout: float
    http_retries: int
    token_safety_margin: float
    cache_ttl_seconds: float
    cache_max_entries: int
    cache_sweep_interval: float
    upstream_rate: RateLimitConfig
    general_rate: RateLimitConfig
    max_channels: int
    default_page_size: int
    redis_url: Optional[str] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id) and bool(self.client_secret)

    def summary(self) -> dict:
        """Configuration view safe to expose on status endpoints."""
        return {
            "credentials_configured": self.has_credentials,
            "api_base": self.api_base,
            "http_timeout": self.http_timeout,
            "cache_ttl_seconds": self.cache_ttl_seconds,
            "cache_max_entries": self.cache_max_entries,
            "upstream_rate": {
                "max_requests": self.upstream_rate.max_requests,
                "window_seconds": self.upstream_rate.window_seconds,
            },
            "general_rate": {
                "max_requests": self.general_rate.max_requests,
                "window_seconds": self.general_rate.window_seconds,
            },
            "max_channels": self.max_channels,
            "distributed_store": bool(self.redis_url),
        }


def _int_from_env(env: Mapping[str, str], key: str, default: int, *, allow_zero: bool = False) -> int:
    raw = env.get(key)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid int value for %s=%s; using default %s", key, raw, default)
        return default
    if value > 0 or (allow_zero and value == 0):
        return value
    return default


def _float_from_env(env: Mapping[str, str], key: str, default: float, *, allow_zero: bool = False) -> float:
    raw = env.get(key)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid number for %s=%s; using default %s", key, raw, default)
        return default
    if value > 0 or (allow_zero and value == 0):
        return value
    return default


def _secret_from_env(env: Mapping[str, str], key: str) -> Optional[str]:
    value = env.get(key)
    if not is_configured_key(value or ""):
        return None
    return value.strip()


def load_settings(environ: Optional[Mapping[str, str]] = None) -> ListingsSettings:
    env = os.environ if environ is None else environ
    redis_url = (env.get("LISTINGS_REDIS_URL") or "").strip() or None
    return ListingsSettings(
        client_id=_secret_from_env(env, "LISTINGS_CLIENT_ID"),
        client_secret=_secret_from_env(env, "LISTINGS_CLIENT_SECRET"),
        user_agent=(env.get("LISTINGS_USER_AGENT") or "").strip() or DEFAULT_USER_AGENT,
        auth_url=(env.get("LISTINGS_AUTH_URL") or "").strip() or DEFAULT_AUTH_URL,
        api_base=((env.get("LISTINGS_API_BASE") or "").strip() or DEFAULT_API_BASE).rstrip("/"),
        http_timeout=_float_from_env(env, "LISTINGS_HTTP_TIMEOUT", 10.0),
        http_retries=_int_from_env(env, "LISTINGS_HTTP_RETRIES", 2, allow_zero=True),
        token_safety_margin=_float_from_env(env, "LISTINGS_TOKEN_SAFETY_MARGIN", 60.0, allow_zero=True),
        cache_ttl_seconds=_float_from_env(env, "LISTINGS_CACHE_TTL", 600.0),
        cache_max_entries=_int_from_env(env, "LISTINGS_CACHE_MAX_ENTRIES", 200),
        cache_sweep_interval=_float_from_env(env, "LISTINGS_CACHE_SWEEP_INTERVAL", 120.0, allow_zero=True),
        upstream_rate=RateLimitConfig(
            max_requests=_int_from_env(env, "LISTINGS_UPSTREAM_RATE_MAX", 60),
            window_seconds=_float_from_env(env, "LISTINGS_UPSTREAM_RATE_WINDOW", 3600.0),
            key_prefix="upstream-api",
        ),
        general_rate=RateLimitConfig(
            max_requests=_int_from_env(env, "LISTINGS_GENERAL_RATE_MAX", 100),
            window_seconds=_float_from_env(env, "LISTINGS_GENERAL_RATE_WINDOW", 900.0),
            key_prefix="general-api",
        ),
        max_channels=_int_from_env(env, "LISTINGS_MAX_CHANNELS", 10),
        default_page_size=clamp_page_size(_int_from_env(env, "LISTINGS_DEFAULT_PAGE_SIZE", DEFAULT_PAGE_SIZE)),
        redis_url=redis_url,
    )

"""
Core data structures shared by the listings aggregation pipeline.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

MIN_PAGE_SIZE = 1
MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20


class SortMode(str, Enum):
    HOT = "hot"
    TOP = "top"


class TimeWindow(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"
    ALL = "all"


class AggregationState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    SETTLED = "settled"
    PARTIALLY_FAILED = "partially_failed"
    ALL_FAILED = "all_failed"


def clamp_page_size(value: Optional[int]) -> int:
    if value is None:
        return DEFAULT_PAGE_SIZE
    return max(MIN_PAGE_SIZE, min(MAX_PAGE_SIZE, int(value)))


@dataclass
class NormalizedPost:
    """
    Canonical media record produced from one upstream post.

    ``media_urls`` is in display order (gallery order for galleries) and is
    never empty.
    """

    title: str
    post_id: str
    channel: str
    media_urls: List[str]
    is_unplayable_video: bool = False

    def __post_init__(self) -> None:
        if not self.media_urls:
            raise ValueError(f"post {self.post_id!r} has no media urls")


@dataclass
class SourceQuery:
    channel: str
    sort_mode: SortMode = SortMode.HOT
    time_window: Optional[TimeWindow] = None
    cursor: Optional[str] = None
    page_size: int = DEFAULT_PAGE_SIZE

    def __post_init__(self) -> None:
        self.sort_mode = SortMode(self.sort_mode)
        if self.sort_mode is SortMode.TOP:
            if self.time_window is None:
                raise ValueError("time_window is required when sort_mode is 'top'")
            self.time_window = TimeWindow(self.time_window)
        else:
            self.time_window = None
        self.page_size = clamp_page_size(self.page_size)


@dataclass
class FetchResult:
    posts: List[NormalizedPost]
    next_cursor: Optional[str] = None
    from_cache: bool = field(default=False, compare=False)


@dataclass
class CacheEntry:
    key: str
    value: Any
    inserted_at: float
    expires_at: float
    access_count: int = 0
    last_accessed_at: float = 0.0


@dataclass
class RateWindow:
    identity: str
    count: int
    window_reset_at: float


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_seconds: float
    key_prefix: str = "ratelimit"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float


@dataclass(frozen=True)
class AccessCredential:
    token: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return bool(self.token) and now < self.expires_at


@dataclass
class ChannelStatus:
    name: str
    healthy: bool
    last_error: Optional[str] = None
    last_success: Optional[datetime] = None
    items_last_fetch: int = 0
    latency_ms: Optional[float] = None
    from_cache: bool = False


@dataclass
class AggregatedPage:
    posts: List[NormalizedPost]
    posts_by_channel: List[List[NormalizedPost]]
    cursors: Dict[str, Optional[str]]
    any_has_more: bool
    generated_at: datetime
    state: AggregationState = AggregationState.SETTLED
    failed_channels: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


def post_to_dict(post: NormalizedPost) -> Dict[str, Any]:
    return {
        "title": post.title,
        "postId": post.post_id,
        "channel": post.channel,
        "mediaUrls": list(post.media_urls),
        "isUnplayableVideo": post.is_unplayable_video,
    }


def post_from_dict(data: Dict[str, Any]) -> NormalizedPost:
    return NormalizedPost(
        title=data.get("title") or "",
        post_id=str(data.get("postId") or ""),
        channel=data.get("channel") or "",
        media_urls=list(data.get("mediaUrls") or []),
        is_unplayable_video=bool(data.get("isUnplayableVideo")),
    )


def fetch_result_to_dict(result: FetchResult) -> Dict[str, Any]:
    return {
        "posts": [post_to_dict(post) for post in result.posts],
        "cursor": result.next_cursor,
    }


def fetch_result_from_dict(data: Dict[str, Any]) -> FetchResult:
    return FetchResult(
        posts=[post_from_dict(item) for item in data.get("posts") or []],
        next_cursor=data.get("cursor"),
    )

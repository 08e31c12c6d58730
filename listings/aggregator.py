"""
Fan-out/fan-in aggregation of channel pages into one fair-ordered stream.
"""
from __future__ import annotations

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar

from listings.errors import (
    AggregateError,
    ClientRateLimited,
    CredentialError,
    ListingsError,
    NetworkError,
    UpstreamError,
    ValidationError,
)
from listings.fetcher import ChannelFetcher
from listings.models import (
    DEFAULT_PAGE_SIZE,
    AggregatedPage,
    AggregationState,
    ChannelStatus,
    FetchResult,
    SortMode,
    SourceQuery,
    TimeWindow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_CHANNELS = 10
CHANNEL_ERRORS = (UpstreamError, NetworkError, ClientRateLimited)


def interleave(lists: Sequence[Sequence[T]]) -> List[T]:
    """
    Round-robin merge: element ``j`` of every list, in list order, for
    ``j = 0, 1, ...``; exhausted lists are skipped.

    >>> interleave([["a1", "a2"], ["b1"], []])
    ['a1', 'b1', 'a2']
    """
    longest = max((len(items) for items in lists), default=0)
    merged: List[T] = []
    for j in range(longest):
        for items in lists:
            if j < len(items):
                merged.append(items[j])
    return merged


def dedupe_channels(channels: Iterable[str]) -> List[str]:
    out: List[str] = []
    seen = set()
    for raw in channels:
        name = (raw or "").strip()
        if not name:
            continue
        key = name.casefold()
        if key in seen:
            continue
        seen.add(key)
        out.append(name)
    return out


class AggregationEngine:
    def __init__(self, fetcher: ChannelFetcher, *, max_workers: Optional[int] = None, max_channels: int = DEFAULT_MAX_CHANNELS) -> None:
        self.fetcher = fetcher
        self.max_workers = max_workers
        self.max_channels = max_channels
        self._last_status: List[ChannelStatus] = []

    def fetch_page(
        self,
        channels: Sequence[str],
        sort_mode: SortMode | str = SortMode.HOT,
        time_window: Optional[TimeWindow | str] = None,
        cursors: Optional[Mapping[str, Optional[str]]] = None,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        identity: str = "global",
    ) -> AggregatedPage:
        requested = dedupe_channels(channels)
        if not requested:
            raise ValidationError("At least one channel is required", [{"field": "channels", "message": "empty"}])
        if len(requested) > self.max_channels:
            raise ValidationError(
                f"Maximum {self.max_channels} channels allowed",
                [{"field": "channels", "message": f"got {len(requested)}"}],
            )

        previous: Dict[str, Optional[str]] = dict(cursors or {})
        queries: Dict[str, SourceQuery] = {}
        for channel in requested:
            if channel in previous and previous[channel] is None:
                logger.debug("Channel %s exhausted; skipping", channel)
                continue
            try:
                queries[channel] = SourceQuery(
                    channel=channel,
                    sort_mode=sort_mode,
                    time_window=time_window,
                    cursor=previous.get(channel),
                    page_size=page_size,
                )
            except ValueError as exc:
                raise ValidationError(str(exc), [{"field": "query", "message": str(exc)}]) from exc

        now = datetime.now(timezone.utc)
        results, unordered_failures, statuses = self._fan_out(queries, identity, now)
        failures = {c: unordered_failures[c] for c in requested if c in unordered_failures}

        new_cursors: Dict[str, Optional[str]] = {}
        for channel in requested:
            if channel in results:
                new_cursors[channel] = results[channel].next_cursor
            elif channel in previous:
                new_cursors[channel] = previous[channel]

        self._last_status = [statuses[c] for c in requested if c in statuses]

        if queries and len(failures) == len(queries):
            logger.error("All %d channels failed: %s", len(failures), ", ".join(failures))
            throttled = [exc for exc in failures.values() if isinstance(exc, ClientRateLimited)]
            if len(throttled) == len(failures):
                earliest = min(throttled, key=lambda exc: exc.reset_at)
                raise ClientRateLimited(earliest.reset_at, 0, earliest.identity)
            raise AggregateError(failures)

        posts_by_channel = [results[c].posts if c in results else [] for c in requested]
        warnings = [f"{channel}: {exc}" for channel, exc in failures.items()]
        for warning in warnings:
            logger.warning("Partial aggregation failure %s", warning)

        # A channel that failed before serving its first page has no cursor yet but still has pages.
        never_served = [channel for channel in failures if channel not in previous]

        return AggregatedPage(
            posts=interleave(posts_by_channel),
            posts_by_channel=posts_by_channel,
            cursors=new_cursors,
            any_has_more=any(cursor is not None for cursor in new_cursors.values()) or bool(never_served),
            generated_at=now,
            state=AggregationState.PARTIALLY_FAILED if failures else AggregationState.SETTLED,
            failed_channels={channel: str(exc) for channel, exc in failures.items()},
            warnings=warnings,
        )

    def last_status(self) -> List[ChannelStatus]:
        return list(self._last_status)

    def _fan_out(
        self,
        queries: Mapping[str, SourceQuery],
        identity: str,
        now: datetime,
    ) -> Tuple[Dict[str, FetchResult], Dict[str, ListingsError], Dict[str, ChannelStatus]]:
        results: Dict[str, FetchResult] = {}
        failures: Dict[str, ListingsError] = {}
        statuses: Dict[str, ChannelStatus] = {}
        if not queries:
            return results, failures, statuses

        max_workers = self.max_workers or min(len(queries), (os.cpu_count() or 2) * 3)
        credential_error: Optional[CredentialError] = None

        # Leaving the with-block waits for every task, so slow channels still
        # land in the response cache even when another channel failed hard.
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="listings-fetch") as executor:
            future_map = {
                executor.submit(self._timed_fetch, query, identity): channel for channel, query in queries.items()
            }
            for future in as_completed(future_map):
                channel = future_map[future]
                try:
                    result, latency_ms = future.result()
                except CredentialError as exc:
                    credential_error = credential_error or exc
                    statuses[channel] = ChannelStatus(name=channel, healthy=False, last_error=str(exc))
                    continue
                except CHANNEL_ERRORS as exc:
                    failures[channel] = exc
                    statuses[channel] = ChannelStatus(name=channel, healthy=False, last_error=str(exc))
                    continue
                except Exception as exc:
                    logger.error("Channel %s failed unexpectedly: %s", channel, exc, exc_info=True)
                    failures[channel] = NetworkError(f"Unexpected failure: {exc}", channel=channel)
                    statuses[channel] = ChannelStatus(name=channel, healthy=False, last_error=str(exc))
                    continue

                results[channel] = result
                statuses[channel] = ChannelStatus(
                    name=channel,
                    healthy=True,
                    last_success=now,
                    items_last_fetch=len(result.posts),
                    latency_ms=latency_ms,
                    from_cache=result.from_cache,
                )

        if credential_error is not None:
            self._last_status = list(statuses.values())
            raise credential_error
        return results, failures, statuses

    def _timed_fetch(self, query: SourceQuery, identity: str) -> Tuple[FetchResult, float]:
        start = time.time()
        result = self.fetcher.fetch(query, identity=identity)
        return result, (time.time() - start) * 1000


class AggregationSession:
    """
    Cursor bookkeeping for one logical browsing session across pages.
    """

    def __init__(
        self,
        engine: AggregationEngine,
        channels: Sequence[str],
        sort_mode: SortMode | str = SortMode.HOT,
        time_window: Optional[TimeWindow | str] = None,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        identity: str = "global",
    ) -> None:
        self.engine = engine
        self.channels = dedupe_channels(channels)
        self.sort_mode = SortMode(sort_mode)
        self.time_window = TimeWindow(time_window) if time_window else None
        self.page_size = page_size
        self.identity = identity
        self.cursors: Dict[str, Optional[str]] = {}
        self.state = AggregationState.IDLE
        self.pages_loaded = 0

    @property
    def has_more(self) -> bool:
        if self.pages_loaded == 0:
            return True
        return any(cursor is not None for cursor in self.cursors.values()) or any(
            channel not in self.cursors for channel in self.channels
        )

    def next_page(self) -> AggregatedPage:
        self.state = AggregationState.FETCHING
        try:
            page = self.engine.fetch_page(
                self.channels,
                self.sort_mode,
                self.time_window,
                self.cursors,
                page_size=self.page_size,
                identity=self.identity,
            )
        except (AggregateError, ClientRateLimited):
            self.state = AggregationState.ALL_FAILED
            raise
        except ListingsError:
            self.state = AggregationState.IDLE
            raise
        self.cursors.update(page.cursors)
        self.pages_loaded += 1
        self.state = page.state
        return page

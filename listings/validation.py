"""
Pydantic models for listing request parameters.
Only syntactic checks happen here; nothing in this module touches the network.
"""
from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from listings.errors import ValidationError
from listings.models import DEFAULT_PAGE_SIZE, SortMode, SourceQuery, TimeWindow, clamp_page_size

CHANNEL_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,20}$")
CURSOR_RE = re.compile(r"^[A-Za-z0-9_]{1,100}$")
CURSOR_PARAM_PREFIX = "cursor."


def _validate_channel(value: Any) -> str:
    name = (value or "").strip() if isinstance(value, str) else ""
    if not name:
        raise ValueError("Channel name is required")
    if len(name) > 21:
        raise ValueError("Channel name is too long")
    if not CHANNEL_RE.fullmatch(name):
        raise ValueError("Channel name contains invalid characters")
    return name.lower()


def _validate_cursor(value: Any) -> Optional[str]:
    if value is None:
        return None
    token = str(value).strip()
    if not token:
        return None
    if not CURSOR_RE.fullmatch(token):
        raise ValueError("Cursor is malformed")
    return token


def _parse_limit(value: Any) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        return DEFAULT_PAGE_SIZE
    if isinstance(value, bool):
        raise ValueError("Limit must be a number")
    try:
        return clamp_page_size(int(str(value).strip()))
    except ValueError as exc:
        raise ValueError("Limit must be a number") from exc


class _SortedQuery(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    sort: SortMode = SortMode.HOT
    time_window: Optional[TimeWindow] = Field(default=None, alias="timeWindow")
    limit: int = DEFAULT_PAGE_SIZE

    @field_validator("time_window", mode="before")
    @classmethod
    def _blank_window(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("limit", mode="before")
    @classmethod
    def _clamp_limit(cls, value: Any) -> int:
        return _parse_limit(value)

    @model_validator(mode="after")
    def _window_matches_sort(self):
        if self.sort is SortMode.TOP and self.time_window is None:
            raise ValueError("timeWindow is required when sort is 'top'")
        if self.sort is SortMode.HOT and self.time_window is not None:
            self.time_window = None
        return self


class ListingQueryParams(_SortedQuery):
    channel: str
    cursor: Optional[str] = None

    @field_validator("channel", mode="before")
    @classmethod
    def _check_channel(cls, value: Any) -> str:
        return _validate_channel(value)

    @field_validator("cursor", mode="before")
    @classmethod
    def _check_cursor(cls, value: Any) -> Optional[str]:
        return _validate_cursor(value)

    def to_query(self) -> SourceQuery:
        return SourceQuery(
            channel=self.channel,
            sort_mode=self.sort,
            time_window=self.time_window,
            cursor=self.cursor,
            page_size=self.limit,
        )


class AggregateQueryParams(_SortedQuery):
    channels: List[str]
    cursors: Dict[str, Optional[str]] = Field(default_factory=dict)

    @field_validator("channels", mode="before")
    @classmethod
    def _split_channels(cls, value: Any) -> List[str]:
        if isinstance(value, str):
            raw = value.split(",")
        elif isinstance(value, (list, tuple)):
            raw = [part for item in value for part in str(item).split(",")]
        else:
            raw = []
        names: List[str] = []
        seen = set()
        for item in raw:
            if not item.strip():
                continue
            name = _validate_channel(item)
            if name not in seen:
                seen.add(name)
                names.append(name)
        if not names:
            raise ValueError("At least one channel is required")
        return names

    @field_validator("cursors", mode="before")
    @classmethod
    def _parse_cursors(cls, value: Any) -> Dict[str, Optional[str]]:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError as exc:
                raise ValueError("cursors must be a JSON object") from exc
        if not isinstance(value, dict):
            raise ValueError("cursors must be a JSON object")
        # Explicit null marks an exhausted channel; a blank value means first page, same as /listings.
        cursors: Dict[str, Optional[str]] = {}
        for name, token in value.items():
            if token is None:
                cursors[_validate_channel(name)] = None
                continue
            cursor = _validate_cursor(token)
            if cursor is not None:
                cursors[_validate_channel(name)] = cursor
        return cursors


def _details(exc: PydanticValidationError) -> List[Dict[str, str]]:
    details: List[Dict[str, str]] = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "query"
        message = str(err.get("msg", "invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        details.append({"field": loc, "message": message})
    return details


def parse_listing_query(params: Mapping[str, Any]) -> ListingQueryParams:
    try:
        return ListingQueryParams.model_validate(dict(params))
    except PydanticValidationError as exc:
        raise ValidationError("Validation failed", _details(exc)) from exc


def parse_aggregate_query(params: Mapping[str, Any], max_channels: int = 10) -> AggregateQueryParams:
    data = dict(params)
    # Per-channel cursors may arrive as repeated ``cursor.<channel>=`` params.
    inline = {key[len(CURSOR_PARAM_PREFIX):]: value for key, value in data.items() if key.startswith(CURSOR_PARAM_PREFIX)}
    if inline and not data.get("cursors"):
        data["cursors"] = inline
    try:
        parsed = AggregateQueryParams.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError("Validation failed", _details(exc)) from exc
    if len(parsed.channels) > max_channels:
        raise ValidationError(
            "Validation failed",
            [{"field": "channels", "message": f"Maximum {max_channels} channels allowed"}],
        )
    return parsed

"""Pairwise co-presence aggregation over connect intervals."""

from __future__ import annotations

import logging
import sqlite3
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pairs_tracker.db import EventKind, IntervalEvent, IntervalStore, to_ms
from pairs_tracker.errors import AggregationQueryError

logger = logging.getLogger(__name__)


class PairKey(NamedTuple):
    """Unordered pair of user IDs, stored smallest first."""

    first: str
    second: str

    @classmethod
    def of(cls, a: str, b: str) -> PairKey:
        return cls(a, b) if a <= b else cls(b, a)

    @property
    def is_self(self) -> bool:
        return self.first == self.second


class PairAggregate(BaseModel):
    """Total time two users spent on the same channel."""

    pair: PairKey
    total_ms: int
    occurrences: int

    @property
    def total(self) -> timedelta:
        return timedelta(milliseconds=self.total_ms)


class QuerySpec(BaseModel):
    """Immutable filter for a pairs query.

    Builder methods return a new, validated QuerySpec:

        spec = QuerySpec().since(week_ago).for_users("alice").without_self().limit(5)
    """

    model_config = ConfigDict(frozen=True)

    start_time: datetime | None = None
    end_time: datetime | None = None
    user_ids: frozenset[str] | None = None
    channel_ids: frozenset[str] | None = None
    guild_ids: frozenset[str] | None = None
    user_mask: frozenset[str] | None = None
    exclude_self: bool = False
    only_self: bool = False
    count: int | None = Field(default=None, ge=0)

    @field_validator("user_ids", "channel_ids", "guild_ids", "user_mask", mode="before")
    @classmethod
    def _normalize_ids(cls, value: Any) -> Any:
        # A single ID or any iterable of IDs
        if value is None:
            return None
        if isinstance(value, str):
            return frozenset({value})
        return frozenset(value)

    @field_validator("start_time", "end_time")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        # Naive means UTC, as in to_ms
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _check_consistency(self) -> QuerySpec:
        if self.exclude_self and self.only_self:
            raise ValueError("exclude_self and only_self are mutually exclusive")
        if self.start_time and self.end_time and self.end_time < self.start_time:
            raise ValueError("end_time is before start_time")
        return self

    def _replace(self, **changes: Any) -> QuerySpec:
        return type(self).model_validate({**self.model_dump(), **changes})

    def since(self, start_time: datetime | None) -> QuerySpec:
        return self._replace(start_time=start_time)

    def until(self, end_time: datetime | None) -> QuerySpec:
        return self._replace(end_time=end_time)

    def for_users(self, *user_ids: str) -> QuerySpec:
        return self._replace(user_ids=user_ids or None)

    def in_channels(self, *channel_ids: str) -> QuerySpec:
        return self._replace(channel_ids=channel_ids or None)

    def in_guilds(self, *guild_ids: str) -> QuerySpec:
        return self._replace(guild_ids=guild_ids or None)

    def masked_to(self, *user_ids: str) -> QuerySpec:
        """Only count time spent with these users."""
        return self._replace(user_mask=user_ids or None)

    def with_users(self, *user_ids: str) -> QuerySpec:
        """Only pairs made of these users."""
        return self._replace(user_ids=user_ids or None, user_mask=user_ids or None)

    def without_self(self) -> QuerySpec:
        return self._replace(exclude_self=True, only_self=False)

    def self_only(self) -> QuerySpec:
        return self._replace(only_self=True, exclude_self=False)

    def limit(self, count: int | None) -> QuerySpec:
        return self._replace(count=count)


class _Window(NamedTuple):
    user_id: str
    channel_id: str
    start_ms: int
    end_ms: int


def _clip(events: Iterable[IntervalEvent], start_ms: int | None, end_ms: int) -> list[_Window]:
    """Clip intervals to [start_ms, end_ms), dropping empty results."""
    windows = []
    for event in events:
        clipped_start = event.start_ms if start_ms is None else max(event.start_ms, start_ms)
        clipped_end = min(event.end_ms, end_ms)
        if clipped_end > clipped_start:
            windows.append(_Window(event.user_id, event.channel_id, clipped_start, clipped_end))
    return windows


def _accept_partner(spec: QuerySpec, owner: str, partner: str) -> bool:
    if spec.exclude_self and partner == owner:
        return False
    if spec.only_self and partner != owner:
        return False
    if spec.user_mask is not None and partner not in spec.user_mask:
        return False
    return True


def top_pairs(
    store: IntervalStore,
    spec: QuerySpec,
    *,
    now: datetime | None = None,
    timeout: float | None = None,
) -> list[PairAggregate]:
    """Rank user pairs by time spent together on the same channel.

    1. Select connect intervals matching the filters and clip them to the
       window. Open intervals run to end_time, or to `now` without one.
    2. For each clipped interval, find connect intervals on the same channel
       that intersect it and sum the overlap per (owner, partner).
    3. Fold (A, B) and (B, A) into one canonical pair. Each overlap was seen
       from both sides, so the two directional sums are averaged.
    4. Sort by total time descending and apply the count limit.

    Args:
        store: Interval store to read.
        spec: Filters and limit.
        now: Clip time for open intervals when spec has no end_time.
        timeout: Seconds the store reads may take before the query fails.

    Returns:
        Pair aggregates, longest first. Empty if nothing matched.

    Raises:
        AggregationQueryError: If the store fails or the timeout is exceeded.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    window_end = spec.end_time or now
    start_ms = to_ms(spec.start_time) if spec.start_time else None
    end_ms = to_ms(window_end)
    if start_ms is not None and end_ms <= start_ms:
        return []

    try:
        with store.query_deadline(timeout):
            windows = _clip(
                store.get_events(
                    start=spec.start_time,
                    end=window_end,
                    kind=EventKind.CONNECT,
                    user_ids=spec.user_ids,
                    channel_ids=spec.channel_ids,
                    guild_ids=spec.guild_ids,
                ),
                start_ms,
                end_ms,
            )
            if not windows:
                return []
            candidates = store.get_events(
                start=spec.start_time,
                end=window_end,
                kind=EventKind.CONNECT,
                user_ids=spec.user_mask,
                channel_ids={w.channel_id for w in windows},
            )
    except sqlite3.Error as e:
        raise AggregationQueryError(f"Pairs query failed: {e}") from e

    # Candidates arrive sorted by start, so each channel list stays sorted
    by_channel: defaultdict[str, list[IntervalEvent]] = defaultdict(list)
    for candidate in candidates:
        by_channel[candidate.channel_id].append(candidate)

    directional: defaultdict[tuple[str, str], int] = defaultdict(int)
    for window in windows:
        for partner in by_channel[window.channel_id]:
            if partner.start_ms >= window.end_ms:
                break
            if partner.end_ms <= window.start_ms:
                continue
            if not _accept_partner(spec, window.user_id, partner.user_id):
                continue
            overlap = min(partner.end_ms, window.end_ms) - max(partner.start_ms, window.start_ms)
            if overlap > 0:
                directional[(window.user_id, partner.user_id)] += overlap

    folded: defaultdict[PairKey, list[int]] = defaultdict(list)
    for (owner, partner), total in directional.items():
        folded[PairKey.of(owner, partner)].append(total)

    results = [
        PairAggregate(pair=pair, total_ms=sum(totals) // len(totals), occurrences=len(totals))
        for pair, totals in folded.items()
    ]
    results.sort(key=lambda r: (-r.total_ms, r.pair))
    if spec.count:
        results = results[: spec.count]

    logger.debug(
        "Pairs query over %d intervals produced %d pairs", len(windows), len(results)
    )
    return results

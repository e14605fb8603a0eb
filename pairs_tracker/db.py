"""SQLite interval store for the pairs tracker."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from collections.abc import Collection, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel

# End value of an open interval. Larger than any real instant in epoch ms.
OPEN_END = 9_007_199_254_740_991

# Records older than this (by created_at) are purged.
RETENTION = timedelta(hours=24)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class EventKind(str, Enum):
    """Boolean attributes tracked per user."""

    CONNECT = "connect"
    MUTE = "mute"
    DEAF = "deaf"
    STREAMING = "streaming"


class IntervalEvent(BaseModel):
    """A span during which one attribute held for one user on one channel."""

    id: str
    kind: EventKind
    user_id: str
    channel_id: str
    guild_id: str
    start_ms: int
    end_ms: int
    needs_verification: bool = False
    created_at: str

    @property
    def is_open(self) -> bool:
        return self.end_ms == OPEN_END

    @property
    def start(self) -> datetime:
        return from_ms(self.start_ms)

    @property
    def end(self) -> datetime | None:
        """End instant, or None while the interval is open."""
        if self.is_open:
            return None
        return from_ms(self.end_ms)


SCHEMA = f"""
CREATE TABLE IF NOT EXISTS intervals (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    user_id TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    guild_id TEXT NOT NULL,
    start_ms INTEGER NOT NULL,
    end_ms INTEGER NOT NULL,
    needs_verification INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    CHECK (start_ms <= end_ms)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_intervals_open
    ON intervals(user_id, kind) WHERE end_ms = {OPEN_END};
CREATE INDEX IF NOT EXISTS idx_intervals_start ON intervals(start_ms);
CREATE INDEX IF NOT EXISTS idx_intervals_channel ON intervals(channel_id, kind, start_ms);
CREATE INDEX IF NOT EXISTS idx_intervals_user ON intervals(user_id, kind);
CREATE INDEX IF NOT EXISTS idx_intervals_created ON intervals(created_at);
"""

logger = logging.getLogger(__name__)


def to_ms(dt: datetime) -> int:
    """Convert a datetime to epoch milliseconds. Naive datetimes are read as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - EPOCH) // timedelta(milliseconds=1)


def from_ms(ms: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return EPOCH + timedelta(milliseconds=ms)


def _format_timestamp(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _in_clause(column: str, values: Collection[str]) -> str:
    placeholders = ",".join("?" * len(values))
    return f" AND {column} IN ({placeholders})"


class IntervalStore:
    """SQLite-backed interval store.

    One connection is shared behind a re-entrant lock, so a store can be used
    from several threads. Every public method is a single atomic operation.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.RLock()
        self._init_schema()

    def __enter__(self) -> "IntervalStore":
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    @classmethod
    def open(cls, path: Path, *, timeout: float = 5.0) -> IntervalStore:
        """Open or create a database at the given path.

        Args:
            path: Database file.
            timeout: Seconds to wait for a locked database before failing.
        """
        conn = sqlite3.connect(path, timeout=timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return cls(conn)

    @classmethod
    def open_in_memory(cls) -> IntervalStore:
        """Create an in-memory database for testing."""
        conn = sqlite3.connect(":memory:", check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return cls(conn)

    def _fetch(self, query: str, params: list[Any] | tuple[Any, ...] = ()) -> list[IntervalEvent]:
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [IntervalEvent.model_validate(dict(row)) for row in rows]

    @contextmanager
    def query_deadline(self, seconds: float | None) -> Iterator[None]:
        """Abort store reads that run longer than `seconds`.

        A statement cut short raises sqlite3.OperationalError ("interrupted").
        The store lock is held for the whole block.
        """
        if seconds is None:
            yield
            return
        deadline = time.monotonic() + seconds
        with self._lock:
            self._conn.set_progress_handler(lambda: int(time.monotonic() > deadline), 1000)
            try:
                yield
            finally:
                self._conn.set_progress_handler(None, 0)

    def get_open(self, kind: EventKind, user_id: str) -> IntervalEvent | None:
        """Get the open interval for (kind, user_id), if any."""
        events = self._fetch(
            """
            SELECT * FROM intervals
            WHERE kind = ? AND user_id = ? AND end_ms = ?
            ORDER BY start_ms ASC
            LIMIT 1
            """,
            (kind.value, user_id, OPEN_END),
        )
        return events[0] if events else None

    def get_open_events(self) -> list[IntervalEvent]:
        """Get every open interval."""
        return self._fetch(
            "SELECT * FROM intervals WHERE end_ms = ? ORDER BY start_ms ASC",
            (OPEN_END,),
        )

    def get_pending(self) -> list[IntervalEvent]:
        """Get open intervals still waiting for verification."""
        return self._fetch(
            """
            SELECT * FROM intervals
            WHERE end_ms = ? AND needs_verification = 1
            ORDER BY start_ms ASC
            """,
            (OPEN_END,),
        )

    def get_events(
        self,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        kind: EventKind | None = None,
        user_ids: Collection[str] | None = None,
        channel_ids: Collection[str] | None = None,
        guild_ids: Collection[str] | None = None,
    ) -> list[IntervalEvent]:
        """Query intervals intersecting [start, end), optionally filtered.

        Args:
            start: Exclusive lower bound on the interval's end.
            end: Exclusive upper bound on the interval's start.
            kind: Only intervals of this kind.
            user_ids: Only intervals owned by these users.
            channel_ids: Only intervals on these channels.
            guild_ids: Only intervals in these guilds.

        Returns:
            Intervals ordered by start ascending.
        """
        query = "SELECT * FROM intervals WHERE 1=1"
        params: list[Any] = []

        if start is not None:
            query += " AND end_ms > ?"
            params.append(to_ms(start))
        if end is not None:
            query += " AND start_ms < ?"
            params.append(to_ms(end))
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind.value)
        if user_ids is not None:
            query += _in_clause("user_id", user_ids)
            params.extend(user_ids)
        if guild_ids is not None:
            query += _in_clause("guild_id", guild_ids)
            params.extend(guild_ids)

        if channel_ids is None:
            return self._fetch(query + " ORDER BY start_ms ASC", params)

        # Batch channels to stay under SQLite's parameter limit
        channels = list(channel_ids)
        batch_size = 500
        events: list[IntervalEvent] = []
        for i in range(0, len(channels), batch_size):
            batch = channels[i : i + batch_size]
            events.extend(self._fetch(query + _in_clause("channel_id", batch), params + batch))
        events.sort(key=lambda e: e.start_ms)
        return events

    def insert_open(
        self,
        kind: EventKind,
        user_id: str,
        channel_id: str,
        guild_id: str,
        start_ms: int,
        *,
        now: datetime | None = None,
    ) -> IntervalEvent | None:
        """Insert an open interval.

        Returns the new interval, or None if (user_id, kind) already has an
        open interval. Uses INSERT OR IGNORE against the open-interval index.
        """
        event = IntervalEvent(
            id=str(uuid.uuid4()),
            kind=kind,
            user_id=user_id,
            channel_id=channel_id,
            guild_id=guild_id,
            start_ms=start_ms,
            end_ms=OPEN_END,
            needs_verification=False,
            created_at=_format_timestamp(now or datetime.now(timezone.utc)),
        )
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO intervals
                (id, kind, user_id, channel_id, guild_id, start_ms, end_ms, needs_verification, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.kind.value,
                    event.user_id,
                    event.channel_id,
                    event.guild_id,
                    event.start_ms,
                    event.end_ms,
                    0,
                    event.created_at,
                ),
            )
            self._conn.commit()
        if cursor.rowcount == 0:
            return None
        return event

    def confirm_pending(self, kind: EventKind, user_id: str, channel_id: str) -> bool:
        """Clear needs_verification on the pending open interval for a key.

        Returns True if a pending interval on that channel was found.
        """
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE intervals SET needs_verification = 0
                WHERE kind = ? AND user_id = ? AND channel_id = ?
                  AND end_ms = ? AND needs_verification = 1
                """,
                (kind.value, user_id, channel_id, OPEN_END),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def confirm(self, event_id: str) -> bool:
        """Clear needs_verification on one interval."""
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE intervals SET needs_verification = 0 WHERE id = ?",
                (event_id,),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def close_interval(
        self,
        event_id: str,
        end_ms: int,
        *,
        now: datetime | None = None,
    ) -> IntervalEvent | None:
        """Replace an open interval with a closed one ending at end_ms.

        The delete and the insert run in one transaction, so a closed interval
        is never updated after it is written. An end before the start is
        clamped to the start.

        Returns the closed interval, or None if event_id is not open.
        """
        with self._lock, self._conn:
            row = self._conn.execute(
                "SELECT * FROM intervals WHERE id = ? AND end_ms = ?",
                (event_id, OPEN_END),
            ).fetchone()
            if row is None:
                return None
            previous = IntervalEvent.model_validate(dict(row))
            closed = previous.model_copy(
                update={
                    "id": str(uuid.uuid4()),
                    "end_ms": max(end_ms, previous.start_ms),
                    "needs_verification": False,
                    "created_at": _format_timestamp(now or datetime.now(timezone.utc)),
                }
            )
            self._conn.execute("DELETE FROM intervals WHERE id = ?", (event_id,))
            self._conn.execute(
                """
                INSERT INTO intervals
                (id, kind, user_id, channel_id, guild_id, start_ms, end_ms, needs_verification, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    closed.id,
                    closed.kind.value,
                    closed.user_id,
                    closed.channel_id,
                    closed.guild_id,
                    closed.start_ms,
                    closed.end_ms,
                    0,
                    closed.created_at,
                ),
            )
        return closed

    def mark_all_pending(self) -> int:
        """Flag every open interval as needing verification. Returns the count."""
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE intervals SET needs_verification = 1 WHERE end_ms = ?",
                (OPEN_END,),
            )
            self._conn.commit()
        return cursor.rowcount

    def delete_pending(self) -> int:
        """Delete every interval still waiting for verification. Returns the count."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM intervals WHERE needs_verification = 1")
            self._conn.commit()
        return cursor.rowcount

    def purge_expired(
        self,
        *,
        now: datetime | None = None,
        retention: timedelta = RETENTION,
    ) -> int:
        """Delete verified intervals written more than `retention` ago.

        Returns the number of intervals deleted.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        cutoff = _format_timestamp(now - retention)
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM intervals WHERE created_at < ? AND needs_verification = 0",
                (cutoff,),
            )
            self._conn.commit()
        logger.debug("Purged %d intervals created before %s", cursor.rowcount, cutoff)
        return cursor.rowcount

    def count_open(self) -> int:
        """Count open intervals."""
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM intervals WHERE end_ms = ?", (OPEN_END,)
            ).fetchone()
        return row["n"]

    def count_events(self) -> int:
        """Count all intervals."""
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS n FROM intervals").fetchone()
        return row["n"]

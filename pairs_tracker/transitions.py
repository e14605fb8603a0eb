"""State transition processor: presence notifications to interval mutations."""

from __future__ import annotations

import logging
import threading
import weakref
from datetime import datetime
from enum import Enum

from pairs_tracker.db import EventKind, IntervalStore, to_ms
from pairs_tracker.errors import InvalidEventError
from pairs_tracker.presence import PresenceNotification

logger = logging.getLogger(__name__)


class Transition(str, Enum):
    """What a start or end notification did to the store."""

    OPENED = "opened"
    CONFIRMED = "confirmed"
    DUPLICATE = "duplicate"
    CLOSED = "closed"
    UNMATCHED = "unmatched"


def _coerce_kind(kind: EventKind | str) -> EventKind:
    try:
        return EventKind(kind)
    except ValueError as e:
        raise InvalidEventError(f"Unknown event kind: {kind!r}") from e


class TransitionProcessor:
    """Applies start/end notifications to an IntervalStore.

    Delivery is at-least-once: duplicate starts and ends without a start are
    logged and ignored. Notifications for the same (user_id, kind) are
    serialized with a per-key lock; different keys run concurrently.
    """

    def __init__(self, store: IntervalStore) -> None:
        self._store = store
        # Entries disappear once no caller holds the lock
        self._locks: weakref.WeakValueDictionary[tuple[str, EventKind], threading.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._locks_guard = threading.Lock()

    def _key_lock(self, user_id: str, kind: EventKind) -> threading.Lock:
        key = (user_id, kind)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def apply(self, notification: PresenceNotification) -> Transition:
        """Dispatch a notification to start_event or end_event."""
        if notification.active:
            return self.start_event(
                notification.kind,
                notification.user_id,
                notification.channel_id,
                notification.guild_id,
                notification.at,
            )
        return self.end_event(notification.kind, notification.user_id, notification.at)

    def start_event(
        self,
        kind: EventKind | str,
        user_id: str,
        channel_id: str | None,
        guild_id: str,
        at: datetime,
    ) -> Transition:
        """Record that `kind` became true for a user on a channel.

        Raises:
            InvalidEventError: If channel_id is empty or the kind is unknown.
        """
        kind = _coerce_kind(kind)
        if not channel_id:
            raise InvalidEventError(f"{kind.value} start for {user_id} has no channel")

        with self._key_lock(user_id, kind):
            # A start right after reconciliation confirms the pending interval
            if self._store.confirm_pending(kind, user_id, channel_id):
                logger.debug("Confirmed pending %s interval for %s", kind.value, user_id)
                return Transition.CONFIRMED

            existing = self._store.get_open(kind, user_id)
            if existing is not None:
                if not existing.needs_verification:
                    logger.debug(
                        "Ignoring duplicate %s start for %s (open since %s)",
                        kind.value,
                        user_id,
                        existing.start,
                    )
                    return Transition.DUPLICATE
                # Pending on another channel: the user moved while untracked
                self._store.close_interval(existing.id, to_ms(at))
                logger.info(
                    "Closed pending %s interval for %s on %s, now on %s",
                    kind.value,
                    user_id,
                    existing.channel_id,
                    channel_id,
                )

            inserted = self._store.insert_open(kind, user_id, channel_id, guild_id, to_ms(at))
            if inserted is None:
                logger.debug("Ignoring duplicate %s start for %s", kind.value, user_id)
                return Transition.DUPLICATE

        logger.debug("Started %s interval for %s on %s", kind.value, user_id, channel_id)
        return Transition.OPENED

    def end_event(self, kind: EventKind | str, user_id: str, at: datetime) -> Transition:
        """Record that `kind` stopped being true for a user.

        An end with no open interval is a no-op: its start may predate tracking.
        """
        kind = _coerce_kind(kind)
        end_ms = to_ms(at)

        with self._key_lock(user_id, kind):
            existing = self._store.get_open(kind, user_id)
            if existing is None:
                logger.debug(
                    "Ignoring %s end for %s: no open interval", kind.value, user_id
                )
                return Transition.UNMATCHED

            if end_ms < existing.start_ms:
                logger.warning(
                    "%s end for %s at %s precedes its start %s; closing at start",
                    kind.value,
                    user_id,
                    at,
                    existing.start,
                )
            closed = self._store.close_interval(existing.id, end_ms)

        if closed is None:
            return Transition.UNMATCHED
        logger.debug(
            "Ended %s interval for %s that lasted %dms",
            kind.value,
            user_id,
            closed.end_ms - closed.start_ms,
        )
        return Transition.CLOSED

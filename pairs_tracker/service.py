"""Tracker service: wires the store, processor, reconciler and pairs queries."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Iterable
from datetime import datetime, timedelta

from pairs_tracker.db import RETENTION, IntervalStore
from pairs_tracker.errors import TrackerError
from pairs_tracker.pairs import PairAggregate, QuerySpec, top_pairs
from pairs_tracker.presence import (
    PresenceNotification,
    PresenceOracle,
    VoiceState,
    diff_voice_states,
)
from pairs_tracker.reconcile import Reconciler, ReconcileReport
from pairs_tracker.transitions import Transition, TransitionProcessor

logger = logging.getLogger(__name__)


class TrackerService:
    """Entry point for the presence collaborator and the query front end.

    reconcile() is a barrier: notifications submitted while it runs are held
    back and replayed in arrival order once every open interval is verified,
    so a fresh start can never race a stale interval for the same key.
    """

    def __init__(
        self,
        store: IntervalStore,
        oracle: PresenceOracle,
        *,
        oracle_timeout: float = 10.0,
        reconcile_timeout: float | None = 60.0,
        query_timeout: float | None = 30.0,
        retention: timedelta = RETENTION,
    ) -> None:
        self.store = store
        self.processor = TransitionProcessor(store)
        self.reconciler = Reconciler(
            store,
            oracle,
            oracle_timeout=oracle_timeout,
            pass_timeout=reconcile_timeout,
            processor=self.processor,
        )
        self._query_timeout = query_timeout
        self._retention = retention

        self._cond = threading.Condition()
        self._reconciling = False
        self._in_flight = 0
        self._backlog: deque[PresenceNotification] = deque()

    @property
    def backlog_size(self) -> int:
        with self._cond:
            return len(self._backlog)

    def submit(self, notification: PresenceNotification) -> Transition | None:
        """Apply a notification, or queue it while reconciliation runs.

        Returns:
            The transition applied, or None if the notification was queued.

        Raises:
            InvalidEventError: If the notification is malformed.
        """
        with self._cond:
            if self._reconciling:
                self._backlog.append(notification)
                return None
            self._in_flight += 1
        try:
            return self.processor.apply(notification)
        finally:
            with self._cond:
                self._in_flight -= 1
                self._cond.notify_all()

    def submit_voice_update(
        self,
        before: VoiceState | None,
        after: VoiceState | None,
        at: datetime,
    ) -> list[Transition | None]:
        """Fan a voice-state change out into notifications and submit each."""
        return [self.submit(n) for n in diff_voice_states(before, after, at)]

    def reconcile(
        self,
        *,
        now: datetime | None = None,
        states: Iterable[VoiceState] = (),
    ) -> ReconcileReport:
        """Verify every open interval, holding back new notifications meanwhile.

        `states` are the current voice states; users among them with nothing
        open get an interval starting at `now`.

        Raises:
            ReconcileTimeoutError: If the pass ran past `reconcile_timeout`.
                Queued notifications are still replayed.
        """
        with self._cond:
            self._reconciling = True
            self._cond.wait_for(lambda: self._in_flight == 0)
        try:
            return self.reconciler.run(now=now, states=states)
        finally:
            self._replay_backlog()

    def _replay_backlog(self) -> None:
        replayed = 0
        while True:
            with self._cond:
                if not self._backlog:
                    self._reconciling = False
                    self._cond.notify_all()
                    break
                notification = self._backlog.popleft()
            try:
                self.processor.apply(notification)
                replayed += 1
            except TrackerError as e:
                logger.warning("Dropped queued %s notification: %s", notification.kind.value, e)
        if replayed:
            logger.info("Replayed %d notifications queued during reconciliation", replayed)

    def top_pairs(self, spec: QuerySpec, *, now: datetime | None = None) -> list[PairAggregate]:
        return top_pairs(self.store, spec, now=now, timeout=self._query_timeout)

    def purge_expired(self, *, now: datetime | None = None) -> int:
        """Apply the retention policy. Returns the number of intervals deleted."""
        purged = self.store.purge_expired(now=now, retention=self._retention)
        if purged:
            logger.info("Purged %d expired intervals", purged)
        return purged

    def log_status(self) -> dict[str, int]:
        """Log and return open and total interval counts."""
        status = {
            "open": self.store.count_open(),
            "total": self.store.count_events(),
            "backlog": self.backlog_size,
        }
        logger.info("Open intervals: %d", status["open"])
        logger.info("Intervals stored: %d", status["total"])
        return status

"""Reconcile open intervals against the presence oracle after a tracking gap."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import TypeVar

from pydantic import BaseModel

from pairs_tracker.db import EventKind, IntervalEvent, IntervalStore, to_ms
from pairs_tracker.errors import (
    OracleError,
    OracleTimeoutError,
    ReconcileTimeoutError,
    TrackerError,
)
from pairs_tracker.presence import PresenceOracle, VoiceState, diff_voice_states
from pairs_tracker.transitions import Transition, TransitionProcessor

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReconcileReport(BaseModel):
    """Outcome of one reconciliation pass."""

    pending: int = 0
    confirmed: int = 0
    closed: int = 0
    expired: int = 0
    opened: int = 0


class Reconciler:
    """Confirms or closes every open interval using the presence oracle.

    1. Every open interval is marked as needing verification.
    2. The oracle is asked about each one, in one snapshot call by default.
       In per-record mode every record gets its own worker, so one stuck
       call only costs that record.
    3. Confirmed intervals stay open; intervals the oracle denies are closed now.
    4. Whatever is still unverified (oracle timeout or failure) is deleted.
    5. Current voice states, when given, are replayed so users already in
       voice get an open interval.
    """

    def __init__(
        self,
        store: IntervalStore,
        oracle: PresenceOracle,
        *,
        oracle_timeout: float = 10.0,
        pass_timeout: float | None = None,
        batch: bool = True,
        processor: TransitionProcessor | None = None,
    ) -> None:
        self._store = store
        self._oracle = oracle
        self._oracle_timeout = oracle_timeout
        self._pass_timeout = pass_timeout
        self._batch = batch
        self._processor = processor or TransitionProcessor(store)

    def run(
        self,
        *,
        now: datetime | None = None,
        states: Iterable[VoiceState] = (),
    ) -> ReconcileReport:
        """Run a full reconciliation pass.

        Args:
            now: Close time for intervals that are no longer true, and start
                time for seeded ones (default: now).
            states: Current voice states to seed intervals from.

        Raises:
            ReconcileTimeoutError: If the oracle was still answering when the
                pass budget ran out. The store is left reconciled as far as
                the answers received allow.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        started = time.monotonic()

        report = ReconcileReport(pending=self._store.mark_all_pending())
        pending = self._store.get_pending()
        logger.info("Verifying %d open intervals against presence oracle", len(pending))

        answers, out_of_budget = self._ask(pending, started)
        for event in pending:
            active = answers.get(event.id)
            if active is None:
                continue
            if active:
                self._store.confirm(event.id)
                report.confirmed += 1
            else:
                self._store.close_interval(event.id, to_ms(now))
                report.closed += 1
                logger.debug(
                    "Closed stale %s interval for %s on %s",
                    event.kind.value,
                    event.user_id,
                    event.channel_id,
                )

        report.expired = self._store.delete_pending()
        report.opened = self._seed(states, now)
        logger.info(
            "Reconciled %d open intervals: %d confirmed, %d closed, %d removed unconfirmed, "
            "%d opened",
            report.pending,
            report.confirmed,
            report.closed,
            report.expired,
            report.opened,
        )

        if out_of_budget:
            logger.error("Reconciliation ran past its %ss budget", self._pass_timeout)
            raise ReconcileTimeoutError(self._pass_timeout, report)
        return report

    def _ask(
        self, pending: list[IntervalEvent], started: float
    ) -> tuple[dict[str, bool], bool]:
        """Ask the oracle about every pending interval.

        Returns:
            Answers by interval id (a missing id could not be confirmed), and
            whether the pass budget cut the wait short.
        """
        if not pending:
            return {}, False

        timeout = self._oracle_timeout
        budget_bound = False
        if self._pass_timeout is not None:
            remaining = max(0.0, self._pass_timeout - (time.monotonic() - started))
            if remaining < timeout:
                timeout, budget_bound = remaining, True

        workers = 1 if self._batch else len(pending)
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="presence-oracle")
        try:
            if self._batch:
                futures: dict[Future, IntervalEvent | None] = {
                    executor.submit(self._oracle.snapshot_active): None
                }
            else:
                futures = {
                    executor.submit(
                        self._oracle.is_active, event.channel_id, event.user_id, event.kind
                    ): event
                    for event in pending
                }
            done, not_done = wait(futures, timeout=timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        out_of_budget = budget_bound and bool(not_done)

        if self._batch:
            (future,) = futures
            try:
                active = self._result(future, future in done, timeout)
            except OracleError as e:
                logger.warning("Could not fetch presence snapshot: %s", e)
                return {}, out_of_budget
            # Normalize kinds: plain strings and EventKind members hash differently
            snapshot = {(channel_id, user_id, EventKind(kind)) for channel_id, user_id, kind in active}
            return {
                event.id: (event.channel_id, event.user_id, event.kind) in snapshot
                for event in pending
            }, out_of_budget

        answers: dict[str, bool] = {}
        for future, event in futures.items():
            try:
                answers[event.id] = bool(self._result(future, future in done, timeout))
            except OracleError as e:
                logger.warning(
                    "Could not verify %s interval for %s: %s", event.kind.value, event.user_id, e
                )
        return answers, out_of_budget

    @staticmethod
    def _result(future: Future[T], finished: bool, timeout: float) -> T:
        """Collect an oracle answer.

        Raises:
            OracleTimeoutError: If the call had not finished in time.
            OracleError: If the call raised.
        """
        if not finished:
            future.cancel()
            raise OracleTimeoutError(timeout)
        try:
            return future.result()
        except Exception as e:
            raise OracleError(f"Presence oracle failed: {e}") from e

    def _seed(self, states: Iterable[VoiceState], now: datetime) -> int:
        """Replay current voice states. Returns the number of intervals opened."""
        opened = 0
        for state in states:
            for notification in diff_voice_states(None, state, now):
                try:
                    result = self._processor.apply(notification)
                except TrackerError as e:
                    logger.warning(
                        "Could not seed %s for %s: %s", notification.kind.value, state.user_id, e
                    )
                    continue
                if result is Transition.OPENED:
                    opened += 1
        if opened:
            logger.info("Opened %d intervals for users already in voice", opened)
        return opened

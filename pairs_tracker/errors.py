"""Exceptions raised by the pairs tracker."""

from __future__ import annotations


class TrackerError(Exception):
    """Base exception for tracker errors."""

    pass


class InvalidEventError(TrackerError):
    """Raised for a malformed presence notification (e.g. start without a channel)."""

    pass


class OracleError(TrackerError):
    """Raised when the presence oracle fails to answer."""

    pass


class OracleTimeoutError(OracleError):
    """Raised when the presence oracle does not answer within its timeout."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Presence oracle did not answer within {timeout}s")
        self.timeout = timeout


class ReconcileTimeoutError(TrackerError):
    """Raised when a reconciliation pass runs past its overall budget.

    Records the oracle had not answered for were removed as unconfirmed;
    `report` holds the counts of the pass.
    """

    def __init__(self, timeout: float, report) -> None:
        super().__init__(f"Reconciliation did not finish within {timeout}s")
        self.timeout = timeout
        self.report = report


class AggregationQueryError(TrackerError):
    """Raised when a pairs query fails. Partial results are never returned."""

    pass

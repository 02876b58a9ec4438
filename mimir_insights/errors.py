"""Exception taxonomy shared by discovery, caching and capacity planning.

Background tasks log these and carry on to the next tick; synchronous
callers (first cache population, forced refresh, capacity reports) see
them raised.
"""

from __future__ import annotations


class MimirInsightsError(Exception):
    """Base class for every error raised by this package."""


class PartialSourceFailure(MimirInsightsError):
    """One discovery sub-source failed; the cycle continues without it."""

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"{source}: {reason}")
        self.source = source
        self.reason = reason


class ClusterError(PartialSourceFailure):
    """A kubectl call failed for a reason other than not-found or timeout."""


class TotalDiscoveryFailure(MimirInsightsError):
    """Every sub-source of a discovery operation failed."""

    def __init__(self, operation: str, failures: list[MimirInsightsError] | None = None) -> None:
        self.operation = operation
        self.failures = list(failures or [])
        detail = "; ".join(str(f) for f in self.failures) or "no sources succeeded"
        super().__init__(f"{operation} failed: {detail}")


class AdmissionRejected(MimirInsightsError):
    """The memory budget refused to store an item."""

    def __init__(self, category: str, size: int, reason: str) -> None:
        super().__init__(f"cannot admit {size} bytes into '{category}': {reason}")
        self.category = category
        self.size = size
        self.reason = reason


class QueryTimeout(PartialSourceFailure):
    """A cluster or metrics call exceeded its deadline.

    Subclasses ``PartialSourceFailure`` so discovery folds it in like any
    other failed source; the capacity planner lets it propagate.
    """

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(operation, f"timed out after {timeout:g}s")
        self.operation = operation
        self.timeout = timeout


class MetricsQueryError(MimirInsightsError):
    """The metrics backend returned an error or an unparseable response."""


class OperationCancelled(MimirInsightsError):
    """A call observed its cancellation signal and stopped early."""


class DiscoveryCancelled(OperationCancelled):
    """Discovery was cancelled between two cluster calls."""


class QueryCancelled(OperationCancelled):
    """A metrics query was cancelled before it was sent."""

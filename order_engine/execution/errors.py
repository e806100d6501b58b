"""Exception hierarchy for the order pipeline.

Submission problems are reported synchronously to the caller. Everything under
`OrderExecutionError` is a per-attempt failure that the job queue retries.
"""

from __future__ import annotations


class OrderEngineError(RuntimeError):
    pass


class OrderValidationError(OrderEngineError, ValueError):
    """Submitted order is malformed; no job is created."""


class OrderExecutionError(OrderEngineError):
    pass


class RoutingError(OrderExecutionError):
    """At least one quote source failed; routing never falls back to a single source."""


class SwapExecutionError(OrderExecutionError):
    pass


class StageTimeoutError(OrderExecutionError):
    def __init__(self, stage: str, timeout_s: float):
        super().__init__(f"{stage} timed out after {timeout_s:g}s")
        self.stage = stage
        self.timeout_s = timeout_s


__all__ = [
    "OrderEngineError",
    "OrderExecutionError",
    "OrderValidationError",
    "RoutingError",
    "StageTimeoutError",
    "SwapExecutionError",
]

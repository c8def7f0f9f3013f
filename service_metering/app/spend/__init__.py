"""
Paid-work execution with exactly-once charging.
"""

from .executor import (
    DOWNSTREAM_ERROR,
    DOWNSTREAM_TIMEOUT,
    REFUND_FAILED,
    REQUEST_IN_PROGRESS,
    SpendExecutor,
    SpendOutcome,
    SpendState,
    WorkFailed,
)

__all__ = [
    "DOWNSTREAM_ERROR",
    "DOWNSTREAM_TIMEOUT",
    "REFUND_FAILED",
    "REQUEST_IN_PROGRESS",
    "SpendExecutor",
    "SpendOutcome",
    "SpendState",
    "WorkFailed",
]

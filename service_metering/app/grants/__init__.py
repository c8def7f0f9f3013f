"""
Scheduled ledger jobs: periodic grants and spend reconciliation.
"""

from .reconciler import RECONCILIATION_REASON, SpendReconciler
from .scheduler import GrantScheduler

__all__ = ["GrantScheduler", "RECONCILIATION_REASON", "SpendReconciler"]

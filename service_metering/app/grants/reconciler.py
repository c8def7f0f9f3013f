"""
Sweep for spends that never reached a settlement.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..ledger.access import SystemLedger
from ..ledger.exceptions import SpendAlreadySettled
from ..ledger.models import utcnow

RECONCILIATION_REASON = "reconciliation"


class SpendReconciler:
    """Refunds spends left unsettled after a crash or a failed refund.

    A spend becomes eligible once it is older than ``reconcile_after``
    seconds, which must exceed the work timeout so live requests are never
    refunded underneath their executor.
    """

    def __init__(
        self,
        ledger: SystemLedger,
        *,
        reconcile_after: float,
        batch_size: int = 100,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ledger = ledger
        self.reconcile_after = reconcile_after
        self.batch_size = batch_size
        self.metrics = metrics
        self.logger = get_logger("metering.reconciler")
        self._clock = clock

    async def run(self, older_than: Optional[datetime] = None) -> int:
        """Refund eligible orphaned spends and return how many were refunded."""
        cutoff = older_than or (self._clock() - timedelta(seconds=self.reconcile_after))
        orphans = await self.ledger.list_unsettled_spends(cutoff, self.batch_size)
        refunded = 0

        for spend in orphans:
            try:
                result = await self.ledger.refund(
                    spend.account_id,
                    spend.idempotency_key,
                    spend.amount,
                    RECONCILIATION_REASON,
                )
            except SpendAlreadySettled:
                # Settled between listing and refunding.
                continue
            except Exception as e:
                self.logger.error(
                    "Reconciliation refund failed",
                    account_id=spend.account_id,
                    idempotency_key=spend.idempotency_key,
                    error=str(e),
                )
                continue

            if not result.replayed:
                refunded += 1
                self.logger.warning(
                    "Orphaned spend refunded",
                    account_id=spend.account_id,
                    idempotency_key=spend.idempotency_key,
                    amount=spend.amount,
                    spent_at=spend.created_at.isoformat(),
                )

        if self.metrics is not None:
            self.metrics.record_reconciled(refunded)
        self.logger.info("Reconciliation finished", candidates=len(orphans), refunded=refunded)
        return refunded

"""
Monthly token grants.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..ledger.access import SystemLedger
from ..ledger.models import period_key_for, utcnow, validate_period_key


class GrantScheduler:
    """Credits every due entitlement once per period.

    The period record and the credit are written in one ledger unit, so a
    re-run for the same period skips accounts that were already granted.
    """

    def __init__(
        self,
        ledger: SystemLedger,
        *,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = utcnow,
        batch_size: Optional[int] = None,
    ) -> None:
        self.ledger = ledger
        self.metrics = metrics
        self.batch_size = batch_size
        self.logger = get_logger("metering.grants")
        self._clock = clock

    async def run_period(self, period_key: Optional[str] = None, now: Optional[datetime] = None) -> int:
        """Grant ``period_key`` (default: current UTC month) and return how many accounts were credited."""
        now = now or self._clock()
        period_key = validate_period_key(period_key or period_key_for(now))

        due = await self.ledger.list_due_entitlements(now, self.batch_size)
        processed = 0
        failed = 0

        for entitlement in due:
            try:
                result = await self.ledger.apply_grant(entitlement.account_id, period_key, now)
            except Exception as e:
                failed += 1
                self.logger.error(
                    "Grant failed",
                    account_id=entitlement.account_id,
                    period_key=period_key,
                    error=str(e),
                )
                continue

            if result.applied:
                processed += 1
                self.logger.info(
                    "Grant applied",
                    account_id=result.account_id,
                    period_key=period_key,
                    amount=result.amount,
                    renews_at=result.renews_at.isoformat(),
                )

        if self.metrics is not None:
            self.metrics.record_grants(period_key, processed)
        self.logger.info(
            "Grant period run finished",
            period_key=period_key,
            due=len(due),
            processed=processed,
            failed=failed,
        )
        return processed

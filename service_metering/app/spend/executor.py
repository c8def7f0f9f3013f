"""
Charge-then-work orchestration with compensating refunds.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, call_with_retry

from ..auth.verifier import IdentityVerifier
from ..ledger.access import LedgerAccess, ScopedLedger
from ..ledger.exceptions import IdempotencyKeyInvalid, InsufficientFunds, InvalidAmount, LedgerError
from ..ledger.models import CreditResult, DebitResult, SettlementStatus, check_amount, normalize_idempotency_key

Work = Callable[[], Awaitable[Any]]

REQUEST_IN_PROGRESS = "REQUEST_IN_PROGRESS"
DOWNSTREAM_TIMEOUT = "DOWNSTREAM_TIMEOUT"
DOWNSTREAM_ERROR = "DOWNSTREAM_ERROR"
REFUND_FAILED = "REFUND_FAILED"


class SpendState(str, Enum):
    IDLE = "idle"
    CHARGING = "charging"
    WORKING = "working"
    COMMITTED = "committed"
    REFUNDING = "refunding"
    REFUNDED = "refunded"
    REFUND_FAILED = "refund_failed"
    REJECTED = "rejected"


class WorkFailed(Exception):
    """Typed failure reported by a paid-work callback."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


@dataclass
class SpendOutcome:
    """Terminal result of one charged request.

    ``COMMITTED`` means the charge stands, ``REFUNDED`` means it was charged
    and returned, ``REJECTED`` means nothing was charged by this request.
    ``REFUND_FAILED`` leaves the spend for the reconciler.
    """

    state: SpendState
    request_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    account_id: Optional[str] = None
    charged: int = 0
    new_balance: Optional[int] = None
    result: Any = None
    replayed: bool = False
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    error_details: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.state is SpendState.COMMITTED


class SpendExecutor:
    """Runs paid work so every request ends with no charge, a committed
    charge, or a charge and its refund."""

    def __init__(
        self,
        verifier: IdentityVerifier,
        ledger_access: LedgerAccess,
        *,
        work_timeout: float = 50.0,
        refund_retry: Optional[RetryConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.verifier = verifier
        self.ledger_access = ledger_access
        self.work_timeout = work_timeout
        self.refund_retry = refund_retry or RetryConfig(max_attempts=3, base_delay=0.2, max_delay=2.0)
        self.metrics = metrics
        self.logger = get_logger("metering.spend")
        self._background: Set[asyncio.Task] = set()

    async def execute(
        self,
        authorization: Optional[str],
        cost: int,
        idempotency_key: Optional[str],
        work: Work,
        request_id: Optional[str] = None,
    ) -> SpendOutcome:
        """Verify the caller, then charge ``cost`` for ``work``."""
        verification = await self.verifier.verify(authorization, request_id)
        if not verification.ok:
            error = verification.error
            return self._finish(SpendOutcome(
                state=SpendState.REJECTED,
                request_id=request_id,
                error_code=error.code,
                error_message=error.message,
                error_details=error.details,
            ))

        try:
            normalize_idempotency_key(idempotency_key)
            check_amount(cost)
        except (IdempotencyKeyInvalid, InvalidAmount) as exc:
            return self._finish(self._rejected(exc, request_id, idempotency_key))

        ledger = await self.ledger_access.for_subject(verification.identity.subject, create=True)
        return await self.charge(ledger, cost, idempotency_key, work, request_id)

    async def charge(
        self,
        ledger: ScopedLedger,
        cost: int,
        idempotency_key: str,
        work: Work,
        request_id: Optional[str] = None,
    ) -> SpendOutcome:
        """Debit ``ledger`` and run ``work``, refunding if it does not succeed."""
        log = self.logger.bind(account_id=ledger.account_id, idempotency_key=idempotency_key)
        log.debug("Charging", cost=cost, state=SpendState.CHARGING.value)

        try:
            debit = await ledger.debit(cost, idempotency_key)
        except (InsufficientFunds, IdempotencyKeyInvalid, InvalidAmount) as exc:
            return self._finish(self._rejected(exc, request_id, idempotency_key, ledger.account_id))

        if debit.replayed:
            return self._finish(await self._replay(ledger, debit, request_id))
        return self._finish(await self._work(ledger, debit, work, request_id))

    async def drain(self) -> None:
        """Wait for detached refunds still in flight."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def _work(self, ledger: ScopedLedger, debit: DebitResult, work: Work,
                    request_id: Optional[str]) -> SpendOutcome:
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(work(), timeout=self.work_timeout)
        except asyncio.TimeoutError:
            self._observe(SpendState.REFUNDING, started)
            return await self._compensate(ledger, debit, "timeout", request_id,
                                          DOWNSTREAM_TIMEOUT, "Paid work timed out")
        except Exception as exc:
            self._observe(SpendState.REFUNDING, started)
            message = exc.message if isinstance(exc, WorkFailed) else "Paid work failed"
            self.logger.warning(
                "Paid work failed",
                account_id=ledger.account_id,
                idempotency_key=debit.idempotency_key,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return await self._compensate(ledger, debit, "error", request_id, DOWNSTREAM_ERROR, message)
        except BaseException:
            # Caller went away; the refund must still complete.
            await self._detached_refund(ledger, debit, "cancelled", request_id)
            raise

        self._observe(SpendState.COMMITTED, started)
        try:
            await ledger.mark_committed(debit.idempotency_key, result)
        except Exception as exc:
            self.logger.error(
                "Failed to record spend settlement",
                account_id=ledger.account_id,
                idempotency_key=debit.idempotency_key,
                error=str(exc),
            )

        return SpendOutcome(
            state=SpendState.COMMITTED,
            request_id=request_id,
            idempotency_key=debit.idempotency_key,
            account_id=ledger.account_id,
            charged=debit.amount,
            new_balance=debit.new_balance,
            result=result,
        )

    async def _replay(self, ledger: ScopedLedger, debit: DebitResult,
                      request_id: Optional[str]) -> SpendOutcome:
        settlement = await ledger.settlement(debit.idempotency_key)
        outcome = SpendOutcome(
            state=SpendState.REJECTED,
            request_id=request_id,
            idempotency_key=debit.idempotency_key,
            account_id=ledger.account_id,
            replayed=True,
        )

        if settlement is None:
            outcome.error_code = REQUEST_IN_PROGRESS
            outcome.error_message = "A request with this idempotency key is still in progress"
        elif settlement.status is SettlementStatus.COMMITTED:
            outcome.state = SpendState.COMMITTED
            outcome.charged = debit.amount
            outcome.new_balance = debit.new_balance
            outcome.result = settlement.result
        else:
            outcome.state = SpendState.REFUNDED
            outcome.charged = debit.amount
            if settlement.reason == "timeout":
                outcome.error_code, outcome.error_message = DOWNSTREAM_TIMEOUT, "Paid work timed out"
            else:
                outcome.error_code, outcome.error_message = DOWNSTREAM_ERROR, "Paid work failed"
            outcome.error_details = {"refund_reason": settlement.reason}
        return outcome

    async def _compensate(self, ledger: ScopedLedger, debit: DebitResult, reason: str,
                          request_id: Optional[str], code: str, message: str) -> SpendOutcome:
        refund = await self._detached_refund(ledger, debit, reason, request_id)
        if refund is None:
            return SpendOutcome(
                state=SpendState.REFUND_FAILED,
                request_id=request_id,
                idempotency_key=debit.idempotency_key,
                account_id=ledger.account_id,
                charged=debit.amount,
                error_code=REFUND_FAILED,
                error_message="Paid work failed and the refund could not be recorded",
                error_details={"cause": code},
            )

        return SpendOutcome(
            state=SpendState.REFUNDED,
            request_id=request_id,
            idempotency_key=debit.idempotency_key,
            account_id=ledger.account_id,
            charged=debit.amount,
            new_balance=refund.new_balance,
            error_code=code,
            error_message=message,
            error_details={"refund_reason": reason},
        )

    async def _refund(self, ledger: ScopedLedger, debit: DebitResult, reason: str,
                      request_id: Optional[str]) -> Optional[CreditResult]:
        try:
            result = await call_with_retry(
                ledger.refund,
                debit.idempotency_key,
                debit.amount,
                reason,
                exceptions=(Exception,),
                give_up_on=(LedgerError,),
                config=self.refund_retry,
            )
        except (RetryError, LedgerError) as exc:
            self.logger.critical(
                "Refund failed, spend left for reconciliation",
                account_id=ledger.account_id,
                idempotency_key=debit.idempotency_key,
                amount=debit.amount,
                reason=reason,
                request_id=request_id,
                error=str(exc),
            )
            if self.metrics is not None:
                self.metrics.record_refund_failure()
            return None

        if self.metrics is not None:
            self.metrics.record_refund(reason)
        self.logger.info(
            "Spend refunded",
            account_id=ledger.account_id,
            idempotency_key=debit.idempotency_key,
            amount=debit.amount,
            reason=reason,
            new_balance=result.new_balance,
        )
        return result

    async def _detached_refund(self, ledger: ScopedLedger, debit: DebitResult, reason: str,
                               request_id: Optional[str]) -> Optional[CreditResult]:
        """Run the refund in a tracked task that a cancelled request cannot abort.

        If the caller is cancelled while waiting, the refund is awaited to
        completion before the cancellation propagates.
        """
        task = self._spawn_refund(ledger, debit, reason, request_id)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.wait({task})
            raise

    def _spawn_refund(self, ledger: ScopedLedger, debit: DebitResult, reason: str,
                      request_id: Optional[str]) -> asyncio.Task:
        task = asyncio.ensure_future(self._refund(ledger, debit, reason, request_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _rejected(self, exc: LedgerError, request_id: Optional[str], idempotency_key: Optional[str],
                  account_id: Optional[str] = None) -> SpendOutcome:
        return SpendOutcome(
            state=SpendState.REJECTED,
            request_id=request_id,
            idempotency_key=idempotency_key if isinstance(idempotency_key, str) else None,
            account_id=account_id,
            error_code=exc.code,
            error_message=exc.message,
            error_details=exc.details,
        )

    def _observe(self, state: SpendState, started: float) -> None:
        if self.metrics is not None:
            self.metrics.observe_work(state.value, time.monotonic() - started)

    def _finish(self, outcome: SpendOutcome) -> SpendOutcome:
        if self.metrics is not None:
            self.metrics.record_spend_outcome(outcome.state.value, outcome.error_code)
        self.logger.info(
            "Spend finished",
            state=outcome.state.value,
            code=outcome.error_code,
            account_id=outcome.account_id,
            idempotency_key=outcome.idempotency_key,
            charged=outcome.charged,
            replayed=outcome.replayed,
        )
        return outcome

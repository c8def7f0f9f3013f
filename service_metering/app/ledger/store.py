"""
Ledger store contract shared by the PostgreSQL and in-memory backends.

Public methods validate their arguments before any backend access and then
delegate to the backend's atomic ``_`` methods. Every balance change happens
inside one backend unit together with the transaction row that explains it,
so ``token_balance`` always equals the sum of the account's transactions.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from shared.logging import get_logger

from .exceptions import InvalidAmount, UnknownPlan
from .models import (
    DEFAULT_PLANS,
    Account,
    CreditResult,
    DebitResult,
    DueEntitlement,
    EnsureAccountResult,
    Entitlement,
    GrantResult,
    LedgerAudit,
    Plan,
    Settlement,
    TransactionKind,
    Transaction,
    UnsettledSpend,
    check_amount,
    normalize_idempotency_key,
    utcnow,
    validate_period_key,
)

MAX_LIST_LIMIT = 500


class LedgerStore(ABC):
    """Atomic account, entitlement and transaction operations."""

    backend = "abstract"

    def __init__(
        self,
        plans: Optional[Mapping[str, Plan]] = None,
        default_plan: str = "free",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.plans: Dict[str, Plan] = dict(plans or DEFAULT_PLANS)
        self.default_plan = default_plan
        self.logger = get_logger(f"metering.ledger.{self.backend}")
        self._now = clock or utcnow

    async def start(self) -> None:
        """Prepare the backend."""

    async def stop(self) -> None:
        """Release backend resources."""

    async def check_health(self) -> str:
        return "ok"

    def get_plan(self, plan_id: str) -> Plan:
        plan = self.plans.get(plan_id)
        if plan is None:
            raise UnknownPlan(plan_id)
        return plan

    async def get_balance(self, account_id: str) -> int:
        """Current balance, 0 when the account has no entitlement yet."""
        entitlement = await self._get_entitlement(account_id)
        return entitlement.token_balance if entitlement else 0

    async def debit(self, account_id: str, cost: int, idempotency_key: str) -> DebitResult:
        """Debit ``cost`` once per idempotency key.

        A repeated key returns the original debit's result with
        ``replayed=True`` whatever ``cost`` is passed the second time.
        """
        key = normalize_idempotency_key(idempotency_key)
        check_amount(cost)
        result = await self._debit(account_id, cost, key)
        self.logger.info(
            "Debit recorded" if not result.replayed else "Debit replayed",
            account_id=account_id,
            amount=result.amount,
            idempotency_key=key,
            new_balance=result.new_balance,
        )
        return result

    async def credit(
        self,
        account_id: str,
        amount: int,
        kind: TransactionKind,
        reference: Optional[Mapping[str, Any]] = None,
    ) -> CreditResult:
        """Append a credit transaction and raise the balance by ``amount``.

        Refund credits must reference the original spend's idempotency key;
        the refund settles that spend and a second refund for the same key is
        a replay.
        """
        kind = TransactionKind(kind)
        if kind is TransactionKind.SPEND:
            raise InvalidAmount("Spends are recorded through debit")
        check_amount(amount)
        reference = dict(reference or {})

        if kind is TransactionKind.REFUND:
            reference["idempotency_key"] = normalize_idempotency_key(reference.get("idempotency_key"))
            reference.setdefault("reason", "error")
            result = await self._refund(account_id, amount, reference)
        else:
            result = await self._credit(account_id, amount, kind, reference)

        self.logger.info(
            "Credit recorded" if not result.replayed else "Credit replayed",
            account_id=account_id,
            kind=kind.value,
            amount=amount,
            new_balance=result.new_balance,
        )
        return result

    async def refund(self, account_id: str, idempotency_key: str, amount: int, reason: str) -> CreditResult:
        return await self.credit(
            account_id,
            amount,
            TransactionKind.REFUND,
            {"idempotency_key": idempotency_key, "reason": reason},
        )

    async def list_transactions(self, account_id: str, limit: int = 50) -> List[Transaction]:
        """Most-recent-first transactions for an account."""
        limit = max(1, min(int(limit), MAX_LIST_LIMIT))
        return await self._list_transactions(account_id, limit)

    async def ensure_account(self, subject: str, plan_id: Optional[str] = None) -> EnsureAccountResult:
        """Create account, entitlement and welcome grant for a new subject; no-op for a known one."""
        if not isinstance(subject, str) or not subject:
            raise ValueError("subject must be a non-empty string")
        plan = self.get_plan(plan_id or self.default_plan)
        result = await self._ensure_account(subject, plan)
        if result.created:
            self.logger.info(
                "Account created",
                account_id=result.account.id,
                plan=plan.id,
                welcome_tokens=plan.tokens_granted,
            )
        return result

    async def get_account(self, account_id: str) -> Optional[Account]:
        return await self._get_account(account_id)

    async def get_account_by_subject(self, subject: str) -> Optional[Account]:
        return await self._get_account_by_subject(subject)

    async def get_entitlement(self, account_id: str) -> Optional[Entitlement]:
        return await self._get_entitlement(account_id)

    async def get_settlement(self, account_id: str, idempotency_key: str) -> Optional[Settlement]:
        return await self._get_settlement(account_id, normalize_idempotency_key(idempotency_key))

    async def mark_committed(self, account_id: str, idempotency_key: str, result: Any = None) -> bool:
        """Settle a spend as committed, keeping the work's JSON result as its record.

        Returns False if the spend was already settled.
        """
        return await self._mark_committed(account_id, normalize_idempotency_key(idempotency_key), result)

    async def apply_grant(self, account_id: str, period_key: str, now: Optional[datetime] = None) -> GrantResult:
        """Grant the plan's tokens for ``period_key`` if due and not yet granted for that period."""
        validate_period_key(period_key)
        return await self._apply_grant(account_id, period_key, now or self._now())

    async def list_due_entitlements(self, now: Optional[datetime] = None,
                                    limit: Optional[int] = None) -> List[DueEntitlement]:
        return await self._list_due_entitlements(now or self._now(), limit)

    async def list_unsettled_spends(self, older_than: datetime, limit: int = 100) -> List[UnsettledSpend]:
        return await self._list_unsettled_spends(older_than, max(1, limit))

    async def audit(self, account_id: str) -> LedgerAudit:
        return await self._audit(account_id)

    @abstractmethod
    async def _get_entitlement(self, account_id: str) -> Optional[Entitlement]:
        ...

    @abstractmethod
    async def _debit(self, account_id: str, cost: int, idempotency_key: str) -> DebitResult:
        ...

    @abstractmethod
    async def _credit(self, account_id: str, amount: int, kind: TransactionKind,
                      reference: Dict[str, Any]) -> CreditResult:
        ...

    @abstractmethod
    async def _refund(self, account_id: str, amount: int, reference: Dict[str, Any]) -> CreditResult:
        ...

    @abstractmethod
    async def _list_transactions(self, account_id: str, limit: int) -> List[Transaction]:
        ...

    @abstractmethod
    async def _ensure_account(self, subject: str, plan: Plan) -> EnsureAccountResult:
        ...

    @abstractmethod
    async def _get_account(self, account_id: str) -> Optional[Account]:
        ...

    @abstractmethod
    async def _get_account_by_subject(self, subject: str) -> Optional[Account]:
        ...

    @abstractmethod
    async def _get_settlement(self, account_id: str, idempotency_key: str) -> Optional[Settlement]:
        ...

    @abstractmethod
    async def _mark_committed(self, account_id: str, idempotency_key: str, result: Any) -> bool:
        ...

    @abstractmethod
    async def _apply_grant(self, account_id: str, period_key: str, now: datetime) -> GrantResult:
        ...

    @abstractmethod
    async def _list_due_entitlements(self, now: datetime, limit: Optional[int]) -> List[DueEntitlement]:
        ...

    @abstractmethod
    async def _list_unsettled_spends(self, older_than: datetime, limit: int) -> List[UnsettledSpend]:
        ...

    @abstractmethod
    async def _audit(self, account_id: str) -> LedgerAudit:
        ...

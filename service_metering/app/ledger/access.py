"""
Explicit ledger access modes.

Request handlers get a ``ScopedLedger`` bound to the caller's own account and
can reach nothing else. Batch jobs and admin tooling use ``SystemLedger``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from .models import (
    Account,
    CreditResult,
    DebitResult,
    DueEntitlement,
    EnsureAccountResult,
    GrantResult,
    LedgerAudit,
    Settlement,
    Transaction,
    UnsettledSpend,
)
from .store import LedgerStore


class ScopedLedger:
    """Ledger operations limited to one verified account."""

    def __init__(self, store: LedgerStore, account: Account):
        self._store = store
        self.account = account

    @property
    def account_id(self) -> str:
        return self.account.id

    async def balance(self) -> int:
        return await self._store.get_balance(self.account.id)

    async def debit(self, cost: int, idempotency_key: str) -> DebitResult:
        return await self._store.debit(self.account.id, cost, idempotency_key)

    async def refund(self, idempotency_key: str, amount: int, reason: str) -> CreditResult:
        return await self._store.refund(self.account.id, idempotency_key, amount, reason)

    async def mark_committed(self, idempotency_key: str, result: Any = None) -> bool:
        return await self._store.mark_committed(self.account.id, idempotency_key, result)

    async def settlement(self, idempotency_key: str) -> Optional[Settlement]:
        return await self._store.get_settlement(self.account.id, idempotency_key)

    async def transactions(self, limit: int = 50) -> List[Transaction]:
        return await self._store.list_transactions(self.account.id, limit)


class SystemLedger:
    """Cross-account operations for scheduled jobs and administrators."""

    def __init__(self, store: LedgerStore):
        self._store = store

    @property
    def store(self) -> LedgerStore:
        return self._store

    async def ensure_account(self, subject: str, plan_id: Optional[str] = None) -> EnsureAccountResult:
        return await self._store.ensure_account(subject, plan_id)

    async def get_account(self, account_id: str) -> Optional[Account]:
        return await self._store.get_account(account_id)

    async def list_due_entitlements(self, now: Optional[datetime] = None,
                                    limit: Optional[int] = None) -> List[DueEntitlement]:
        return await self._store.list_due_entitlements(now, limit)

    async def apply_grant(self, account_id: str, period_key: str, now: Optional[datetime] = None) -> GrantResult:
        return await self._store.apply_grant(account_id, period_key, now)

    async def list_unsettled_spends(self, older_than: datetime, limit: int = 100) -> List[UnsettledSpend]:
        return await self._store.list_unsettled_spends(older_than, limit)

    async def refund(self, account_id: str, idempotency_key: str, amount: int, reason: str) -> CreditResult:
        return await self._store.refund(account_id, idempotency_key, amount, reason)

    async def audit(self, account_id: str) -> LedgerAudit:
        return await self._store.audit(account_id)


class LedgerAccess:
    """Hands out scoped or system ledger handles over one store."""

    def __init__(self, store: LedgerStore):
        self.store = store
        self._system = SystemLedger(store)

    async def for_subject(self, subject: str, *, create: bool = False) -> Optional[ScopedLedger]:
        """Ledger for a verified subject's account.

        With ``create`` a first-time subject gets an account (and welcome
        grant); otherwise an unknown subject yields None.
        """
        if create:
            account = (await self.store.ensure_account(subject)).account
        else:
            account = await self.store.get_account_by_subject(subject)
            if account is None:
                return None
        return ScopedLedger(self.store, account)

    def system(self) -> SystemLedger:
        return self._system

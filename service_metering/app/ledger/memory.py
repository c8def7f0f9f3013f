"""
In-process ledger backend for local development and tests.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from .exceptions import AccountNotFound, InsufficientFunds, InvalidAmount, SpendAlreadySettled, SpendNotFound
from .models import (
    DEFAULT_ROLE,
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
    SettlementStatus,
    Transaction,
    TransactionKind,
    UnsettledSpend,
    add_month,
    first_of_next_month,
)
from .store import LedgerStore

SpendKey = Tuple[str, str]


class InMemoryLedgerStore(LedgerStore):
    """Dictionary-backed ledger with one asyncio lock per account.

    ``latency`` inserts an await between reading and writing a balance,
    standing in for a database round trip.
    """

    backend = "memory"

    def __init__(
        self,
        plans: Optional[Mapping[str, Plan]] = None,
        default_plan: str = "free",
        clock: Optional[Callable[[], datetime]] = None,
        latency: float = 0.0,
    ) -> None:
        super().__init__(plans, default_plan, clock)
        self.latency = latency

        self._accounts: Dict[str, Account] = {}
        self._subjects: Dict[str, str] = {}
        self._entitlements: Dict[str, Entitlement] = {}
        self._transactions: Dict[str, List[Transaction]] = defaultdict(list)
        self._spends: Dict[SpendKey, Transaction] = {}
        self._refunds: Dict[SpendKey, Transaction] = {}
        self._settlements: Dict[SpendKey, Settlement] = {}
        self._grant_periods: Set[Tuple[str, str]] = set()

        self._locks: Dict[str, asyncio.Lock] = {}
        self._accounts_lock = asyncio.Lock()

    def _lock(self, account_id: str) -> asyncio.Lock:
        # Unknown accounts have no state to guard.
        return self._locks.get(account_id) or asyncio.Lock()

    async def _round_trip(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)

    def _append(self, account_id: str, kind: TransactionKind, amount: int,
                reference: Dict[str, Any], previous: Entitlement, **changes: Any) -> Transaction:
        now = self._now()
        balance = previous.token_balance + amount
        transaction = Transaction(
            id=str(uuid.uuid4()),
            account_id=account_id,
            kind=kind,
            amount=amount,
            balance_after=balance,
            created_at=now,
            reference=dict(reference),
        )
        self._entitlements[account_id] = Entitlement(
            account_id=account_id,
            plan_id=changes.get("plan_id", previous.plan_id),
            token_balance=balance,
            renews_at=changes.get("renews_at", previous.renews_at),
            updated_at=now,
        )
        self._transactions[account_id].append(transaction)
        return transaction

    async def _get_entitlement(self, account_id: str) -> Optional[Entitlement]:
        return self._entitlements.get(account_id)

    async def _debit(self, account_id: str, cost: int, idempotency_key: str) -> DebitResult:
        async with self._lock(account_id):
            previous = self._spends.get((account_id, idempotency_key))
            if previous is not None:
                return DebitResult(
                    new_balance=previous.balance_after,
                    transaction_id=previous.id,
                    amount=-previous.amount,
                    idempotency_key=idempotency_key,
                    replayed=True,
                )

            entitlement = self._entitlements.get(account_id)
            balance = entitlement.token_balance if entitlement else 0
            await self._round_trip()
            if entitlement is None or balance < cost:
                raise InsufficientFunds(balance, cost)

            transaction = self._append(
                account_id,
                TransactionKind.SPEND,
                -cost,
                {"idempotency_key": idempotency_key},
                entitlement,
            )
            self._spends[(account_id, idempotency_key)] = transaction
            return DebitResult(
                new_balance=transaction.balance_after,
                transaction_id=transaction.id,
                amount=cost,
                idempotency_key=idempotency_key,
            )

    async def _credit(self, account_id: str, amount: int, kind: TransactionKind,
                      reference: Dict[str, Any]) -> CreditResult:
        async with self._lock(account_id):
            entitlement = self._entitlements.get(account_id)
            if entitlement is None:
                raise AccountNotFound(account_id)
            await self._round_trip()
            transaction = self._append(account_id, kind, amount, reference, entitlement)
            return CreditResult(new_balance=transaction.balance_after, transaction_id=transaction.id)

    async def _refund(self, account_id: str, amount: int, reference: Dict[str, Any]) -> CreditResult:
        key = reference["idempotency_key"]
        async with self._lock(account_id):
            existing = self._refunds.get((account_id, key))
            if existing is not None:
                return CreditResult(new_balance=existing.balance_after, transaction_id=existing.id, replayed=True)

            spend = self._spends.get((account_id, key))
            if spend is None:
                raise SpendNotFound(account_id, key)
            settlement = self._settlements.get((account_id, key))
            if settlement is not None:
                raise SpendAlreadySettled(key, settlement.status.value)
            if amount != -spend.amount:
                raise InvalidAmount("Refund must equal the spent amount", {"spent": -spend.amount, "amount": amount})

            await self._round_trip()
            transaction = self._append(account_id, TransactionKind.REFUND, amount, reference,
                                       self._entitlements[account_id])
            self._refunds[(account_id, key)] = transaction
            self._settlements[(account_id, key)] = Settlement(
                status=SettlementStatus.REFUNDED,
                reason=reference.get("reason"),
                settled_at=transaction.created_at,
            )
            return CreditResult(new_balance=transaction.balance_after, transaction_id=transaction.id)

    async def _list_transactions(self, account_id: str, limit: int) -> List[Transaction]:
        return list(reversed(self._transactions.get(account_id, [])))[:limit]

    async def _ensure_account(self, subject: str, plan: Plan) -> EnsureAccountResult:
        async with self._accounts_lock:
            account_id = self._subjects.get(subject)
            if account_id is not None:
                return EnsureAccountResult(
                    account=self._accounts[account_id],
                    entitlement=self._entitlements[account_id],
                    created=False,
                )

            now = self._now()
            account = Account(id=str(uuid.uuid4()), external_subject_id=subject, role=DEFAULT_ROLE, created_at=now)
            opening = Entitlement(
                account_id=account.id,
                plan_id=plan.id,
                token_balance=0,
                renews_at=first_of_next_month(now),
                updated_at=now,
            )
            await self._round_trip()
            self._accounts[account.id] = account
            self._locks[account.id] = asyncio.Lock()
            self._subjects[subject] = account.id
            self._append(
                account.id,
                TransactionKind.WELCOME_GRANT,
                plan.tokens_granted,
                {"reason": "signup", "plan": plan.id, "granted_at": now.isoformat()},
                opening,
            )
            return EnsureAccountResult(account=account, entitlement=self._entitlements[account.id], created=True)

    async def _get_account(self, account_id: str) -> Optional[Account]:
        return self._accounts.get(account_id)

    async def _get_account_by_subject(self, subject: str) -> Optional[Account]:
        account_id = self._subjects.get(subject)
        return self._accounts.get(account_id) if account_id else None

    async def _get_settlement(self, account_id: str, idempotency_key: str) -> Optional[Settlement]:
        return self._settlements.get((account_id, idempotency_key))

    async def _mark_committed(self, account_id: str, idempotency_key: str, result: Any) -> bool:
        key = (account_id, idempotency_key)
        async with self._lock(account_id):
            if key not in self._spends:
                raise SpendNotFound(account_id, idempotency_key)
            if key in self._settlements:
                return False
            self._settlements[key] = Settlement(
                status=SettlementStatus.COMMITTED,
                settled_at=self._now(),
                result=result,
            )
            return True

    async def _apply_grant(self, account_id: str, period_key: str, now: datetime) -> GrantResult:
        async with self._lock(account_id):
            entitlement = self._entitlements.get(account_id)
            if entitlement is None:
                raise AccountNotFound(account_id)

            if (account_id, period_key) in self._grant_periods or entitlement.renews_at > now:
                return GrantResult(
                    account_id=account_id,
                    period_key=period_key,
                    applied=False,
                    new_balance=entitlement.token_balance,
                    renews_at=entitlement.renews_at,
                )

            plan = self.get_plan(entitlement.plan_id)
            renews_at = add_month(entitlement.renews_at)
            await self._round_trip()
            transaction = self._append(
                account_id,
                TransactionKind.MONTHLY_GRANT,
                plan.tokens_granted,
                {"period_key": period_key, "plan": plan.id, "renews_at": renews_at.isoformat()},
                entitlement,
                renews_at=renews_at,
            )
            self._grant_periods.add((account_id, period_key))
            return GrantResult(
                account_id=account_id,
                period_key=period_key,
                applied=True,
                new_balance=transaction.balance_after,
                renews_at=renews_at,
                amount=plan.tokens_granted,
            )

    async def _list_due_entitlements(self, now: datetime, limit: Optional[int]) -> List[DueEntitlement]:
        due = sorted(
            (e for e in self._entitlements.values() if e.renews_at <= now),
            key=lambda e: e.renews_at,
        )
        if limit is not None:
            due = due[:limit]
        return [DueEntitlement(account_id=e.account_id, plan_id=e.plan_id, renews_at=e.renews_at) for e in due]

    async def _list_unsettled_spends(self, older_than: datetime, limit: int) -> List[UnsettledSpend]:
        pending = sorted(
            (
                spend for key, spend in self._spends.items()
                if key not in self._settlements and spend.created_at <= older_than
            ),
            key=lambda spend: spend.created_at,
        )
        return [
            UnsettledSpend(
                account_id=spend.account_id,
                idempotency_key=spend.idempotency_key,
                amount=-spend.amount,
                transaction_id=spend.id,
                created_at=spend.created_at,
            )
            for spend in pending[:limit]
        ]

    async def _audit(self, account_id: str) -> LedgerAudit:
        transactions = self._transactions.get(account_id, [])
        entitlement = self._entitlements.get(account_id)
        return LedgerAudit(
            account_id=account_id,
            token_balance=entitlement.token_balance if entitlement else 0,
            ledger_sum=sum(t.amount for t in transactions),
            transaction_count=len(transactions),
        )

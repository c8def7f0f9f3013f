"""
Ledger domain models and value helpers.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .exceptions import IdempotencyKeyInvalid, InvalidAmount, PeriodKeyInvalid

_UUID4_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$")
_PERIOD_KEY_RE = re.compile(r"^\d{4}(0[1-9]|1[0-2])$")

DEFAULT_ROLE = "viewer"


class TransactionKind(str, Enum):
    WELCOME_GRANT = "welcome_grant"
    MONTHLY_GRANT = "monthly_grant"
    SPEND = "spend"
    REFUND = "refund"


CREDIT_KINDS = frozenset({TransactionKind.WELCOME_GRANT, TransactionKind.MONTHLY_GRANT, TransactionKind.REFUND})


class SettlementStatus(str, Enum):
    COMMITTED = "committed"
    REFUNDED = "refunded"


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    tokens_granted: int


DEFAULT_PLANS: Dict[str, Plan] = {
    "free": Plan(id="free", name="Free", tokens_granted=1000),
    "pro": Plan(id="pro", name="Pro", tokens_granted=10000),
}


@dataclass(frozen=True)
class Account:
    id: str
    external_subject_id: str
    role: str = DEFAULT_ROLE
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Entitlement:
    account_id: str
    plan_id: str
    token_balance: int
    renews_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Transaction:
    """One append-only ledger row. Credits are positive, spends negative."""

    id: str
    account_id: str
    kind: TransactionKind
    amount: int
    balance_after: int
    created_at: datetime
    reference: Dict[str, Any] = field(default_factory=dict)

    @property
    def idempotency_key(self) -> Optional[str]:
        return self.reference.get("idempotency_key")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "amount": self.amount,
            "balance_after": self.balance_after,
            "reference": self.reference,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class Settlement:
    status: SettlementStatus
    reason: Optional[str] = None
    settled_at: Optional[datetime] = None
    result: Any = None


@dataclass(frozen=True)
class DebitResult:
    """Result of a debit. ``replayed`` results carry the original debit's figures."""

    new_balance: int
    transaction_id: str
    amount: int
    idempotency_key: str
    replayed: bool = False


@dataclass(frozen=True)
class CreditResult:
    new_balance: int
    transaction_id: str
    replayed: bool = False


@dataclass(frozen=True)
class EnsureAccountResult:
    account: Account
    entitlement: Entitlement
    created: bool


@dataclass(frozen=True)
class DueEntitlement:
    account_id: str
    plan_id: str
    renews_at: datetime


@dataclass(frozen=True)
class GrantResult:
    account_id: str
    period_key: str
    applied: bool
    new_balance: int
    renews_at: datetime
    amount: int = 0


@dataclass(frozen=True)
class UnsettledSpend:
    account_id: str
    idempotency_key: str
    amount: int
    transaction_id: str
    created_at: datetime


@dataclass(frozen=True)
class LedgerAudit:
    account_id: str
    token_balance: int
    ledger_sum: int
    transaction_count: int

    @property
    def consistent(self) -> bool:
        return self.token_balance == self.ledger_sum and self.token_balance >= 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "token_balance": self.token_balance,
            "ledger_sum": self.ledger_sum,
            "transaction_count": self.transaction_count,
            "consistent": self.consistent,
        }


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_idempotency_key(value: Any) -> str:
    """Validate a UUID v4 idempotency key and return its lowercase form."""
    if not isinstance(value, str):
        raise IdempotencyKeyInvalid("Idempotency key is required")
    key = value.strip().lower()
    if not _UUID4_RE.match(key):
        raise IdempotencyKeyInvalid()
    return key


def check_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
        raise InvalidAmount(details={"amount": repr(amount)})
    return amount


def validate_period_key(value: Any) -> str:
    if not isinstance(value, str) or not _PERIOD_KEY_RE.match(value):
        raise PeriodKeyInvalid(value)
    return value


def period_key_for(moment: datetime) -> str:
    """Return the UTC ``YYYYMM`` period containing ``moment``."""
    return moment.astimezone(timezone.utc).strftime("%Y%m")


def add_month(moment: datetime) -> datetime:
    """Advance by one calendar month, clamping to the last day of shorter months."""
    year, month = (moment.year + 1, 1) if moment.month == 12 else (moment.year, moment.month + 1)
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def first_of_next_month(moment: datetime) -> datetime:
    moment = moment.astimezone(timezone.utc)
    start = moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return add_month(start)

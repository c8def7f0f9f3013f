"""
Token ledger: accounts, entitlements and the append-only transaction log.
"""

from shared.config import BaseConfig

from .access import LedgerAccess, ScopedLedger, SystemLedger
from .exceptions import (
    AccountNotFound,
    IdempotencyKeyInvalid,
    InsufficientFunds,
    InvalidAmount,
    LedgerError,
    PeriodKeyInvalid,
    SpendAlreadySettled,
    SpendNotFound,
    UnknownPlan,
)
from .memory import InMemoryLedgerStore
from .models import (
    DEFAULT_PLANS,
    Account,
    CreditResult,
    DebitResult,
    Entitlement,
    GrantResult,
    LedgerAudit,
    Plan,
    Settlement,
    SettlementStatus,
    Transaction,
    TransactionKind,
    UnsettledSpend,
    period_key_for,
    validate_period_key,
)
from .postgres import PostgresLedgerStore
from .store import LedgerStore


def build_ledger_store(config: BaseConfig) -> LedgerStore:
    """Create the ledger backend selected by ``ledger_backend``."""
    if config.ledger_backend == "memory":
        return InMemoryLedgerStore(default_plan=config.default_plan)
    if config.ledger_backend == "postgres":
        return PostgresLedgerStore(
            config.postgres_dsn,
            min_size=config.postgres_pool_min,
            max_size=config.postgres_pool_max,
            command_timeout=config.postgres_command_timeout,
            default_plan=config.default_plan,
        )
    raise ValueError(f"Unknown ledger backend: {config.ledger_backend}")


__all__ = [
    "DEFAULT_PLANS",
    "Account",
    "AccountNotFound",
    "CreditResult",
    "DebitResult",
    "Entitlement",
    "GrantResult",
    "IdempotencyKeyInvalid",
    "InMemoryLedgerStore",
    "InsufficientFunds",
    "InvalidAmount",
    "LedgerAccess",
    "LedgerAudit",
    "LedgerError",
    "LedgerStore",
    "PeriodKeyInvalid",
    "Plan",
    "PostgresLedgerStore",
    "ScopedLedger",
    "Settlement",
    "SettlementStatus",
    "SpendAlreadySettled",
    "SpendNotFound",
    "SystemLedger",
    "Transaction",
    "TransactionKind",
    "UnknownPlan",
    "UnsettledSpend",
    "build_ledger_store",
    "period_key_for",
    "validate_period_key",
]

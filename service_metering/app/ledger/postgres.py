"""
PostgreSQL ledger backend.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

import asyncpg

from shared.errors import ServiceError

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

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS plans (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        tokens_granted INTEGER NOT NULL CHECK (tokens_granted >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id TEXT PRIMARY KEY,
        external_subject_id TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'viewer',
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entitlements (
        account_id TEXT PRIMARY KEY REFERENCES accounts(id) ON DELETE RESTRICT,
        plan_id TEXT NOT NULL REFERENCES plans(id),
        token_balance INTEGER NOT NULL CHECK (token_balance >= 0),
        renews_at TIMESTAMP WITH TIME ZONE NOT NULL,
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transactions (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE RESTRICT,
        kind TEXT NOT NULL CHECK (kind IN ('welcome_grant', 'monthly_grant', 'spend', 'refund')),
        amount INTEGER NOT NULL,
        reference JSONB NOT NULL DEFAULT '{}',
        idempotency_key TEXT,
        balance_after INTEGER NOT NULL,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_transactions_idempotency
        ON transactions(account_id, kind, idempotency_key)
        WHERE idempotency_key IS NOT NULL
    """,
    "CREATE INDEX IF NOT EXISTS idx_transactions_account_seq ON transactions(account_id, seq DESC)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_spend_created ON transactions(created_at) WHERE kind = 'spend'",
    """
    CREATE TABLE IF NOT EXISTS grant_periods (
        account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE RESTRICT,
        period_key CHAR(6) NOT NULL,
        transaction_id TEXT NOT NULL REFERENCES transactions(id),
        granted_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        PRIMARY KEY (account_id, period_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS spend_settlements (
        account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE RESTRICT,
        idempotency_key TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('committed', 'refunded')),
        reason TEXT,
        result JSONB,
        settled_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        PRIMARY KEY (account_id, idempotency_key)
    )
    """,
    "ALTER TABLE spend_settlements ADD COLUMN IF NOT EXISTS result JSONB",
    "CREATE INDEX IF NOT EXISTS idx_entitlements_renews_at ON entitlements(renews_at)",
)

_TRANSACTION_COLUMNS = "id, account_id, kind, amount, balance_after, created_at, reference"


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


class PostgresLedgerStore(LedgerStore):
    """Ledger backed by PostgreSQL.

    Each mutation runs in one transaction that locks the account's
    entitlement row with ``SELECT ... FOR UPDATE`` before reading the
    balance, so operations on one account serialize across processes.
    The partial unique index on ``(account_id, kind, idempotency_key)``
    backs the replay checks.
    """

    backend = "postgres"

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        command_timeout: float = 10.0,
        plans: Optional[Mapping[str, Plan]] = None,
        default_plan: str = "free",
        clock: Optional[Callable[[], datetime]] = None,
        pool: Optional[asyncpg.Pool] = None,
    ) -> None:
        super().__init__(plans, default_plan, clock)
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.pool: Optional[asyncpg.Pool] = pool

    async def start(self) -> None:
        """Open the pool, create the schema and load the plan catalog."""
        if self.pool is None:
            try:
                self.pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=self.min_size,
                    max_size=self.max_size,
                    command_timeout=self.command_timeout,
                    init=_init_connection,
                )
            except (OSError, asyncpg.PostgresError) as e:
                self.logger.error("Failed to start PostgreSQL ledger", error=str(e))
                raise ServiceError("Ledger database unavailable", code="POSTGRES_START_FAILED") from e

        await self._create_tables()
        await self._load_plans()
        self.logger.info("PostgreSQL ledger started", plans=sorted(self.plans))

    async def stop(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL ledger stopped")

    async def check_health(self) -> str:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return "ok"
        except (OSError, asyncpg.PostgresError) as e:
            self.logger.error("Ledger health check failed", error=str(e))
            return "error"

    async def _create_tables(self) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(statement)
                for plan in self.plans.values():
                    await conn.execute(
                        """
                        INSERT INTO plans (id, name, tokens_granted) VALUES ($1, $2, $3)
                        ON CONFLICT (id) DO NOTHING
                        """,
                        plan.id, plan.name, plan.tokens_granted,
                    )

    async def _load_plans(self) -> None:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT id, name, tokens_granted FROM plans")
        self.plans = {
            row["id"]: Plan(id=row["id"], name=row["name"], tokens_granted=row["tokens_granted"])
            for row in rows
        }

    async def _lock_entitlement(self, conn: asyncpg.Connection, account_id: str) -> Optional[asyncpg.Record]:
        return await conn.fetchrow(
            """
            SELECT account_id, plan_id, token_balance, renews_at, updated_at
            FROM entitlements
            WHERE account_id = $1
            FOR UPDATE
            """,
            account_id,
        )

    async def _insert_transaction(
        self,
        conn: asyncpg.Connection,
        account_id: str,
        kind: TransactionKind,
        amount: int,
        reference: Dict[str, Any],
        balance_after: int,
        now: datetime,
        idempotency_key: Optional[str] = None,
    ) -> str:
        transaction_id = str(uuid.uuid4())
        await conn.execute(
            """
            INSERT INTO transactions (
                id, account_id, kind, amount, reference, idempotency_key, balance_after, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            transaction_id, account_id, kind.value, amount, reference, idempotency_key, balance_after, now,
        )
        return transaction_id

    async def _find_keyed(self, conn: asyncpg.Connection, account_id: str,
                          kind: TransactionKind, idempotency_key: str) -> Optional[asyncpg.Record]:
        return await conn.fetchrow(
            f"""
            SELECT {_TRANSACTION_COLUMNS}
            FROM transactions
            WHERE account_id = $1 AND kind = $2 AND idempotency_key = $3
            """,
            account_id, kind.value, idempotency_key,
        )

    async def _get_entitlement(self, account_id: str) -> Optional[Entitlement]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT account_id, plan_id, token_balance, renews_at, updated_at
                FROM entitlements WHERE account_id = $1
                """,
                account_id,
            )
        return _entitlement(row) if row else None

    async def _debit(self, account_id: str, cost: int, idempotency_key: str) -> DebitResult:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                entitlement = await self._lock_entitlement(conn, account_id)

                previous = await self._find_keyed(conn, account_id, TransactionKind.SPEND, idempotency_key)
                if previous is not None:
                    return _replayed_debit(previous, idempotency_key)

                balance = entitlement["token_balance"] if entitlement else 0
                if entitlement is None or balance < cost:
                    raise InsufficientFunds(balance, cost)

                now = self._now()
                new_balance = balance - cost
                await conn.execute(
                    "UPDATE entitlements SET token_balance = $2, updated_at = $3 WHERE account_id = $1",
                    account_id, new_balance, now,
                )
                transaction_id = await self._insert_transaction(
                    conn, account_id, TransactionKind.SPEND, -cost,
                    {"idempotency_key": idempotency_key}, new_balance, now, idempotency_key,
                )

        return DebitResult(
            new_balance=new_balance,
            transaction_id=transaction_id,
            amount=cost,
            idempotency_key=idempotency_key,
        )

    async def _credit(self, account_id: str, amount: int, kind: TransactionKind,
                      reference: Dict[str, Any]) -> CreditResult:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                entitlement = await self._lock_entitlement(conn, account_id)
                if entitlement is None:
                    raise AccountNotFound(account_id)

                now = self._now()
                new_balance = entitlement["token_balance"] + amount
                await conn.execute(
                    "UPDATE entitlements SET token_balance = $2, updated_at = $3 WHERE account_id = $1",
                    account_id, new_balance, now,
                )
                transaction_id = await self._insert_transaction(
                    conn, account_id, kind, amount, reference, new_balance, now,
                )

        return CreditResult(new_balance=new_balance, transaction_id=transaction_id)

    async def _refund(self, account_id: str, amount: int, reference: Dict[str, Any]) -> CreditResult:
        key = reference["idempotency_key"]
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                entitlement = await self._lock_entitlement(conn, account_id)

                existing = await self._find_keyed(conn, account_id, TransactionKind.REFUND, key)
                if existing is not None:
                    return CreditResult(
                        new_balance=existing["balance_after"],
                        transaction_id=existing["id"],
                        replayed=True,
                    )

                spend = await self._find_keyed(conn, account_id, TransactionKind.SPEND, key)
                if spend is None or entitlement is None:
                    raise SpendNotFound(account_id, key)

                status = await conn.fetchval(
                    "SELECT status FROM spend_settlements WHERE account_id = $1 AND idempotency_key = $2",
                    account_id, key,
                )
                if status is not None:
                    raise SpendAlreadySettled(key, status)
                if amount != -spend["amount"]:
                    raise InvalidAmount(
                        "Refund must equal the spent amount",
                        {"spent": -spend["amount"], "amount": amount},
                    )

                now = self._now()
                new_balance = entitlement["token_balance"] + amount
                await conn.execute(
                    "UPDATE entitlements SET token_balance = $2, updated_at = $3 WHERE account_id = $1",
                    account_id, new_balance, now,
                )
                transaction_id = await self._insert_transaction(
                    conn, account_id, TransactionKind.REFUND, amount, reference, new_balance, now, key,
                )
                await conn.execute(
                    """
                    INSERT INTO spend_settlements (account_id, idempotency_key, status, reason, settled_at)
                    VALUES ($1, $2, 'refunded', $3, $4)
                    """,
                    account_id, key, reference.get("reason"), now,
                )

        return CreditResult(new_balance=new_balance, transaction_id=transaction_id)

    async def _list_transactions(self, account_id: str, limit: int) -> List[Transaction]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_TRANSACTION_COLUMNS}
                FROM transactions
                WHERE account_id = $1
                ORDER BY seq DESC
                LIMIT $2
                """,
                account_id, limit,
            )
        return [_transaction(row) for row in rows]

    async def _ensure_account(self, subject: str, plan: Plan) -> EnsureAccountResult:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                now = self._now()
                account_id = str(uuid.uuid4())
                row = await conn.fetchrow(
                    """
                    INSERT INTO accounts (id, external_subject_id, role, created_at)
                    VALUES ($1, $2, $3, $4)
                    ON CONFLICT (external_subject_id) DO NOTHING
                    RETURNING id, external_subject_id, role, created_at
                    """,
                    account_id, subject, DEFAULT_ROLE, now,
                )

                if row is None:
                    existing = await conn.fetchrow(
                        """
                        SELECT a.id, a.external_subject_id, a.role, a.created_at,
                               e.account_id, e.plan_id, e.token_balance, e.renews_at, e.updated_at
                        FROM accounts a JOIN entitlements e ON e.account_id = a.id
                        WHERE a.external_subject_id = $1
                        """,
                        subject,
                    )
                    return EnsureAccountResult(
                        account=_account(existing),
                        entitlement=_entitlement(existing),
                        created=False,
                    )

                renews_at = first_of_next_month(now)
                await conn.execute(
                    """
                    INSERT INTO entitlements (account_id, plan_id, token_balance, renews_at, updated_at)
                    VALUES ($1, $2, $3, $4, $5)
                    """,
                    account_id, plan.id, plan.tokens_granted, renews_at, now,
                )
                await self._insert_transaction(
                    conn, account_id, TransactionKind.WELCOME_GRANT, plan.tokens_granted,
                    {"reason": "signup", "plan": plan.id, "granted_at": now.isoformat()},
                    plan.tokens_granted, now,
                )

        return EnsureAccountResult(
            account=_account(row),
            entitlement=Entitlement(
                account_id=account_id,
                plan_id=plan.id,
                token_balance=plan.tokens_granted,
                renews_at=renews_at,
                updated_at=now,
            ),
            created=True,
        )

    async def _get_account(self, account_id: str) -> Optional[Account]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id, external_subject_id, role, created_at FROM accounts WHERE id = $1",
                account_id,
            )
        return _account(row) if row else None

    async def _get_account_by_subject(self, subject: str) -> Optional[Account]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id, external_subject_id, role, created_at FROM accounts WHERE external_subject_id = $1",
                subject,
            )
        return _account(row) if row else None

    async def _get_settlement(self, account_id: str, idempotency_key: str) -> Optional[Settlement]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT status, reason, result, settled_at FROM spend_settlements
                WHERE account_id = $1 AND idempotency_key = $2
                """,
                account_id, idempotency_key,
            )
        if row is None:
            return None
        return Settlement(
            status=SettlementStatus(row["status"]),
            reason=row["reason"],
            settled_at=row["settled_at"],
            result=row["result"],
        )

    async def _mark_committed(self, account_id: str, idempotency_key: str, result: Any) -> bool:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                spend = await self._find_keyed(conn, account_id, TransactionKind.SPEND, idempotency_key)
                if spend is None:
                    raise SpendNotFound(account_id, idempotency_key)
                inserted = await conn.fetchval(
                    """
                    INSERT INTO spend_settlements (account_id, idempotency_key, status, result, settled_at)
                    VALUES ($1, $2, 'committed', $3, $4)
                    ON CONFLICT (account_id, idempotency_key) DO NOTHING
                    RETURNING status
                    """,
                    account_id, idempotency_key, result, self._now(),
                )
        return inserted is not None

    async def _apply_grant(self, account_id: str, period_key: str, now: datetime) -> GrantResult:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                entitlement = await self._lock_entitlement(conn, account_id)
                if entitlement is None:
                    raise AccountNotFound(account_id)

                already = await conn.fetchval(
                    "SELECT 1 FROM grant_periods WHERE account_id = $1 AND period_key = $2",
                    account_id, period_key,
                )
                if already or entitlement["renews_at"] > now:
                    return GrantResult(
                        account_id=account_id,
                        period_key=period_key,
                        applied=False,
                        new_balance=entitlement["token_balance"],
                        renews_at=entitlement["renews_at"],
                    )

                plan = self.get_plan(entitlement["plan_id"])
                renews_at = add_month(entitlement["renews_at"])
                new_balance = entitlement["token_balance"] + plan.tokens_granted
                await conn.execute(
                    """
                    UPDATE entitlements
                    SET token_balance = $2, renews_at = $3, updated_at = $4
                    WHERE account_id = $1
                    """,
                    account_id, new_balance, renews_at, now,
                )
                transaction_id = await self._insert_transaction(
                    conn, account_id, TransactionKind.MONTHLY_GRANT, plan.tokens_granted,
                    {"period_key": period_key, "plan": plan.id, "renews_at": renews_at.isoformat()},
                    new_balance, now,
                )
                await conn.execute(
                    """
                    INSERT INTO grant_periods (account_id, period_key, transaction_id, granted_at)
                    VALUES ($1, $2, $3, $4)
                    """,
                    account_id, period_key, transaction_id, now,
                )

        return GrantResult(
            account_id=account_id,
            period_key=period_key,
            applied=True,
            new_balance=new_balance,
            renews_at=renews_at,
            amount=plan.tokens_granted,
        )

    async def _list_due_entitlements(self, now: datetime, limit: Optional[int]) -> List[DueEntitlement]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT account_id, plan_id, renews_at FROM entitlements
                WHERE renews_at <= $1
                ORDER BY renews_at
                LIMIT $2
                """,
                now, limit,
            )
        return [
            DueEntitlement(account_id=row["account_id"], plan_id=row["plan_id"], renews_at=row["renews_at"])
            for row in rows
        ]

    async def _list_unsettled_spends(self, older_than: datetime, limit: int) -> List[UnsettledSpend]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT t.id, t.account_id, t.idempotency_key, t.amount, t.created_at
                FROM transactions t
                LEFT JOIN spend_settlements s
                    ON s.account_id = t.account_id AND s.idempotency_key = t.idempotency_key
                WHERE t.kind = 'spend' AND s.account_id IS NULL AND t.created_at <= $1
                ORDER BY t.created_at
                LIMIT $2
                """,
                older_than, limit,
            )
        return [
            UnsettledSpend(
                account_id=row["account_id"],
                idempotency_key=row["idempotency_key"],
                amount=-row["amount"],
                transaction_id=row["id"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def _audit(self, account_id: str) -> LedgerAudit:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                    COALESCE((SELECT token_balance FROM entitlements WHERE account_id = $1), 0) AS token_balance,
                    COALESCE(SUM(amount), 0) AS ledger_sum,
                    COUNT(*) AS transaction_count
                FROM transactions
                WHERE account_id = $1
                """,
                account_id,
            )
        return LedgerAudit(
            account_id=account_id,
            token_balance=row["token_balance"],
            ledger_sum=int(row["ledger_sum"]),
            transaction_count=row["transaction_count"],
        )


def _account(row: asyncpg.Record) -> Account:
    return Account(
        id=row["id"],
        external_subject_id=row["external_subject_id"],
        role=row["role"],
        created_at=row["created_at"],
    )


def _entitlement(row: asyncpg.Record) -> Entitlement:
    return Entitlement(
        account_id=row["account_id"],
        plan_id=row["plan_id"],
        token_balance=row["token_balance"],
        renews_at=row["renews_at"],
        updated_at=row["updated_at"],
    )


def _transaction(row: asyncpg.Record) -> Transaction:
    return Transaction(
        id=row["id"],
        account_id=row["account_id"],
        kind=TransactionKind(row["kind"]),
        amount=row["amount"],
        balance_after=row["balance_after"],
        created_at=row["created_at"],
        reference=row["reference"] or {},
    )


def _replayed_debit(row: asyncpg.Record, idempotency_key: str) -> DebitResult:
    return DebitResult(
        new_balance=row["balance_after"],
        transaction_id=row["id"],
        amount=-row["amount"],
        idempotency_key=idempotency_key,
        replayed=True,
    )

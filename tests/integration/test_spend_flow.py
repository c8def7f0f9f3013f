"""
Integration tests for the charge, refund, grant and reconcile flow.

Components are wired as the service wires them, with the identity provider
and the paid upstream served in-process.
"""

import asyncio
import uuid
from datetime import timedelta

import pytest
from prometheus_client import CollectorRegistry

from service_metering.app.auth import IdentityVerifier, KeyRing
from service_metering.app.grants import GrantScheduler, SpendReconciler
from service_metering.app.ledger import InMemoryLedgerStore, LedgerAccess, TransactionKind
from service_metering.app.spend import SpendExecutor, SpendState, WorkFailed
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig
from shared.test_helpers import (
    TEST_ISSUER,
    TEST_JWKS_URL,
    FakeClock,
    MockJWKSServer,
    bearer,
    create_test_token,
    generate_ec_key,
    generate_rsa_key,
)


def new_key() -> str:
    return str(uuid.uuid4())


class TestSpendFlow:
    """Integration tests for complete spend flow."""

    @pytest.fixture
    def old_key(self):
        return generate_ec_key(kid="2025-01")

    @pytest.fixture
    def new_signing_key(self):
        return generate_rsa_key(kid="2025-02")

    @pytest.fixture
    def jwks_server(self, old_key):
        return MockJWKSServer(old_key)

    @pytest.fixture
    def key_clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self):
        return InMemoryLedgerStore(latency=0.001)

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("metering", registry=CollectorRegistry())

    @pytest.fixture
    def stack(self, jwks_server, key_clock, store, metrics):
        keyring = KeyRing(TEST_JWKS_URL, client=jwks_server.client(), clock=key_clock, metrics=metrics)
        verifier = IdentityVerifier(keyring, issuer=TEST_ISSUER)
        access = LedgerAccess(store)
        executor = SpendExecutor(
            verifier,
            access,
            work_timeout=0.1,
            refund_retry=RetryConfig(max_attempts=2, base_delay=0, jitter=False),
            metrics=metrics,
        )
        return {
            "keyring": keyring,
            "access": access,
            "executor": executor,
            "scheduler": GrantScheduler(access.system(), metrics=metrics),
            "reconciler": SpendReconciler(access.system(), reconcile_after=0.5, metrics=metrics),
        }

    @pytest.mark.asyncio
    async def test_complete_spend_flow(self, stack, store, old_key):
        """Test charges, failures and retries for one caller end in a consistent ledger."""
        executor = stack["executor"]
        auth = bearer(create_test_token(old_key, subject="user-flow"))

        async def decode():
            return {"text": "ok"}

        async def failing():
            raise WorkFailed("Upstream rejected payload")

        async def hanging():
            await asyncio.sleep(1)

        committed = await executor.execute(auth, 10, new_key(), decode)
        refunded = await executor.execute(auth, 20, new_key(), failing)
        timed_out = await executor.execute(auth, 30, new_key(), hanging)
        rejected = await executor.execute(auth, 5000, new_key(), decode)

        assert committed.state is SpendState.COMMITTED
        assert refunded.state is SpendState.REFUNDED
        assert timed_out.state is SpendState.REFUNDED
        assert rejected.state is SpendState.REJECTED

        ledger = await stack["access"].for_subject("user-flow")
        assert await ledger.balance() == 990
        kinds = [t.kind for t in await ledger.transactions()]
        assert kinds.count(TransactionKind.SPEND) == 3
        assert kinds.count(TransactionKind.REFUND) == 2
        assert (await store.audit(ledger.account_id)).consistent

    @pytest.mark.asyncio
    async def test_concurrent_requests_never_overdraw(self, stack, store, old_key):
        """Test parallel charges with retried keys keep the balance exact."""
        executor = stack["executor"]
        auth = bearer(create_test_token(old_key, subject="user-burst"))
        calls = []

        async def decode():
            calls.append(1)
            await asyncio.sleep(0.005)
            return "ok"

        keys = [new_key() for _ in range(12)]
        # Every key is sent twice, as a client retrying on a dropped connection would.
        outcomes = await asyncio.gather(*(
            executor.execute(auth, 100, key, decode) for key in keys + keys
        ))

        fresh = [o for o in outcomes if o.state is SpendState.COMMITTED and not o.replayed]
        assert len(fresh) == 10
        assert len(calls) == 10
        assert all(
            o.replayed or o.error_code == "INSUFFICIENT_FUNDS"
            for o in outcomes
            if not (o.state is SpendState.COMMITTED and not o.replayed)
        )

        ledger = await stack["access"].for_subject("user-burst")
        assert await ledger.balance() == 0
        assert (await store.audit(ledger.account_id)).consistent

    @pytest.mark.asyncio
    async def test_key_rotation(self, stack, jwks_server, key_clock, old_key, new_signing_key):
        """Test tokens signed with a newly published key are accepted after rotation."""
        executor = stack["executor"]

        async def decode():
            return "ok"

        before = await executor.execute(bearer(create_test_token(old_key)), 1, new_key(), decode)
        jwks_server.publish(old_key, new_signing_key)
        key_clock.advance(31)
        after = await executor.execute(bearer(create_test_token(new_signing_key)), 1, new_key(), decode)

        assert before.ok
        assert after.ok
        assert set(stack["keyring"].key_ids) == {"2025-01", "2025-02"}

    @pytest.mark.asyncio
    async def test_crashed_request_is_reconciled(self, stack, store):
        """Test a spend left unsettled by a crash is refunded by the sweep."""
        ledger = await stack["access"].for_subject("user-crash", create=True)
        orphan = new_key()
        await ledger.debit(40, orphan)
        await asyncio.sleep(0.6)

        assert await stack["reconciler"].run() == 1
        assert await stack["reconciler"].run() == 0

        assert await ledger.balance() == 1000
        assert (await ledger.settlement(orphan)).reason == "reconciliation"
        assert (await store.audit(ledger.account_id)).consistent

    @pytest.mark.asyncio
    async def test_monthly_grants(self, stack, store):
        """Test a due period credits every account once, and re-runs credit nothing."""
        system = stack["access"].system()
        accounts = [(await system.ensure_account(f"user-{i}")).account for i in range(3)]
        due = (await store.get_entitlement(accounts[0].id)).renews_at + timedelta(hours=1)
        period_key = due.strftime("%Y%m")

        assert await stack["scheduler"].run_period(period_key, now=due) == 3
        assert await stack["scheduler"].run_period(period_key, now=due) == 0

        for account in accounts:
            assert await store.get_balance(account.id) == 2000
            assert (await store.audit(account.id)).consistent

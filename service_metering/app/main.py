"""
Metering service: token-charged endpoints over the ledger.
"""

import hmac
from typing import Dict, Optional

from fastapi import Body, Query, Request
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import AuthenticationError, AuthorizationError, ServiceError
from shared.retry import RetryConfig

from .adapters.decode_client import DecodeClient
from .auth.keyring import KeyRing
from .auth.verifier import AuthReason, IdentityVerifier, VerifiedIdentity, extract_bearer_token
from .grants.reconciler import SpendReconciler
from .grants.scheduler import GrantScheduler
from .ledger import LedgerAccess, LedgerStore, build_ledger_store, period_key_for, validate_period_key
from .ledger.exceptions import AccountNotFound
from .ledger.models import utcnow
from .models import (
    AccountResponse,
    AuditResponse,
    BalanceResponse,
    DecodeRequest,
    GrantRunRequest,
    GrantRunResponse,
    ReconcileResponse,
    SpendErrorResponse,
    SpendRequest,
    SpendResponse,
    TransactionItem,
    TransactionListResponse,
)
from .spend.executor import (
    DOWNSTREAM_ERROR,
    DOWNSTREAM_TIMEOUT,
    REFUND_FAILED,
    REQUEST_IN_PROGRESS,
    SpendExecutor,
    SpendOutcome,
    SpendState,
)

SERVICE_NAME = "metering"
SERVICE_PORT = 8080

OUTCOME_STATUS = {
    "INSUFFICIENT_FUNDS": 402,
    "IDEMPOTENCY_KEY_INVALID": 400,
    "INVALID_AMOUNT": 400,
    REQUEST_IN_PROGRESS: 409,
    DOWNSTREAM_TIMEOUT: 504,
    DOWNSTREAM_ERROR: 500,
    REFUND_FAILED: 500,
    AuthReason.KEYS_UNAVAILABLE.value: 503,
}
AUTH_REASONS = {reason.value for reason in AuthReason}


def outcome_status(outcome: SpendOutcome) -> int:
    """HTTP status for a spend outcome."""
    if outcome.ok:
        return 200
    status = OUTCOME_STATUS.get(outcome.error_code)
    if status is not None:
        return status
    return 401 if outcome.error_code in AUTH_REASONS else 500


class MeteringService(BaseService):
    """Metering service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        ledger_store: Optional[LedgerStore] = None,
        keyring: Optional[KeyRing] = None,
        decode_client: Optional[DecodeClient] = None,
    ):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config or get_config(SERVICE_NAME, SERVICE_PORT))

        self.ledger_store = ledger_store or build_ledger_store(self.config)
        self.keyring = keyring or KeyRing(
            self.config.jwks_url,
            cache_ttl=self.config.jwks_cache_ttl,
            max_stale=self.config.jwks_max_stale,
            min_refresh_interval=self.config.jwks_min_refresh_interval,
            http_timeout=self.config.jwks_http_timeout,
            metrics=self.metrics,
        )
        self.verifier = IdentityVerifier(
            self.keyring,
            issuer=self.config.jwt_issuer,
            admin_subjects=self.config.admin_subjects,
            leeway=self.config.jwt_leeway_seconds,
        )
        self.ledger_access = LedgerAccess(self.ledger_store)
        self.executor = SpendExecutor(
            self.verifier,
            self.ledger_access,
            work_timeout=self.config.work_timeout_seconds,
            refund_retry=RetryConfig(
                max_attempts=self.config.refund_max_attempts,
                base_delay=self.config.refund_base_delay,
                max_delay=5.0,
            ),
            metrics=self.metrics,
        )
        self.decode_client = decode_client or DecodeClient(
            self.config.decode_upstream_url,
            timeout=self.config.work_timeout_seconds,
        )
        self.grant_scheduler = GrantScheduler(self.ledger_access.system(), metrics=self.metrics)
        self.reconciler = SpendReconciler(
            self.ledger_access.system(),
            reconcile_after=self.config.work_timeout_seconds + self.config.reconcile_grace_seconds,
            batch_size=self.config.reconcile_batch_size,
            metrics=self.metrics,
        )

        self._setup_metering_routes()
        self.app.state.metering_service = self

    async def _on_startup(self) -> None:
        await self.ledger_store.start()
        await self.keyring.warmup()

    async def _on_shutdown(self) -> None:
        await self.executor.drain()
        await self.decode_client.close()
        await self.keyring.close()
        await self.ledger_store.stop()

    async def _check_dependencies(self) -> Dict[str, str]:
        return {
            "ledger": await self.ledger_store.check_health(),
            "jwks": await self.keyring.check_health(),
        }

    async def _authenticate(self, request: Request) -> VerifiedIdentity:
        result = await self.verifier.verify(
            request.headers.get("Authorization"),
            getattr(request.state, "request_id", None),
        )
        if not result.ok:
            raise result.error
        return result.identity

    def _require_cron_secret(self, request: Request) -> None:
        secret = self.config.cron_secret
        if not secret:
            self.logger.error("Cron endpoint called but no cron secret is configured")
            raise ServiceError("Cron secret not configured", code="CRON_NOT_CONFIGURED")

        token = extract_bearer_token(request.headers.get("Authorization"))
        if token is None or not hmac.compare_digest(token.encode(), secret.encode()):
            raise AuthenticationError("Invalid cron credentials", code="INVALID_CRON_SECRET")

    def _spend_response(self, outcome: SpendOutcome) -> JSONResponse:
        status_code = outcome_status(outcome)
        if outcome.ok:
            body = SpendResponse(
                request_id=outcome.request_id,
                new_balance=outcome.new_balance,
                charged=outcome.charged,
                result=outcome.result,
                replayed=outcome.replayed,
            )
        else:
            body = SpendErrorResponse(
                request_id=outcome.request_id,
                code=outcome.error_code,
                reason=outcome.error_code,
                message=outcome.error_message or "Request failed",
                details=outcome.error_details,
                refunded=outcome.state is SpendState.REFUNDED,
            )
        return JSONResponse(status_code=status_code, content=body.model_dump())

    def _setup_metering_routes(self):
        """Set up metering routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": SERVICE_NAME,
                "message": "Metering Gateway - Token-charged API",
                "version": "1.0.0",
                "capabilities": ["decode", "ledger", "grants", "reconciliation"]
            }

        @self.app.post("/v1/decode")
        async def decode(request: Request, body: DecodeRequest):
            """Charge the configured decode price and run one decode."""
            outcome = await self.executor.execute(
                request.headers.get("Authorization"),
                self.config.decode_cost,
                request.headers.get("Idempotency-Key"),
                lambda: self.decode_client.decode(body.payload),
                request_id=request.state.request_id,
            )
            return self._spend_response(outcome)

        @self.app.post("/v1/spend")
        async def spend(request: Request, body: SpendRequest):
            """Debit tokens without upstream work."""
            async def _record():
                return {"reason": body.reason} if body.reason else None

            outcome = await self.executor.execute(
                request.headers.get("Authorization"),
                body.cost,
                request.headers.get("Idempotency-Key"),
                _record,
                request_id=request.state.request_id,
            )
            return self._spend_response(outcome)

        @self.app.post("/v1/ensure-account", response_model=AccountResponse)
        async def ensure_account(request: Request):
            """Create the caller's account on first use."""
            identity = await self._authenticate(request)
            result = await self.ledger_access.system().ensure_account(identity.subject)
            return AccountResponse(
                account_id=result.account.id,
                created=result.created,
                role=result.account.role,
                plan=result.entitlement.plan_id,
                balance=result.entitlement.token_balance,
                renews_at=result.entitlement.renews_at.isoformat(),
            )

        @self.app.get("/v1/balance", response_model=BalanceResponse)
        async def balance(request: Request):
            """Caller's current token balance."""
            identity = await self._authenticate(request)
            ledger = await self.ledger_access.for_subject(identity.subject)
            if ledger is None:
                return BalanceResponse()
            return BalanceResponse(account_id=ledger.account_id, balance=await ledger.balance())

        @self.app.get("/v1/transactions", response_model=TransactionListResponse)
        async def transactions(request: Request, limit: int = Query(default=50, ge=1, le=500)):
            """Caller's ledger, most recent first."""
            identity = await self._authenticate(request)
            ledger = await self.ledger_access.for_subject(identity.subject)
            if ledger is None:
                return TransactionListResponse()
            items = await ledger.transactions(limit)
            return TransactionListResponse(
                account_id=ledger.account_id,
                transactions=[TransactionItem(**item.to_dict()) for item in items],
            )

        @self.app.post("/v1/cron/grants", response_model=GrantRunResponse)
        async def run_grants(request: Request, body: Optional[GrantRunRequest] = Body(default=None)):
            """Apply the periodic grant to every due account."""
            self._require_cron_secret(request)
            now = utcnow()
            period_key = validate_period_key(body.period_key) if body and body.period_key else period_key_for(now)
            processed = await self.grant_scheduler.run_period(period_key, now=now)
            return GrantRunResponse(period_key=period_key, processed=processed)

        @self.app.post("/v1/cron/reconcile", response_model=ReconcileResponse)
        async def run_reconcile(request: Request):
            """Refund spends that never settled."""
            self._require_cron_secret(request)
            return ReconcileResponse(refunded=await self.reconciler.run())

        @self.app.get("/v1/admin/accounts/{account_id}/audit", response_model=AuditResponse)
        async def audit_account(request: Request, account_id: str):
            """Compare an account's balance with its ledger."""
            identity = await self._authenticate(request)
            if not identity.is_admin:
                raise AuthorizationError("Admin access required")

            system = self.ledger_access.system()
            if await system.get_account(account_id) is None:
                raise AccountNotFound(account_id)
            audit = await system.audit(account_id)
            return AuditResponse(**audit.to_dict())


def create_app(**kwargs):
    """Create FastAPI application."""
    service = MeteringService(**kwargs)
    return service.app


if __name__ == "__main__":
    service = MeteringService()
    service.run()

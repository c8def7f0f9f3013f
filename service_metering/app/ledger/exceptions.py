"""
Ledger error types.
"""

from typing import Any, Dict, Optional

from shared.errors import GatewayError


class LedgerError(GatewayError):
    """Base class for ledger rule violations."""


class InsufficientFunds(LedgerError):
    status_code = 402

    def __init__(self, balance: int, cost: int):
        super().__init__(
            "INSUFFICIENT_FUNDS",
            "Insufficient token balance",
            {"balance": balance, "cost": cost},
        )
        self.balance = balance
        self.cost = cost


class IdempotencyKeyInvalid(LedgerError):
    status_code = 400

    def __init__(self, message: str = "Idempotency key must be a UUID v4"):
        super().__init__("IDEMPOTENCY_KEY_INVALID", message)


class InvalidAmount(LedgerError):
    status_code = 400

    def __init__(self, message: str = "Amount must be a positive integer", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_AMOUNT", message, details)


class PeriodKeyInvalid(LedgerError):
    status_code = 400

    def __init__(self, period_key: Any):
        super().__init__("PERIOD_KEY_INVALID", "Period key must be YYYYMM", {"period_key": str(period_key)})


class AccountNotFound(LedgerError):
    status_code = 404

    def __init__(self, account_id: str):
        super().__init__("ACCOUNT_NOT_FOUND", "Account not found", {"account_id": account_id})


class SpendNotFound(LedgerError):
    status_code = 404

    def __init__(self, account_id: str, idempotency_key: str):
        super().__init__(
            "SPEND_NOT_FOUND",
            "No spend recorded for idempotency key",
            {"account_id": account_id, "idempotency_key": idempotency_key},
        )


class SpendAlreadySettled(LedgerError):
    status_code = 409

    def __init__(self, idempotency_key: str, status: str):
        super().__init__(
            "SPEND_ALREADY_SETTLED",
            f"Spend already {status}",
            {"idempotency_key": idempotency_key, "status": status},
        )


class UnknownPlan(LedgerError):
    status_code = 500

    def __init__(self, plan_id: str):
        super().__init__("UNKNOWN_PLAN", "Plan is not configured", {"plan_id": plan_id})

"""
Request and response models for the metering API.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from shared.errors import ErrorResponse


class DecodeRequest(BaseModel):
    payload: Dict[str, Any] = Field(default_factory=dict)


class SpendRequest(BaseModel):
    cost: int
    reason: Optional[str] = None


class SpendResponse(BaseModel):
    ok: bool = True
    request_id: Optional[str] = None
    new_balance: Optional[int] = None
    charged: int = 0
    result: Any = None
    replayed: bool = False


class SpendErrorResponse(ErrorResponse):
    """Error body for charged routes; ``refunded`` says whether a charge was returned."""

    ok: bool = False
    reason: str
    refunded: bool = False


class AccountResponse(BaseModel):
    account_id: str
    created: bool
    role: str
    plan: str
    balance: int
    renews_at: str


class BalanceResponse(BaseModel):
    account_id: Optional[str] = None
    balance: int = 0


class TransactionItem(BaseModel):
    id: str
    kind: str
    amount: int
    balance_after: int
    reference: Dict[str, Any] = Field(default_factory=dict)
    created_at: str


class TransactionListResponse(BaseModel):
    account_id: Optional[str] = None
    transactions: List[TransactionItem] = Field(default_factory=list)


class GrantRunRequest(BaseModel):
    period_key: Optional[str] = None


class GrantRunResponse(BaseModel):
    period_key: str
    processed: int


class ReconcileResponse(BaseModel):
    refunded: int


class AuditResponse(BaseModel):
    account_id: str
    token_balance: int
    ledger_sum: int
    transaction_count: int
    consistent: bool

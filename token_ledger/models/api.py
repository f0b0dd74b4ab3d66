"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class Tier(str, Enum):
    """Pricing tier of a chat request or a plan."""

    FREE = "free"
    PAID = "paid"
    PREMIUM = "premium"

    @property
    def rank(self) -> int:
        """Ordering used for active plan upgrades (free < paid < premium)."""
        return _TIER_RANK[self]


_TIER_RANK = {Tier.FREE: 0, Tier.PAID: 1, Tier.PREMIUM: 2}


class Pool(str, Enum):
    """Token sub-balance."""

    FREE = "free"
    PAID = "paid"


class TransactionKind(str, Enum):
    """Direction of a ledger transaction."""

    DEBIT = "debit"
    CREDIT = "credit"


class CreditSource(str, Enum):
    """Origin of a credit - decides which pool receives the tokens."""

    FREE_GRANT = "free-grant"
    PAYMENT = "payment"


class PurchaseStatus(str, Enum):
    """Plan history entry status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class ReconciliationState(str, Enum):
    """Reconciliation state machine states."""

    RECEIVED = "received"
    SIGNATURE_VERIFIED = "signature_verified"
    METADATA_RESOLVED = "metadata_resolved"
    ALREADY_CREDITED = "already_credited"
    CREDITED = "credited"
    PROCESSED = "processed"
    FAILED = "failed"


# ============================================================================
# Plan Models
# ============================================================================


class PlanResponse(BaseModel):
    """Plan catalog entry."""

    id: str
    name: str
    display_name: str
    description: str
    price_minor: int
    currency: str
    token_grant: int
    tier: Tier
    active: bool
    sort_order: int


class PlanListResponse(BaseModel):
    """GET /v1/plans response."""

    plans: list[PlanResponse]


class CreatePlanRequest(BaseModel):
    """POST /v1/admin/plans request body."""

    name: str = Field(..., min_length=1, max_length=100)
    display_name: str = Field(..., min_length=1, max_length=255)
    description: str = Field("", max_length=2000)
    price_minor: int = Field(..., ge=0)
    currency: str = Field("INR", min_length=3, max_length=3)
    token_grant: int = Field(..., gt=0)
    tier: Tier = Tier.PAID
    active: bool = True
    sort_order: int = 0


class UpdatePlanRequest(BaseModel):
    """PATCH /v1/admin/plans/{plan_id} request body - only set fields change."""

    display_name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = Field(None, max_length=2000)
    price_minor: int | None = Field(None, ge=0)
    token_grant: int | None = Field(None, gt=0)
    tier: Tier | None = None
    active: bool | None = None
    sort_order: int | None = None


# ============================================================================
# Checkout / Verification Models
# ============================================================================


class CreateOrderResponse(BaseModel):
    """POST /v1/plans/{plan_id}/orders response. Free plans need no order."""

    payment_required: bool = True
    order_id: str | None = None
    amount_minor: int
    currency: str
    key_id: str


class VerifyPaymentRequest(BaseModel):
    """POST /v1/plans/{plan_id}/verify-payment request body."""

    payment_id: str = Field(..., min_length=1, max_length=255)
    order_id: str = Field(..., min_length=1, max_length=255)
    signature: str = Field(..., min_length=1, max_length=255)


class ReconciliationResponse(BaseModel):
    """Outcome of a reconciliation attempt."""

    status: str
    state: ReconciliationState
    event_id: str | None = None
    payment_id: str | None = None
    tokens_added: int = 0
    new_balance: int | None = None


class PlanClaimResponse(BaseModel):
    """POST /v1/plans/{plan_id}/claim response."""

    status: str
    plan_id: str
    tokens_added: int = 0
    new_balance: int


class WebhookResponse(BaseModel):
    """POST /v1/webhooks/razorpay response."""

    status: str
    event_type: str
    event_id: str | None = None
    result: ReconciliationResponse | None = None


# ============================================================================
# Account Models
# ============================================================================


class TokenBalance(BaseModel):
    """Token balance snapshot."""

    balance: int
    free_tokens: int
    paid_tokens: int
    total_used: int


class PlanHistoryEntry(BaseModel):
    """One plan purchase."""

    plan_id: str
    granted_tokens: int
    amount_paid_minor: int
    payment_id: str
    purchased_at: str
    status: PurchaseStatus


class AccountSummaryResponse(BaseModel):
    """GET /v1/account response."""

    user_id: str
    tokens: TokenBalance
    active_plan: PlanResponse | None = None
    plan_history: list[PlanHistoryEntry]
    total_requests: int


class TransactionResponse(BaseModel):
    """Ledger transaction entry."""

    transaction_id: str
    kind: TransactionKind
    amount: int
    pool: Pool
    reason: str
    related_payment_id: str | None = None
    created_at: str


class TransactionListResponse(BaseModel):
    """GET /v1/account/transactions response."""

    transactions: list[TransactionResponse]


class GrantTokensRequest(BaseModel):
    """POST /v1/admin/accounts/{user_id}/grants request body."""

    amount: int = Field(..., gt=0)
    reason: str = Field("Free allocation", min_length=1, max_length=255)


class CreditResponse(BaseModel):
    """Result of a ledger credit."""

    user_id: str
    amount: int
    pool: Pool
    new_balance: int
    free_tokens: int
    paid_tokens: int


# ============================================================================
# Chat Models
# ============================================================================


class ChatMessage(BaseModel):
    """Single chat message."""

    role: str = Field(..., min_length=1, max_length=20)
    content: str


class ChatRequest(BaseModel):
    """POST /v1/chat request body."""

    model_id: str = Field(..., min_length=1, max_length=255)
    messages: list[ChatMessage] = Field(..., min_length=1)
    max_tokens: int | None = Field(None, gt=0)
    temperature: float | None = Field(None, ge=0.0, le=2.0)

    @field_validator("messages")
    @classmethod
    def validate_messages(cls, v: list[ChatMessage]) -> list[ChatMessage]:
        """Reject conversations with only empty messages."""
        if not any(m.content.strip() for m in v):
            raise ValueError("at least one message must have content")
        return v


class ChatResponse(BaseModel):
    """POST /v1/chat response."""

    content: str
    model_id: str
    tier: Tier
    tokens_charged: int
    shortfall: int
    low_balance: bool
    balance: int
    provider_total_tokens: int


# ============================================================================
# Admin Models
# ============================================================================


class PaymentEventResponse(BaseModel):
    """Stored payment notification."""

    provider: str
    event_id: str
    delivery_event_id: str | None = None
    event_type: str | None = None
    payment_id: str | None = None
    order_id: str | None = None
    signature_verified: bool
    processed: bool
    processed_at: str | None = None
    attempts: int
    last_error: str | None = None
    result: dict[str, Any] | None = None
    created_at: str


class PaymentEventListResponse(BaseModel):
    """GET /v1/admin/payment-events response."""

    events: list[PaymentEventResponse]
    total: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    timestamp: str
    version: str

"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from token_ledger.models.api import (
    Pool,
    PurchaseStatus,
    ReconciliationState,
    Tier,
    TransactionKind,
)


@dataclass(frozen=True)
class PoolBalances:
    """Immutable view of the two token pools."""

    free_tokens: int
    paid_tokens: int

    def __post_init__(self) -> None:
        """Validate pool constraints."""
        if self.free_tokens < 0:
            raise ValueError(f"Free pool cannot be negative: {self.free_tokens}")
        if self.paid_tokens < 0:
            raise ValueError(f"Paid pool cannot be negative: {self.paid_tokens}")

    @property
    def balance(self) -> int:
        """Total spendable tokens."""
        return self.free_tokens + self.paid_tokens

    def get(self, pool: Pool) -> int:
        """Tokens held by one pool."""
        return self.free_tokens if pool == Pool.FREE else self.paid_tokens


@dataclass(frozen=True)
class PoolDraw:
    """Tokens taken from a single pool during a debit."""

    pool: Pool
    amount: int


@dataclass(frozen=True)
class DebitPlan:
    """Result of planning a debit against pool balances (no side effects)."""

    draws: tuple[PoolDraw, ...]
    debited: int
    shortfall: int
    after: PoolBalances


@dataclass(frozen=True)
class DebitOutcome:
    """Outcome of a ledger debit."""

    account_id: UUID
    tier: Tier
    requested: int
    debited: int
    shortfall: int
    new_balance: int
    free_tokens: int
    paid_tokens: int
    draws: tuple[PoolDraw, ...]
    simulated: bool = False


@dataclass(frozen=True)
class CreditOutcome:
    """Outcome of a ledger credit."""

    account_id: UUID
    pool: Pool
    amount: int
    new_balance: int
    free_tokens: int
    paid_tokens: int
    payment_id: str | None = None


@dataclass(frozen=True)
class AccountSnapshot:
    """Immutable account data snapshot."""

    account_id: UUID
    user_id: str
    email: str | None
    free_tokens: int
    paid_tokens: int
    balance: int
    total_used: int
    total_requests: int
    active_plan_id: UUID | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class TransactionRecord:
    """One ledger movement as shown to the account owner."""

    transaction_id: UUID
    kind: TransactionKind
    amount: int
    pool: Pool
    reason: str
    related_payment_id: str | None
    created_at: datetime


@dataclass(frozen=True)
class PlanPurchaseRecord:
    """One plan history entry."""

    plan_id: UUID
    granted_tokens: int
    amount_paid_minor: int
    payment_id: str
    status: PurchaseStatus
    purchased_at: datetime


@dataclass(frozen=True)
class PlanData:
    """Immutable plan catalog entry."""

    plan_id: UUID
    name: str
    display_name: str
    description: str
    price_minor: int
    currency: str
    token_grant: int
    tier: Tier
    active: bool
    sort_order: int


@dataclass(frozen=True)
class AccountSummary:
    """Balance, active plan and recent plan history for read endpoints."""

    account: AccountSnapshot
    active_plan: PlanData | None
    plan_history: tuple[PlanPurchaseRecord, ...]


# ============================================================================
# Payment Gateway Models
# ============================================================================


@dataclass(frozen=True)
class GatewayPayment:
    """Authoritative payment record fetched from the gateway."""

    payment_id: str
    order_id: str | None
    status: str
    amount_minor: int
    currency: str
    method: str | None = None

    @property
    def is_captured(self) -> bool:
        """Whether the payment can be credited."""
        return self.status in ("captured", "authorized")


@dataclass(frozen=True)
class GatewayOrder:
    """Authoritative order record fetched from the gateway."""

    order_id: str
    amount_minor: int
    currency: str
    status: str
    plan_id: str | None
    user_id: str | None


@dataclass(frozen=True)
class EventKey:
    """Unique key of a stored payment event."""

    provider: str
    event_id: str


@dataclass(frozen=True)
class PaymentEventRecord:
    """Stored payment event (audit row)."""

    provider: str
    event_id: str
    delivery_event_id: str | None
    event_type: str | None
    payment_id: str | None
    order_id: str | None
    signature_verified: bool
    processed: bool
    processed_at: datetime | None
    attempts: int
    last_error: str | None
    payload: dict[str, Any]
    result: dict[str, Any] | None
    created_at: datetime

    @property
    def key(self) -> EventKey:
        """Unique key of this event."""
        return EventKey(provider=self.provider, event_id=self.event_id)


@dataclass(frozen=True)
class PaymentNotification:
    """A payment signal from either delivery channel, before resolution."""

    provider: str
    channel: str  # "webhook" or "client_verify"
    event_type: str
    event_key: EventKey
    delivery_event_id: str | None
    payment_id: str | None
    order_id: str | None
    payload: dict[str, Any] = field(default_factory=dict)
    expected_plan_id: str | None = None
    expected_user_id: str | None = None


@dataclass(frozen=True)
class ResolvedPayment:
    """Payment resolved to a (plan, user) pair from the gateway's own records."""

    payment: GatewayPayment
    order: GatewayOrder
    plan: PlanData
    user_id: str


@dataclass(frozen=True)
class ReconciliationResult:
    """Terminal outcome of one reconciliation attempt."""

    state: ReconciliationState
    event_key: EventKey
    payment_id: str | None
    user_id: str | None = None
    plan_id: str | None = None
    tokens_added: int = 0
    new_balance: int | None = None

    @property
    def status(self) -> str:
        """Short status string used in HTTP responses and stored results."""
        if self.state == ReconciliationState.ALREADY_CREDITED:
            return "already_processed"
        return "success"

    def to_record(self) -> dict[str, Any]:
        """Serialized form persisted on the payment event."""
        return {
            "status": self.status,
            "state": self.state.value,
            "payment_id": self.payment_id,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "tokens_added": self.tokens_added,
            "new_balance": self.new_balance,
        }


@dataclass(frozen=True)
class PlanGrantResult:
    """Outcome of claiming a zero-priced plan."""

    plan_id: str
    user_id: str
    tokens_added: int
    new_balance: int
    already_granted: bool = False


@dataclass(frozen=True)
class WebhookOutcome:
    """How a webhook delivery was handled."""

    status: str  # ignored, acknowledged, already_processed, success
    event_type: str
    event_key: EventKey | None = None
    result: ReconciliationResult | None = None


# ============================================================================
# Model Provider Models
# ============================================================================


@dataclass(frozen=True)
class ModelInfo:
    """Registry entry for a chat model."""

    model_id: str
    tier: Tier
    max_tokens: int | None = None


@dataclass(frozen=True)
class ChatTurn:
    """One chat message sent to a model provider."""

    role: str
    content: str


@dataclass(frozen=True)
class GenerationOptions:
    """Per-call generation options."""

    max_tokens: int | None = None
    temperature: float | None = None


@dataclass(frozen=True)
class ProviderUsage:
    """Token usage as reported (or estimated) for a provider call."""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    estimated: bool = False


@dataclass(frozen=True)
class GenerationResult:
    """Output of a model provider call."""

    content: str
    usage: ProviderUsage | None = None


@dataclass(frozen=True)
class MeteredChatResult:
    """Chat completion plus the flat-rate debit that paid for it."""

    content: str
    model_id: str
    tier: Tier
    usage: ProviderUsage
    debit: DebitOutcome

    @property
    def low_balance(self) -> bool:
        """True when the flat debit could not be fully covered."""
        return self.debit.shortfall > 0

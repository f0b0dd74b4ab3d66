"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Plan(Base):
    """
    ORM model for plans table.

    Purchasable token packs. Price and grant are frozen once purchased.
    """

    __tablename__ = "plans"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Pricing
    price_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    token_grant: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tier: Mapped[str] = mapped_column(String(20), nullable=False, default="paid")

    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Purchase statistics
    total_purchases: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_revenue_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("price_minor >= 0", name="ck_plan_price_non_negative"),
        CheckConstraint("token_grant > 0", name="ck_plan_grant_positive"),
        CheckConstraint("tier IN ('free', 'paid', 'premium')", name="ck_plan_tier"),
        Index("idx_plans_tier_active", "tier", "active"),
        Index("idx_plans_sort_order", "sort_order"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Plan(id={self.id}, name={self.name}, tier={self.tier})>"


class Account(Base):
    """
    ORM model for accounts table.

    Token balance split into a free pool and a paid pool.
    """

    __tablename__ = "accounts"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Identity
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Token pools
    free_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    paid_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Usage
    total_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_requests: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Plan
    active_plan_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("plans.id"), nullable=True
    )

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("free_tokens >= 0", name="ck_free_tokens_non_negative"),
        CheckConstraint("paid_tokens >= 0", name="ck_paid_tokens_non_negative"),
        CheckConstraint("balance = free_tokens + paid_tokens", name="ck_balance_is_pool_sum"),
        CheckConstraint("total_used >= 0", name="ck_total_used_non_negative"),
        Index("idx_accounts_updated_at", "updated_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Account(id={self.id}, user_id={self.user_id}, "
            f"free={self.free_tokens}, paid={self.paid_tokens})>"
        )


class LedgerTransaction(Base):
    """
    ORM model for ledger_transactions table.

    Per-account movement log, pruned to the most recent entries.
    """

    __tablename__ = "ledger_transactions"

    # Monotonic sequence - ordering key for the capped log
    seq: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    transaction_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), nullable=False, unique=True, default=uuid4
    )

    account_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False
    )

    kind: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    pool: Mapped[str] = mapped_column(String(10), nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    related_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_ledger_amount_positive"),
        CheckConstraint("kind IN ('debit', 'credit')", name="ck_ledger_kind"),
        CheckConstraint("pool IN ('free', 'paid')", name="ck_ledger_pool"),
        Index("idx_ledger_account_seq", "account_id", "seq"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<LedgerTransaction(seq={self.seq}, account_id={self.account_id}, "
            f"kind={self.kind}, amount={self.amount}, pool={self.pool})>"
        )


class PlanPurchase(Base):
    """
    ORM model for plan_purchases table.

    Append-only plan history; payment_id is the per-account dedupe key.
    """

    __tablename__ = "plan_purchases"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    account_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False
    )
    plan_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("plans.id"), nullable=False
    )

    # Snapshots - later plan edits never alter history
    granted_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount_paid_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)

    payment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="completed")

    purchased_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("granted_tokens > 0", name="ck_purchase_grant_positive"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'refunded')",
            name="ck_purchase_status",
        ),
        UniqueConstraint("account_id", "payment_id", name="uq_purchase_payment"),
        Index("idx_plan_purchases_account", "account_id", "purchased_at"),
        Index("idx_plan_purchases_payment_id", "payment_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PlanPurchase(id={self.id}, account_id={self.account_id}, "
            f"payment_id={self.payment_id}, tokens={self.granted_tokens})>"
        )


class PaymentEvent(Base):
    """
    ORM model for payment_events table.

    Every inbound payment notification, keyed for idempotency and kept for audit.
    """

    __tablename__ = "payment_events"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Canonical key
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # As delivered
    delivery_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    event_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Processing state
    signature_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_payment_event_key"),
        CheckConstraint("attempts >= 0", name="ck_payment_event_attempts"),
        Index(
            "idx_payment_events_payment_id",
            "payment_id",
            postgresql_where=(payment_id.isnot(None)),
        ),
        Index("idx_payment_events_processed", "processed"),
        Index("idx_payment_events_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PaymentEvent(provider={self.provider}, event_id={self.event_id}, "
            f"processed={self.processed}, attempts={self.attempts})>"
        )

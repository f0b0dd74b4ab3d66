"""
Tests for the ReconciliationEngine.

The engine runs against in-memory stand-ins for the event store, ledger and
plan catalog. The stand-ins keep the same contracts as the database-backed
services: sightings never overwrite, claims succeed once, credits append a
plan history entry keyed by payment id.
"""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock
from uuid import UUID

import pytest
from sqlalchemy.exc import SQLAlchemyError

from helpers import (
    checkout_signature,
    create_account,
    create_plan_data,
    gateway_order,
    gateway_payment,
    sign,
    webhook_body,
)
from token_ledger.config import Settings
from token_ledger.db.models import Account
from token_ledger.exceptions import (
    AccountNotFoundError,
    EventNotRetryableError,
    GatewayUnavailableError,
    MetadataMismatchError,
    MetadataMissingError,
    PaymentEventNotFoundError,
    PaymentNotCapturedError,
    PlanNotFoundError,
    PlanNotFreeError,
    SignatureInvalidError,
)
from token_ledger.models.api import CreditSource, Pool, ReconciliationState
from token_ledger.models.domain import CreditOutcome, EventKey, PaymentEventRecord, PlanData
from token_ledger.services.reconciliation import ReconciliationEngine

# ============================================================================
# In-memory collaborators
# ============================================================================


class InMemoryEventStore:
    def __init__(self) -> None:
        self.rows: dict[EventKey, PaymentEventRecord] = {}
        self.claims = 0

    async def record_sighting(
        self,
        key: EventKey,
        payload: dict[str, Any],
        event_type: str | None = None,
        payment_id: str | None = None,
        order_id: str | None = None,
        delivery_event_id: str | None = None,
        signature_verified: bool = False,
    ) -> PaymentEventRecord:
        await asyncio.sleep(0)
        if key not in self.rows:
            self.rows[key] = PaymentEventRecord(
                provider=key.provider,
                event_id=key.event_id,
                delivery_event_id=delivery_event_id,
                event_type=event_type,
                payment_id=payment_id,
                order_id=order_id,
                signature_verified=signature_verified,
                processed=False,
                processed_at=None,
                attempts=0,
                last_error=None,
                payload=payload,
                result=None,
                created_at=datetime.now(UTC),
            )
        return self.rows[key]

    async def claim(self, key: EventKey) -> bool:
        row = self.rows[key]
        if row.processed:
            return False
        self.rows[key] = replace(row, processed=True, processed_at=datetime.now(UTC))
        self.claims += 1
        return True

    async def mark_processed(self, key: EventKey, result: dict[str, Any]) -> None:
        self.rows[key] = replace(self.rows[key], processed=True, result=result, last_error=None)

    async def mark_attempt_failed(self, key: EventKey, error: str) -> None:
        row = self.rows[key]
        self.rows[key] = replace(row, attempts=row.attempts + 1, last_error=error)

    async def get(self, key: EventKey) -> PaymentEventRecord | None:
        return self.rows.get(key)

    async def find_processed_by_payment_id(self, payment_id: str) -> PaymentEventRecord | None:
        for row in self.rows.values():
            if row.payment_id == payment_id and row.processed:
                return row
        return None


@dataclass
class InMemoryLedger:
    accounts: dict[str, Account] = field(default_factory=dict)
    purchases: set[tuple[UUID, str]] = field(default_factory=set)
    credits: list[str] = field(default_factory=list)

    async def lock_account(self, user_id: str) -> Account:
        await asyncio.sleep(0)
        if user_id not in self.accounts:
            raise AccountNotFoundError(user_id)
        return self.accounts[user_id]

    async def has_purchase(self, account_id: UUID, payment_id: str) -> bool:
        await asyncio.sleep(0)
        return (account_id, payment_id) in self.purchases

    async def credit(
        self,
        user_id: str,
        amount: int,
        source: CreditSource,
        reason: str,
        plan: PlanData | None = None,
        payment_id: str | None = None,
        amount_paid_minor: int = 0,
    ) -> CreditOutcome:
        account = self.accounts[user_id]
        if source == CreditSource.FREE_GRANT:
            account.free_tokens += amount
        else:
            account.paid_tokens += amount
        account.balance += amount
        self.purchases.add((account.id, payment_id))
        self.credits.append(payment_id)
        return CreditOutcome(
            account_id=account.id,
            pool=Pool.FREE if source == CreditSource.FREE_GRANT else Pool.PAID,
            amount=amount,
            new_balance=account.balance,
            free_tokens=account.free_tokens,
            paid_tokens=account.paid_tokens,
            payment_id=payment_id,
        )

    async def upgrade_active_plan(self, user_id: str, plan: PlanData) -> bool:
        self.accounts[user_id].active_plan_id = plan.plan_id
        return True


class InMemoryCatalog:
    def __init__(self, *plans: PlanData) -> None:
        self.plans = {str(p.plan_id): p for p in plans}
        self.revenue: list[int] = []

    async def get_plan(self, plan_id: Any, require_active: bool = True) -> PlanData:
        plan = self.plans.get(str(plan_id))
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    async def record_purchase(self, plan_id: UUID, revenue_minor: int) -> None:
        self.revenue.append(revenue_minor)


@dataclass
class Backend:
    events: InMemoryEventStore
    ledger: InMemoryLedger
    catalog: InMemoryCatalog

    @property
    def account(self) -> Account:
        return self.ledger.accounts["user-1"]


@pytest.fixture
def backend(plan_data: PlanData) -> Backend:
    return Backend(
        events=InMemoryEventStore(),
        ledger=InMemoryLedger(accounts={"user-1": create_account("user-1", free_tokens=100)}),
        catalog=InMemoryCatalog(plan_data),
    )


@pytest.fixture
def make_engine(db_session: AsyncMock, gateway: AsyncMock, backend: Backend, test_settings: Settings):
    def _make(session: AsyncMock | None = None) -> ReconciliationEngine:
        engine = ReconciliationEngine(session or db_session, gateway, test_settings)
        engine.events = backend.events
        engine.ledger = backend.ledger
        engine.catalog = backend.catalog
        return engine

    return _make


@pytest.fixture
def engine(make_engine) -> ReconciliationEngine:
    return make_engine()


async def deliver(engine: ReconciliationEngine, body: bytes, delivery_id: str = "evt_1"):
    return await engine.handle_webhook(body, sign(body, engine.settings.webhook_secret), delivery_id)


async def verify(engine: ReconciliationEngine, plan: PlanData, user_id: str = "user-1"):
    return await engine.verify_client_payment(
        user_id=user_id,
        plan_id=str(plan.plan_id),
        payment_id="pay_123",
        order_id="order_123",
        signature=checkout_signature("order_123", "pay_123", engine.settings.razorpay_key_secret),
    )


# ============================================================================
# Exactly-once crediting
# ============================================================================


class TestExactlyOnce:
    async def test_captured_webhook_credits_plan(self, engine, backend: Backend, plan_data):
        outcome = await deliver(engine, webhook_body())

        assert outcome.status == "success"
        assert outcome.result.state == ReconciliationState.PROCESSED
        assert outcome.result.tokens_added == 5000
        assert backend.account.paid_tokens == 5000
        assert backend.account.active_plan_id == plan_data.plan_id
        assert backend.catalog.revenue == [plan_data.price_minor]

        row = backend.events.rows[EventKey("razorpay", "pay_123")]
        assert row.processed
        assert row.result["tokens_added"] == 5000

    async def test_duplicate_webhook_is_noop(self, engine, backend: Backend):
        await deliver(engine, webhook_body())
        again = await deliver(engine, webhook_body(), delivery_id="evt_2")

        assert again.status == "already_processed"
        assert again.result.state == ReconciliationState.ALREADY_CREDITED
        assert backend.ledger.credits == ["pay_123"]
        assert backend.account.paid_tokens == 5000

    async def test_webhook_then_client_verify(self, engine, backend: Backend, plan_data):
        await deliver(engine, webhook_body())
        result = await verify(engine, plan_data)

        assert result.state == ReconciliationState.ALREADY_CREDITED
        assert result.status == "already_processed"
        assert backend.account.paid_tokens == 5000

    async def test_client_verify_then_webhook(self, engine, backend: Backend, plan_data):
        first = await verify(engine, plan_data)
        second = await deliver(engine, webhook_body())

        assert first.state == ReconciliationState.PROCESSED
        assert second.status == "already_processed"
        assert backend.ledger.credits == ["pay_123"]

    async def test_concurrent_channels_credit_once(self, make_engine, backend: Backend, plan_data):
        webhook_engine = make_engine(AsyncMock())
        client_engine = make_engine(AsyncMock())

        webhook_outcome, client_result = await asyncio.gather(
            deliver(webhook_engine, webhook_body()),
            verify(client_engine, plan_data),
        )

        states = {webhook_outcome.result.state, client_result.state}
        assert states == {ReconciliationState.PROCESSED, ReconciliationState.ALREADY_CREDITED}
        assert backend.account.paid_tokens == 5000
        assert backend.ledger.credits == ["pay_123"]
        assert backend.events.claims == 1

    async def test_payment_already_in_history(self, engine, backend: Backend):
        backend.ledger.purchases.add((backend.account.id, "pay_123"))

        outcome = await deliver(engine, webhook_body())

        assert outcome.result.state == ReconciliationState.ALREADY_CREDITED
        assert backend.ledger.credits == []
        assert backend.events.rows[EventKey("razorpay", "pay_123")].processed


# ============================================================================
# Failures
# ============================================================================


class TestFailures:
    async def test_bad_signature_touches_nothing(self, engine, backend: Backend, gateway):
        body = webhook_body()

        with pytest.raises(SignatureInvalidError):
            await engine.handle_webhook(body, sign(body, "wrong-secret"), "evt_1")

        assert backend.events.rows == {}
        gateway.fetch_payment.assert_not_called()
        assert backend.account.paid_tokens == 0

    async def test_bad_checkout_signature(self, engine, backend: Backend, plan_data):
        with pytest.raises(SignatureInvalidError):
            await engine.verify_client_payment(
                "user-1", str(plan_data.plan_id), "pay_123", "order_123", "00" * 32
            )
        assert backend.events.rows == {}

    async def test_gateway_failure_leaves_event_retryable(
        self, engine, backend: Backend, gateway, db_session: AsyncMock
    ):
        gateway.fetch_payment.side_effect = GatewayUnavailableError("timeout")

        with pytest.raises(GatewayUnavailableError):
            await deliver(engine, webhook_body())

        row = backend.events.rows[EventKey("razorpay", "pay_123")]
        assert not row.processed
        assert row.attempts == 1
        assert "GatewayUnavailableError" in row.last_error
        assert backend.account.paid_tokens == 0
        db_session.rollback.assert_awaited()

        gateway.fetch_payment.side_effect = None
        retried = await engine.retry_event("pay_123")

        assert retried.state == ReconciliationState.PROCESSED
        assert backend.account.paid_tokens == 5000

    async def test_failure_rolls_back_before_counting_attempt(
        self, engine, backend: Backend, db_session: AsyncMock
    ):
        backend.catalog.record_purchase = AsyncMock(side_effect=SQLAlchemyError("db down"))
        order: list[str] = []
        original = backend.events.mark_attempt_failed

        async def tracking(key: EventKey, error: str) -> None:
            order.append("mark_attempt_failed")
            await original(key, error)

        backend.events.mark_attempt_failed = tracking
        db_session.rollback.side_effect = lambda: order.append("rollback")
        db_session.commit.side_effect = lambda: order.append("commit")

        with pytest.raises(SQLAlchemyError):
            await deliver(engine, webhook_body())

        # sighting commit, then rollback of the credit, then the attempt in its own commit
        assert order == ["commit", "rollback", "mark_attempt_failed", "commit"]

    async def test_redelivery_after_failure_credits(self, engine, backend: Backend, gateway):
        gateway.fetch_payment.side_effect = [GatewayUnavailableError("down"), gateway_payment()]

        with pytest.raises(GatewayUnavailableError):
            await deliver(engine, webhook_body())
        outcome = await deliver(engine, webhook_body())

        assert outcome.status == "success"
        assert backend.ledger.credits == ["pay_123"]

    async def test_uncaptured_payment(self, engine, gateway, backend: Backend):
        gateway.fetch_payment.return_value = gateway_payment(status="created")

        with pytest.raises(PaymentNotCapturedError):
            await deliver(engine, webhook_body())
        assert backend.ledger.credits == []

    async def test_order_without_notes(self, engine, gateway):
        gateway.fetch_order.return_value = gateway_order(plan_id=None, user_id=None)

        with pytest.raises(MetadataMissingError):
            await deliver(engine, webhook_body())

    async def test_unknown_account(self, engine, gateway, plan_data):
        gateway.fetch_order.return_value = gateway_order(plan_data.plan_id, user_id="stranger")

        with pytest.raises(MetadataMissingError):
            await deliver(engine, webhook_body())

    async def test_unknown_plan(self, engine, gateway):
        gateway.fetch_order.return_value = gateway_order(create_plan_data().plan_id)

        with pytest.raises(MetadataMissingError):
            await deliver(engine, webhook_body())

    async def test_client_verify_for_other_user(self, engine, backend: Backend, plan_data):
        backend.ledger.accounts["user-2"] = create_account("user-2")

        with pytest.raises(MetadataMismatchError) as exc_info:
            await verify(engine, plan_data, user_id="user-2")

        assert exc_info.value.field == "user_id"
        assert backend.ledger.credits == []

    async def test_client_verify_for_other_plan(self, engine, backend: Backend):
        other = create_plan_data()
        backend.catalog.plans[str(other.plan_id)] = other

        with pytest.raises(MetadataMismatchError):
            await verify(engine, other)

    async def test_payment_entity_missing(self, engine):
        body = b'{"event": "payment.captured", "payload": {}}'

        with pytest.raises(MetadataMissingError):
            await deliver(engine, body)

    async def test_malformed_json_after_valid_signature(self, engine):
        with pytest.raises(MetadataMissingError):
            await deliver(engine, b"{not json")

    async def test_empty_body(self, engine):
        with pytest.raises(MetadataMissingError):
            await engine.handle_webhook(b"", "sig", None)


# ============================================================================
# Non-crediting events
# ============================================================================


class TestOtherEvents:
    async def test_payment_failed_acknowledged_not_claimed(self, engine, backend: Backend):
        outcome = await deliver(engine, webhook_body(event="payment.failed"))

        assert outcome.status == "acknowledged"
        row = backend.events.rows[EventKey("razorpay", "pay_123")]
        assert not row.processed
        assert backend.ledger.credits == []

        # A later capture of the same payment still credits
        captured = await deliver(engine, webhook_body(), delivery_id="evt_2")
        assert captured.status == "success"

    async def test_refund_tracked_without_ledger_change(self, engine, backend: Backend):
        body = webhook_body(
            event="refund.processed",
            extra={"refund": {"entity": {"id": "rfnd_1", "payment_id": "pay_123", "amount": 100}}},
        )

        outcome = await engine.handle_webhook(body, sign(body, engine.settings.webhook_secret))

        assert outcome.status == "acknowledged"
        assert outcome.event_key == EventKey("razorpay", "rfnd_1")
        assert backend.ledger.credits == []
        assert not backend.events.rows[EventKey("razorpay", "rfnd_1")].processed

    async def test_order_paid_acknowledged(self, engine, backend: Backend):
        outcome = await deliver(engine, webhook_body(event="order.paid"))

        assert outcome.status == "acknowledged"
        assert backend.ledger.credits == []

    async def test_unknown_event_ignored(self, engine, backend: Backend):
        outcome = await deliver(engine, webhook_body(event="subscription.charged"))

        assert outcome.status == "ignored"
        assert backend.events.rows == {}


# ============================================================================
# Admin retry / checkout orders
# ============================================================================


class TestRetry:
    async def test_unknown_event(self, engine):
        with pytest.raises(PaymentEventNotFoundError):
            await engine.retry_event("pay_missing")

    async def test_processed_event_not_retryable(self, engine):
        await deliver(engine, webhook_body())

        with pytest.raises(EventNotRetryableError):
            await engine.retry_event("pay_123")

    async def test_refund_event_not_retryable(self, engine):
        body = webhook_body(
            event="refund.created",
            extra={"refund": {"entity": {"id": "rfnd_1", "payment_id": "pay_123"}}},
        )
        await engine.handle_webhook(body, sign(body, engine.settings.webhook_secret))

        with pytest.raises(EventNotRetryableError):
            await engine.retry_event("rfnd_1")


class TestCreateOrder:
    async def test_free_plan_needs_no_order(self, engine, backend: Backend, gateway):
        free = create_plan_data(price_minor=0)
        backend.catalog.plans[str(free.plan_id)] = free

        order, amount, currency = await engine.create_order("user-1", str(free.plan_id))

        assert order is None
        assert amount == 0
        assert currency == "INR"
        gateway.create_order.assert_not_called()

    async def test_paid_plan_creates_gateway_order(self, engine, gateway, plan_data):
        gateway.create_order.return_value = gateway_order(plan_data.plan_id)

        order, amount, _ = await engine.create_order("user-1", str(plan_data.plan_id))

        assert order.order_id == "order_123"
        assert amount == 49900
        gateway.create_order.assert_awaited_once_with(plan_data, "user-1")


class TestFreePlanGrant:
    @pytest.fixture
    def free_plan(self, backend: Backend) -> PlanData:
        plan = create_plan_data(price_minor=0, token_grant=300)
        backend.catalog.plans[str(plan.plan_id)] = plan
        return plan

    async def test_grants_free_pool_history_and_active_plan(
        self, engine, backend: Backend, free_plan: PlanData, db_session: AsyncMock
    ):
        result = await engine.grant_free_plan("user-1", str(free_plan.plan_id))

        assert not result.already_granted
        assert result.tokens_added == 300
        assert result.new_balance == 400
        assert backend.account.free_tokens == 400
        assert backend.account.paid_tokens == 0
        assert backend.account.active_plan_id == free_plan.plan_id
        assert (backend.account.id, f"free_grant:{free_plan.plan_id}") in backend.ledger.purchases
        assert backend.catalog.revenue == [0]
        db_session.commit.assert_awaited_once()

    async def test_second_claim_grants_nothing(self, engine, backend: Backend, free_plan: PlanData):
        await engine.grant_free_plan("user-1", str(free_plan.plan_id))

        again = await engine.grant_free_plan("user-1", str(free_plan.plan_id))

        assert again.already_granted
        assert again.tokens_added == 0
        assert again.new_balance == 400
        assert len(backend.ledger.credits) == 1
        assert backend.catalog.revenue == [0]

    async def test_priced_plan_rejected(self, engine, backend: Backend, plan_data: PlanData):
        with pytest.raises(PlanNotFreeError) as exc_info:
            await engine.grant_free_plan("user-1", str(plan_data.plan_id))

        assert exc_info.value.price_minor == plan_data.price_minor
        assert backend.ledger.credits == []

    async def test_failure_rolls_back(
        self, engine, backend: Backend, free_plan: PlanData, db_session: AsyncMock
    ):
        backend.catalog.record_purchase = AsyncMock(side_effect=SQLAlchemyError("boom"))

        with pytest.raises(SQLAlchemyError):
            await engine.grant_free_plan("user-1", str(free_plan.plan_id))

        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_called()

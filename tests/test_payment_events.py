"""
Tests for the payment event store and canonical event keys.
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from helpers import make_result
from token_ledger.db.models import PaymentEvent
from token_ledger.exceptions import WriteVerificationError
from token_ledger.models.domain import EventKey
from token_ledger.services.payment_events import (
    MAX_ERROR_LENGTH,
    PaymentEventStore,
    resolve_event_key,
)

KEY = EventKey(provider="razorpay", event_id="pay_1")


def event_row(processed: bool = False, attempts: int = 0) -> PaymentEvent:
    now = datetime.now(UTC)
    return PaymentEvent(
        id=uuid4(),
        provider="razorpay",
        event_id="pay_1",
        delivery_event_id="evt_1",
        event_type="payment.captured",
        payment_id="pay_1",
        order_id="order_1",
        signature_verified=True,
        processed=processed,
        processed_at=now if processed else None,
        attempts=attempts,
        last_error=None,
        payload={"event": "payment.captured"},
        result={"status": "success"} if processed else None,
        created_at=now,
        updated_at=now,
    )


class TestResolveEventKey:
    def test_payment_id_wins(self):
        key = resolve_event_key("razorpay", "pay_1", "order_1", "evt_1", "payment.captured")
        assert key == EventKey("razorpay", "pay_1")

    def test_order_id_when_no_payment(self):
        key = resolve_event_key("razorpay", None, "order_1", "evt_1", "order.paid")
        assert key.event_id == "order_1"

    def test_delivery_id_when_no_entities(self):
        key = resolve_event_key("razorpay", None, None, "evt_1", "refund.created")
        assert key.event_id == "evt_1"

    def test_fallback_uses_type_and_unix_seconds(self):
        ts = datetime(2026, 1, 1, tzinfo=UTC)
        key = resolve_event_key("razorpay", None, None, None, "refund.created", ts)
        assert key.event_id == "refund.created_1767225600"

    def test_datetime_and_unix_seconds_give_same_key(self):
        ts = datetime(2025, 10, 9, 8, 53, 20, tzinfo=UTC)
        from_datetime = resolve_event_key("razorpay", None, None, None, "payment.failed", ts)
        from_seconds = resolve_event_key(
            "razorpay", None, None, None, "payment.failed", int(ts.timestamp())
        )
        assert from_datetime == from_seconds

    def test_unusable_timestamp_falls_back_to_now(self):
        key = resolve_event_key("razorpay", None, None, None, "payment.failed", "yesterday")
        event_type, _, seconds = key.event_id.rpartition("_")
        assert event_type == "payment.failed"
        assert abs(int(seconds) - int(datetime.now(UTC).timestamp())) < 60

    def test_fallback_accepts_integer_timestamp(self):
        key = resolve_event_key("razorpay", "", None, None, "payment.failed", 1760000000)
        assert key.event_id == "payment.failed_1760000000"

    def test_webhook_and_client_verify_share_key(self):
        webhook = resolve_event_key("razorpay", "pay_9", "order_9", "evt_x", "payment.captured")
        client = resolve_event_key("razorpay", "pay_9", "order_9", None, "payment.verify")
        assert webhook == client


class TestRecordSighting:
    async def test_first_sighting(self, db_session: AsyncMock):
        row = event_row()
        db_session.execute = AsyncMock(
            side_effect=[make_result(scalar=row.id), make_result(scalar=row)]
        )

        record = await PaymentEventStore(db_session).record_sighting(
            KEY, row.payload, event_type="payment.captured", signature_verified=True
        )

        assert record.key == KEY
        assert not record.processed

    async def test_duplicate_sighting_returns_stored_row(self, db_session: AsyncMock):
        row = event_row(processed=True)
        db_session.execute = AsyncMock(side_effect=[make_result(scalar=None), make_result(scalar=row)])

        record = await PaymentEventStore(db_session).record_sighting(KEY, {"different": True})

        assert record.processed
        assert record.payload == {"event": "payment.captured"}

    async def test_missing_row_after_insert(self, db_session: AsyncMock):
        with pytest.raises(WriteVerificationError):
            await PaymentEventStore(db_session).record_sighting(KEY, {})


class TestClaim:
    async def test_claim_succeeds_once(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(
            side_effect=[make_result(scalar=uuid4()), make_result(scalar=None)]
        )
        store = PaymentEventStore(db_session)

        assert await store.claim(KEY) is True
        assert await store.claim(KEY) is False
        db_session.commit.assert_not_called()

    async def test_failed_attempt_truncates_error(self, db_session: AsyncMock):
        await PaymentEventStore(db_session).mark_attempt_failed(KEY, "x" * 5000)

        stmt = db_session.execute.await_args.args[0]
        params = stmt.compile().params
        assert len(params["last_error"]) == MAX_ERROR_LENGTH
        assert "processed" not in params


class TestQueries:
    async def test_get_missing(self, db_session: AsyncMock):
        assert await PaymentEventStore(db_session).get(KEY) is None

    async def test_find_processed_by_payment_id(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(return_value=make_result(scalar=event_row(processed=True)))

        record = await PaymentEventStore(db_session).find_processed_by_payment_id("pay_1")

        assert record is not None
        assert record.result == {"status": "success"}

    async def test_list_events_returns_total(self, db_session: AsyncMock):
        rows = [event_row(), event_row(attempts=2)]
        db_session.execute = AsyncMock(
            side_effect=[make_result(scalar_one=7), make_result(rows=rows)]
        )

        events, total = await PaymentEventStore(db_session).list_events(processed=False, limit=2)

        assert total == 7
        assert [e.attempts for e in events] == [0, 2]

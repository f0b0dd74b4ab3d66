"""
Payment Event Store - Uniquely keyed record of every payment notification.

Used for idempotency and audit only. A duplicate delivery never overwrites an
existing row; `processed` only ever moves from false to true.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from token_ledger.db.models import PaymentEvent, utc_now
from token_ledger.exceptions import WriteVerificationError
from token_ledger.models.domain import EventKey, PaymentEventRecord

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 2000


def resolve_event_key(
    provider: str,
    payment_id: str | None,
    order_id: str | None,
    delivery_event_id: str | None,
    event_type: str,
    timestamp: datetime | int | float | None = None,
) -> EventKey:
    """
    Canonical event identifier.

    Priority: payment id > order id > provider event id > "{event_type}_{timestamp}",
    the timestamp in Unix seconds as the gateway sends created_at.
    Payment id first lets the webhook and the client verify call for the same
    payment land on the same row.
    """
    for candidate in (payment_id, order_id, delivery_event_id):
        if candidate:
            return EventKey(provider=provider, event_id=candidate)

    if isinstance(timestamp, bool) or not isinstance(timestamp, (datetime, int, float)):
        timestamp = utc_now()
    if isinstance(timestamp, datetime):
        seconds = int(timestamp.timestamp())
    else:
        seconds = int(timestamp)
    return EventKey(provider=provider, event_id=f"{event_type}_{seconds}")


def _to_record(row: PaymentEvent) -> PaymentEventRecord:
    return PaymentEventRecord(
        provider=row.provider,
        event_id=row.event_id,
        delivery_event_id=row.delivery_event_id,
        event_type=row.event_type,
        payment_id=row.payment_id,
        order_id=row.order_id,
        signature_verified=row.signature_verified,
        processed=row.processed,
        processed_at=row.processed_at,
        attempts=row.attempts,
        last_error=row.last_error,
        payload=row.payload or {},
        result=row.result,
        created_at=row.created_at,
    )


def _match(key: EventKey) -> tuple[Any, ...]:
    return (PaymentEvent.provider == key.provider, PaymentEvent.event_id == key.event_id)


class PaymentEventStore:
    """Insert-if-absent event log with an atomic processed claim. Never commits."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

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
        """
        Insert the event if absent, then return the stored row.

        A second sighting of the same key leaves the first row untouched.
        """
        now = utc_now()
        stmt = (
            pg_insert(PaymentEvent)
            .values(
                provider=key.provider,
                event_id=key.event_id,
                delivery_event_id=delivery_event_id,
                event_type=event_type,
                payment_id=payment_id,
                order_id=order_id,
                signature_verified=signature_verified,
                processed=False,
                attempts=0,
                payload=payload,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(constraint="uq_payment_event_key")
            .returning(PaymentEvent.id)
        )
        result = await self.session.execute(stmt)
        inserted = result.scalar_one_or_none() is not None

        record = await self.get(key)
        if record is None:
            raise WriteVerificationError(f"Payment event {key.event_id} not found after insert")

        logger.info(
            "payment_event_sighted",
            provider=key.provider,
            event_id=key.event_id,
            event_type=event_type,
            first_sighting=inserted,
            processed=record.processed,
        )
        return record

    async def claim(self, key: EventKey) -> bool:
        """
        Atomically flip processed false -> true.

        Succeeds for exactly one caller; concurrent claimers block on the row
        and see processed already true once the winner commits.
        """
        now = utc_now()
        stmt = (
            update(PaymentEvent)
            .where(*_match(key), PaymentEvent.processed.is_(False))
            .values(processed=True, processed_at=now, updated_at=now)
            .returning(PaymentEvent.id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        claimed = result.scalar_one_or_none() is not None
        logger.debug("payment_event_claim", event_id=key.event_id, claimed=claimed)
        return claimed

    async def mark_processed(self, key: EventKey, result: dict[str, Any]) -> None:
        """Record the outcome on a processed event."""
        now = utc_now()
        await self.session.execute(
            update(PaymentEvent)
            .where(*_match(key))
            .values(
                processed=True,
                processed_at=now,
                signature_verified=True,
                result=result,
                last_error=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

    async def mark_attempt_failed(self, key: EventKey, error: str) -> None:
        """Count a failed attempt. Never touches processed."""
        await self.session.execute(
            update(PaymentEvent)
            .where(*_match(key))
            .values(
                attempts=PaymentEvent.attempts + 1,
                last_error=error[:MAX_ERROR_LENGTH],
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        logger.warning("payment_event_attempt_failed", event_id=key.event_id, error=error)

    async def get(self, key: EventKey) -> PaymentEventRecord | None:
        """Stored event by key."""
        stmt = (
            select(PaymentEvent)
            .where(*_match(key))
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return _to_record(row) if row is not None else None

    async def find_processed_by_payment_id(self, payment_id: str) -> PaymentEventRecord | None:
        """Any processed event for this payment, under whichever key it was stored."""
        stmt = (
            select(PaymentEvent)
            .where(PaymentEvent.payment_id == payment_id, PaymentEvent.processed.is_(True))
            .order_by(PaymentEvent.processed_at)
            .limit(1)
        )
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return _to_record(row) if row is not None else None

    async def list_events(
        self,
        provider: str | None = None,
        processed: bool | None = None,
        payment_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[PaymentEventRecord], int]:
        """Audit view, newest first. Returns (events, total matching)."""
        filters = []
        if provider is not None:
            filters.append(PaymentEvent.provider == provider)
        if processed is not None:
            filters.append(PaymentEvent.processed.is_(processed))
        if payment_id is not None:
            filters.append(PaymentEvent.payment_id == payment_id)

        count_result = await self.session.execute(
            select(func.count()).select_from(PaymentEvent).where(*filters)
        )
        total = count_result.scalar_one()

        stmt = (
            select(PaymentEvent)
            .where(*filters)
            .order_by(PaymentEvent.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return [_to_record(row) for row in result.scalars().all()], total

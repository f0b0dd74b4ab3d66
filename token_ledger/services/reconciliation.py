"""
Reconciliation Engine - Turns payment notifications into exactly one credit.

NO DICTIONARIES - Notifications and outcomes are typed domain models.

Both delivery channels (gateway webhook and client verify call) run the same
state machine:

    RECEIVED -> SIGNATURE_VERIFIED -> METADATA_RESOLVED -> ALREADY_CREDITED
                                                        -> CREDITED -> PROCESSED
    any step -> FAILED (retryable)

The idempotency gate runs in one database transaction: lock the account row,
check plan history for the payment id, then atomically claim the event.
"""

import json
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from token_ledger.config import Settings, get_settings
from token_ledger.exceptions import (
    AccountNotFoundError,
    EventNotRetryableError,
    MetadataMismatchError,
    MetadataMissingError,
    PaymentEventNotFoundError,
    PaymentNotCapturedError,
    PlanNotFoundError,
    PlanNotFreeError,
)
from token_ledger.models.api import CreditSource, ReconciliationState
from token_ledger.models.domain import (
    EventKey,
    GatewayOrder,
    PaymentEventRecord,
    PaymentNotification,
    PlanGrantResult,
    ReconciliationResult,
    ResolvedPayment,
    WebhookOutcome,
)
from token_ledger.observability.metrics import metrics
from token_ledger.observability.tracing import trace_operation
from token_ledger.services.ledger import LedgerService
from token_ledger.services.payment_events import PaymentEventStore, resolve_event_key
from token_ledger.services.payment_gateway import PaymentGateway
from token_ledger.services.plan_catalog import PlanCatalog, parse_plan_id
from token_ledger.services.signatures import verify_checkout_signature, verify_webhook_signature

logger = get_logger(__name__)

CAPTURE_EVENTS = ("payment.captured", "payment.authorized")
FAILED_EVENT = "payment.failed"
ORDER_PAID_EVENT = "order.paid"
REFUND_EVENTS = ("refund.created", "refund.processed")

WEBHOOK_CHANNEL = "webhook"
CLIENT_VERIFY_CHANNEL = "client_verify"
RETRY_CHANNEL = "manual_retry"

FREE_GRANT_PREFIX = "free_grant:"


def _entity(payload: dict[str, Any], name: str) -> dict[str, Any] | None:
    """payload.payload.<name>.entity, if present."""
    wrapper = (payload.get("payload") or {}).get(name) or {}
    entity = wrapper.get("entity") if isinstance(wrapper, dict) else None
    return entity if isinstance(entity, dict) else None


class ReconciliationEngine:
    """
    Reconciliation state machine shared by the webhook and client verify paths.

    The engine owns the transaction boundaries on its session:
    1. The sighting is committed on its own
    2. The idempotency gate, credit and processed mark commit together
    3. A failure rolls that transaction back, then counts the attempt separately
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        settings: Settings | None = None,
    ) -> None:
        self.session = session
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.provider = gateway.provider_name
        self.events = PaymentEventStore(session)
        self.ledger = LedgerService(session, self.settings)
        self.catalog = PlanCatalog(session)

    # ========================================================================
    # Entry points
    # ========================================================================

    async def handle_webhook(
        self,
        raw_body: bytes,
        signature: str | None,
        delivery_event_id: str | None = None,
    ) -> WebhookOutcome:
        """
        Handle one webhook delivery.

        The signature is checked over the raw bytes before anything is parsed
        or stored.

        Raises:
            SignatureInvalidError: Signature missing or wrong
            MetadataMissingError: Malformed body or unresolvable payment
            GatewayUnavailableError: Payment lookup failed
            PersistenceError: Ledger write failed
        """
        if not raw_body:
            raise MetadataMissingError("empty request body")
        verify_webhook_signature(raw_body, signature, self.settings.webhook_secret)

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise MetadataMissingError("malformed JSON payload") from e
        if not isinstance(payload, dict):
            raise MetadataMissingError("JSON payload is not an object")

        event_type = str(payload.get("event") or "unknown")
        delivery_event_id = delivery_event_id or payload.get("id")
        created_at = payload.get("created_at")
        payment = _entity(payload, "payment")
        order = _entity(payload, "order")

        if event_type in CAPTURE_EVENTS:
            if not payment or not payment.get("id"):
                raise MetadataMissingError("payment entity missing")
            if not payment.get("order_id"):
                raise MetadataMissingError("order id missing in payment")
            payment_id = str(payment["id"])
            order_id = str(payment["order_id"])
            notification = PaymentNotification(
                provider=self.provider,
                channel=WEBHOOK_CHANNEL,
                event_type=event_type,
                event_key=resolve_event_key(
                    self.provider, payment_id, order_id, delivery_event_id, event_type, created_at
                ),
                delivery_event_id=delivery_event_id,
                payment_id=payment_id,
                order_id=order_id,
                payload=payload,
            )
            result = await self.reconcile(notification)
            metrics.record_webhook(event_type, result.status)
            return WebhookOutcome(
                status=result.status,
                event_type=event_type,
                event_key=notification.event_key,
                result=result,
            )

        if event_type == FAILED_EVENT or event_type == ORDER_PAID_EVENT:
            payment_id = str(payment["id"]) if payment and payment.get("id") else None
            order_id = (payment or {}).get("order_id") or (order or {}).get("id")
            key = resolve_event_key(
                self.provider, payment_id, order_id, delivery_event_id, event_type, created_at
            )
            await self._record_acknowledged(
                key, payload, event_type, payment_id, order_id, delivery_event_id
            )
            if event_type == FAILED_EVENT:
                logger.info(
                    "payment_failed_acknowledged",
                    payment_id=payment_id,
                    reason=(payment or {}).get("error_description") or "unknown",
                )
            return self._acknowledged(event_type, key)

        if event_type in REFUND_EVENTS:
            refund = _entity(payload, "refund") or {}
            # Keyed by delivery id so it never shares the purchase row
            key = resolve_event_key(
                self.provider,
                None,
                None,
                delivery_event_id or refund.get("id"),
                event_type,
                created_at,
            )
            await self._record_acknowledged(
                key, payload, event_type, refund.get("payment_id"), None, delivery_event_id
            )
            logger.warning(
                "refund_tracked_without_ledger_change",
                refund_id=refund.get("id"),
                payment_id=refund.get("payment_id"),
                amount_minor=refund.get("amount"),
            )
            return self._acknowledged(event_type, key)

        logger.info(
            "webhook_event_ignored", event_type=event_type, delivery_event_id=delivery_event_id
        )
        metrics.record_webhook(event_type, "ignored")
        return WebhookOutcome(status="ignored", event_type=event_type)

    async def verify_client_payment(
        self,
        user_id: str,
        plan_id: str,
        payment_id: str,
        order_id: str,
        signature: str,
    ) -> ReconciliationResult:
        """
        Handle a client-confirmed checkout for `plan_id` by `user_id`.

        Raises:
            SignatureInvalidError: Checkout signature wrong
            MetadataMissingError: Unresolvable payment, or order notes disagree
                with the URL plan or the authenticated user
            GatewayUnavailableError: Payment lookup failed
        """
        verify_checkout_signature(
            order_id, payment_id, signature, self.settings.razorpay_key_secret
        )

        notification = PaymentNotification(
            provider=self.provider,
            channel=CLIENT_VERIFY_CHANNEL,
            event_type="payment.verify",
            event_key=resolve_event_key(self.provider, payment_id, order_id, None, "payment.verify"),
            delivery_event_id=None,
            payment_id=payment_id,
            order_id=order_id,
            payload={
                "payment_id": payment_id,
                "order_id": order_id,
                "plan_id": plan_id,
                "user_id": user_id,
            },
            expected_plan_id=str(parse_plan_id(plan_id)),
            expected_user_id=user_id,
        )
        return await self.reconcile(notification)

    async def retry_event(self, event_id: str) -> ReconciliationResult:
        """
        Re-run a stored, unprocessed event (admin).

        The stored signature was verified at first sighting; amounts and notes
        are re-fetched from the gateway anyway.

        Raises:
            PaymentEventNotFoundError: No such event
            EventNotRetryableError: Already processed, or not a payment event
        """
        record = await self.events.get(EventKey(provider=self.provider, event_id=event_id))
        if record is None:
            raise PaymentEventNotFoundError(event_id)
        if record.processed:
            raise EventNotRetryableError(event_id, "already processed")
        if not record.payment_id or (record.event_type or "") in REFUND_EVENTS:
            raise EventNotRetryableError(event_id, f"event type {record.event_type} not supported")

        notification = PaymentNotification(
            provider=record.provider,
            channel=RETRY_CHANNEL,
            event_type=record.event_type or "unknown",
            event_key=record.key,
            delivery_event_id=record.delivery_event_id,
            payment_id=record.payment_id,
            order_id=record.order_id,
            payload=record.payload,
        )
        logger.info("payment_event_retry_requested", event_id=event_id, attempts=record.attempts)
        return await self.reconcile(notification)

    async def create_order(self, user_id: str, plan_id: str) -> tuple[GatewayOrder | None, int, str]:
        """
        Create a checkout order whose notes let the engine resolve the payment.

        Returns (order, amount_minor, currency); order is None for free plans.

        Raises:
            PlanNotFoundError: Plan doesn't exist or is inactive
            GatewayUnavailableError: Gateway call failed
        """
        plan = await self.catalog.get_plan(plan_id)
        if plan.price_minor == 0:
            return None, 0, plan.currency
        order = await self.gateway.create_order(plan, user_id)
        return order, order.amount_minor, order.currency

    async def grant_free_plan(self, user_id: str, plan_id: str) -> PlanGrantResult:
        """
        Claim a zero-priced plan: free-pool grant, plan history, active plan.

        A free plan is granted at most once per account. The plan history
        entry carries a synthetic payment id, so a repeat claim finds it and
        the unique (account, payment_id) constraint rejects a racing one.

        Raises:
            PlanNotFoundError: Plan doesn't exist or is inactive
            PlanNotFreeError: Plan has a price
            AccountNotFoundError: Account doesn't exist
        """
        plan = await self.catalog.get_plan(plan_id)
        if plan.price_minor != 0:
            raise PlanNotFreeError(plan.plan_id, plan.price_minor)

        grant_id = f"{FREE_GRANT_PREFIX}{plan.plan_id}"
        try:
            account = await self.ledger.lock_account(user_id)
            if await self.ledger.has_purchase(account.id, grant_id):
                result = PlanGrantResult(
                    plan_id=str(plan.plan_id),
                    user_id=user_id,
                    tokens_added=0,
                    new_balance=account.balance,
                    already_granted=True,
                )
                await self.session.commit()
                logger.info("free_plan_already_granted", user_id=user_id, plan_id=str(plan.plan_id))
                return result

            credit = await self.ledger.credit(
                user_id,
                plan.token_grant,
                CreditSource.FREE_GRANT,
                reason=f"plan_grant:{plan.name}",
                plan=plan,
                payment_id=grant_id,
            )
            await self.catalog.record_purchase(plan.plan_id, 0)
            await self.ledger.upgrade_active_plan(user_id, plan)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "free_plan_granted",
            user_id=user_id,
            plan_id=str(plan.plan_id),
            tokens_added=plan.token_grant,
        )
        return PlanGrantResult(
            plan_id=str(plan.plan_id),
            user_id=user_id,
            tokens_added=plan.token_grant,
            new_balance=credit.new_balance,
        )

    # ========================================================================
    # State machine
    # ========================================================================

    async def reconcile(self, notification: PaymentNotification) -> ReconciliationResult:
        """Run a signature-verified notification through the state machine."""
        key = notification.event_key
        with trace_operation(
            "reconcile_payment",
            channel=notification.channel,
            event_id=key.event_id,
            payment_id=notification.payment_id,
        ) as span:
            # RECEIVED
            record = await self.events.record_sighting(
                key,
                notification.payload,
                event_type=notification.event_type,
                payment_id=notification.payment_id,
                order_id=notification.order_id,
                delivery_event_id=notification.delivery_event_id,
                signature_verified=True,
            )
            await self.session.commit()

            if not record.processed and notification.payment_id:
                record = (
                    await self.events.find_processed_by_payment_id(notification.payment_id)
                    or record
                )

            if record.processed:
                result = self._already_credited(record)
            else:
                try:
                    resolved = await self._resolve(notification)
                    result = await self._credit_once(key, resolved)
                except Exception as e:
                    await self._record_failure(notification, e)
                    raise

            span.set_attribute("state", result.state.value)
            metrics.record_reconciliation(notification.channel, result.state.value)
            return result

    async def _resolve(self, notification: PaymentNotification) -> ResolvedPayment:
        """METADATA_RESOLVED: authoritative payment, order notes, plan."""
        if not notification.payment_id:
            raise MetadataMissingError("payment id missing")

        payment = await self.gateway.fetch_payment(notification.payment_id)
        if not payment.is_captured:
            raise PaymentNotCapturedError(payment.payment_id, payment.status)

        order_id = notification.order_id or payment.order_id
        if not order_id:
            raise MetadataMissingError(f"payment {payment.payment_id} has no order")
        if payment.order_id and payment.order_id != order_id:
            raise MetadataMismatchError("order_id", payment.order_id, order_id)

        order = await self.gateway.fetch_order(order_id)
        if not order.plan_id or not order.user_id:
            raise MetadataMissingError(f"order {order_id} missing planId/userId notes")
        expected_plan = notification.expected_plan_id
        expected_user = notification.expected_user_id
        if expected_plan is not None and order.plan_id != expected_plan:
            raise MetadataMismatchError("plan_id", order.plan_id, expected_plan)
        if expected_user is not None and order.user_id != expected_user:
            raise MetadataMismatchError("user_id", order.user_id, expected_user)

        try:
            plan = await self.catalog.get_plan(order.plan_id, require_active=False)
        except PlanNotFoundError as e:
            raise MetadataMissingError(f"plan {order.plan_id} not found") from e

        logger.info(
            "payment_metadata_resolved",
            payment_id=payment.payment_id,
            order_id=order_id,
            plan_id=order.plan_id,
            user_id=order.user_id,
        )
        return ResolvedPayment(payment=payment, order=order, plan=plan, user_id=order.user_id)

    async def _credit_once(self, key: EventKey, resolved: ResolvedPayment) -> ReconciliationResult:
        """Idempotency gate, CREDITED and PROCESSED in one transaction."""
        payment_id = resolved.payment.payment_id
        plan = resolved.plan

        try:
            account = await self.ledger.lock_account(resolved.user_id)
        except AccountNotFoundError as e:
            raise MetadataMissingError(f"account {resolved.user_id} not found") from e

        already_in_history = await self.ledger.has_purchase(account.id, payment_id)
        claimed = await self.events.claim(key)

        if already_in_history or not claimed:
            result = ReconciliationResult(
                state=ReconciliationState.ALREADY_CREDITED,
                event_key=key,
                payment_id=payment_id,
                user_id=resolved.user_id,
                plan_id=str(plan.plan_id),
                new_balance=account.balance,
            )
            if claimed:
                await self.events.mark_processed(key, result.to_record())
            await self.session.commit()
            logger.info(
                "payment_already_credited",
                payment_id=payment_id,
                event_id=key.event_id,
                in_history=already_in_history,
            )
            return result

        credit = await self.ledger.credit(
            resolved.user_id,
            plan.token_grant,
            CreditSource.PAYMENT,
            reason=f"plan_purchase:{plan.name}",
            plan=plan,
            payment_id=payment_id,
            amount_paid_minor=resolved.payment.amount_minor,
        )
        await self.catalog.record_purchase(plan.plan_id, plan.price_minor)
        await self.ledger.upgrade_active_plan(resolved.user_id, plan)
        logger.info(
            "payment_credited",
            payment_id=payment_id,
            user_id=resolved.user_id,
            plan_id=str(plan.plan_id),
            tokens_added=plan.token_grant,
        )

        result = ReconciliationResult(
            state=ReconciliationState.PROCESSED,
            event_key=key,
            payment_id=payment_id,
            user_id=resolved.user_id,
            plan_id=str(plan.plan_id),
            tokens_added=plan.token_grant,
            new_balance=credit.new_balance,
        )
        await self.events.mark_processed(key, result.to_record())
        await self.session.commit()
        return result

    async def _record_failure(self, notification: PaymentNotification, error: Exception) -> None:
        """FAILED: roll back, then count the attempt in a fresh transaction."""
        key = notification.event_key
        await self.session.rollback()
        metrics.record_reconciliation(notification.channel, ReconciliationState.FAILED.value)
        logger.error(
            "reconciliation_failed",
            channel=notification.channel,
            event_id=key.event_id,
            payment_id=notification.payment_id,
            error_type=type(error).__name__,
            error=str(error),
        )
        try:
            await self.events.mark_attempt_failed(key, f"{type(error).__name__}: {error}")
            await self.session.commit()
        except Exception as mark_error:
            await self.session.rollback()
            logger.error(
                "payment_event_attempt_not_recorded",
                event_id=key.event_id,
                error=str(mark_error),
                exc_info=True,
            )

    # ========================================================================
    # Helpers
    # ========================================================================

    def _already_credited(self, record: PaymentEventRecord) -> ReconciliationResult:
        stored = record.result or {}
        logger.info("payment_event_already_processed", event_id=record.event_id)
        return ReconciliationResult(
            state=ReconciliationState.ALREADY_CREDITED,
            event_key=record.key,
            payment_id=record.payment_id,
            user_id=stored.get("user_id"),
            plan_id=stored.get("plan_id"),
            new_balance=stored.get("new_balance"),
        )

    async def _record_acknowledged(
        self,
        key: EventKey,
        payload: dict[str, Any],
        event_type: str,
        payment_id: str | None,
        order_id: str | None,
        delivery_event_id: str | None,
    ) -> None:
        """Audit-only sighting; never claimed, so a later capture still credits."""
        await self.events.record_sighting(
            key,
            payload,
            event_type=event_type,
            payment_id=payment_id,
            order_id=order_id,
            delivery_event_id=delivery_event_id,
            signature_verified=True,
        )
        await self.session.commit()

    @staticmethod
    def _acknowledged(event_type: str, key: EventKey) -> WebhookOutcome:
        metrics.record_webhook(event_type, "acknowledged")
        return WebhookOutcome(status="acknowledged", event_type=event_type, event_key=key)

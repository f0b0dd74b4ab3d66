"""
Payment Gateway - Authoritative payment and order lookups.

NO DICTIONARIES - Gateway responses are parsed into typed domain models.

Amounts, statuses and order notes always come from here, never from the
client or the webhook body.
"""

import time
from typing import Any, Protocol

import httpx
from structlog import get_logger

from token_ledger.config import Settings
from token_ledger.exceptions import GatewayUnavailableError, MetadataMissingError
from token_ledger.models.domain import GatewayOrder, GatewayPayment, PlanData
from token_ledger.observability.metrics import metrics

logger = get_logger(__name__)


class PaymentGateway(Protocol):
    """
    Payment gateway protocol.

    Any gateway (Razorpay, Stripe, ...) used by the reconciliation engine
    must implement this interface.
    """

    provider_name: str

    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        """
        Fetch a payment by id.

        Raises:
            GatewayUnavailableError: Network failure, timeout or 5xx
            MetadataMissingError: Gateway does not know the payment
        """
        ...

    async def fetch_order(self, order_id: str) -> GatewayOrder:
        """
        Fetch an order (with its planId/userId notes) by id.

        Raises:
            GatewayUnavailableError: Network failure, timeout or 5xx
            MetadataMissingError: Gateway does not know the order
        """
        ...

    async def create_order(self, plan: PlanData, user_id: str) -> GatewayOrder:
        """Create a checkout order tagged with the plan and user."""
        ...


def _notes(data: dict[str, Any]) -> dict[str, Any]:
    notes = data.get("notes")
    # Razorpay serializes empty notes as [] rather than {}
    return notes if isinstance(notes, dict) else {}


def parse_payment(data: dict[str, Any]) -> GatewayPayment:
    """Build a GatewayPayment from a Razorpay payment entity."""
    return GatewayPayment(
        payment_id=str(data["id"]),
        order_id=data.get("order_id"),
        status=str(data.get("status", "")),
        amount_minor=int(data.get("amount", 0)),
        currency=str(data.get("currency", "INR")),
        method=data.get("method"),
    )


def parse_order(data: dict[str, Any]) -> GatewayOrder:
    """Build a GatewayOrder from a Razorpay order entity."""
    notes = _notes(data)
    plan_id = notes.get("planId")
    user_id = notes.get("userId")
    return GatewayOrder(
        order_id=str(data["id"]),
        amount_minor=int(data.get("amount", 0)),
        currency=str(data.get("currency", "INR")),
        status=str(data.get("status", "")),
        plan_id=str(plan_id) if plan_id else None,
        user_id=str(user_id) if user_id else None,
    )


class RazorpayGateway:
    """Razorpay REST API client (basic auth with key id and key secret)."""

    provider_name = "razorpay"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        self.key_id = settings.razorpay_key_id
        self.key_secret = settings.razorpay_key_secret
        self.api_base = settings.razorpay_api_base.rstrip("/")
        self.timeout = settings.gateway_timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                auth=(self.key_id, self.key_secret), timeout=self.timeout
            )
        return self._http_client

    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        data = await self._request("GET", f"/payments/{payment_id}", operation="fetch_payment")
        return parse_payment(data)

    async def fetch_order(self, order_id: str) -> GatewayOrder:
        data = await self._request("GET", f"/orders/{order_id}", operation="fetch_order")
        return parse_order(data)

    async def create_order(self, plan: PlanData, user_id: str) -> GatewayOrder:
        body = {
            "amount": plan.price_minor,
            "currency": plan.currency,
            # Receipt is capped at 40 chars by the gateway
            "receipt": f"rcpt_{int(time.time())}_{user_id}"[:40],
            "notes": {"planId": str(plan.plan_id), "userId": user_id},
        }
        data = await self._request("POST", "/orders", operation="create_order", json=body)
        order = parse_order(data)
        logger.info(
            "gateway_order_created",
            order_id=order.order_id,
            plan_id=str(plan.plan_id),
            user_id=user_id,
            amount_minor=order.amount_minor,
        )
        return order

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()

    async def _request(
        self, method: str, endpoint: str, operation: str, **kwargs: Any
    ) -> dict[str, Any]:
        """Make an authenticated request; map failures onto ledger errors."""
        start = time.perf_counter()
        try:
            response = await self.http_client.request(method, f"{self.api_base}{endpoint}", **kwargs)
        except httpx.TimeoutException as e:
            metrics.record_gateway_call(operation, time.perf_counter() - start, "timeout")
            logger.error("gateway_timeout", operation=operation, endpoint=endpoint)
            raise GatewayUnavailableError(f"{operation} timed out") from e
        except httpx.HTTPError as e:
            metrics.record_gateway_call(operation, time.perf_counter() - start, "transport")
            logger.error("gateway_transport_error", operation=operation, error=str(e))
            raise GatewayUnavailableError(f"{operation} failed: {e}") from e

        duration = time.perf_counter() - start
        if response.status_code >= 500 or response.status_code in (401, 429):
            metrics.record_gateway_call(operation, duration, f"http_{response.status_code}")
            logger.error(
                "gateway_api_error",
                operation=operation,
                status=response.status_code,
                error=response.text[:500],
            )
            raise GatewayUnavailableError(f"{operation} returned {response.status_code}")
        if response.status_code >= 400:
            metrics.record_gateway_call(operation, duration, f"http_{response.status_code}")
            logger.warning("gateway_lookup_rejected", operation=operation, status=response.status_code)
            raise MetadataMissingError(f"{operation} rejected with {response.status_code}")

        metrics.record_gateway_call(operation, duration)
        result: dict[str, Any] = response.json()
        return result

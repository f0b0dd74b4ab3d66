"""
Tests for the Razorpay gateway client.

The HTTP client is mocked; responses are real httpx.Response objects.
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from helpers import create_plan_data
from token_ledger.config import Settings
from token_ledger.exceptions import GatewayUnavailableError, MetadataMissingError
from token_ledger.services.payment_gateway import RazorpayGateway, parse_order, parse_payment


def response(status_code: int, json: dict | None = None) -> httpx.Response:
    return httpx.Response(
        status_code,
        json=json if json is not None else {"error": {"code": "X"}},
        request=httpx.Request("GET", "https://api.razorpay.com/v1/x"),
    )


@pytest.fixture
def http_client() -> MagicMock:
    client = MagicMock(spec=httpx.AsyncClient)
    client.request = AsyncMock()
    return client


@pytest.fixture
def gateway(test_settings: Settings, http_client: MagicMock) -> RazorpayGateway:
    return RazorpayGateway(test_settings, http_client=http_client)


class TestParsing:
    def test_order_notes(self):
        order = parse_order(
            {
                "id": "order_1",
                "amount": 49900,
                "currency": "INR",
                "status": "paid",
                "notes": {"planId": "p1", "userId": "user-1"},
            }
        )
        assert order.plan_id == "p1"
        assert order.user_id == "user-1"

    def test_empty_notes_serialized_as_list(self):
        order = parse_order({"id": "order_1", "amount": 100, "notes": []})
        assert order.plan_id is None
        assert order.user_id is None

    def test_payment(self):
        payment = parse_payment(
            {"id": "pay_1", "order_id": "order_1", "status": "captured", "amount": 100}
        )
        assert payment.status == "captured"
        assert payment.currency == "INR"
        assert payment.method is None


class TestRequests:
    async def test_fetch_payment(self, gateway: RazorpayGateway, http_client: MagicMock):
        http_client.request.return_value = response(
            200, {"id": "pay_1", "order_id": "order_1", "status": "captured", "amount": 49900}
        )

        payment = await gateway.fetch_payment("pay_1")

        assert payment.amount_minor == 49900
        method, url = http_client.request.call_args.args
        assert method == "GET"
        assert url.endswith("/payments/pay_1")

    async def test_create_order_tags_plan_and_user(
        self, gateway: RazorpayGateway, http_client: MagicMock
    ):
        plan = create_plan_data()
        http_client.request.return_value = response(
            200,
            {
                "id": "order_9",
                "amount": plan.price_minor,
                "currency": "INR",
                "status": "created",
                "notes": {"planId": str(plan.plan_id), "userId": "user-1"},
            },
        )

        order = await gateway.create_order(plan, "user-" + "x" * 60)

        body = http_client.request.call_args.kwargs["json"]
        assert body["amount"] == plan.price_minor
        assert body["notes"]["planId"] == str(plan.plan_id)
        assert len(body["receipt"]) <= 40
        assert order.order_id == "order_9"

    @pytest.mark.parametrize("status_code", [500, 503, 401, 429])
    async def test_transient_statuses(self, gateway, http_client: MagicMock, status_code: int):
        http_client.request.return_value = response(status_code)

        with pytest.raises(GatewayUnavailableError):
            await gateway.fetch_order("order_1")

    async def test_unknown_order(self, gateway: RazorpayGateway, http_client: MagicMock):
        http_client.request.return_value = response(404)

        with pytest.raises(MetadataMissingError):
            await gateway.fetch_order("order_missing")

    async def test_timeout(self, gateway: RazorpayGateway, http_client: MagicMock):
        http_client.request.side_effect = httpx.TimeoutException("Timeout")

        with pytest.raises(GatewayUnavailableError) as exc_info:
            await gateway.fetch_payment("pay_1")
        assert "timed out" in exc_info.value.message

    async def test_transport_error(self, gateway: RazorpayGateway, http_client: MagicMock):
        http_client.request.side_effect = httpx.ConnectError("refused")

        with pytest.raises(GatewayUnavailableError):
            await gateway.fetch_payment("pay_1")

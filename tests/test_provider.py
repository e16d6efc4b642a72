import json
from decimal import Decimal

import httpx
import pytest

from services.payment_service.adapters import Outcome
from services.payment_service.errors import (
    ProviderRejectedError,
    ProviderTransportError,
    StatusQueryUnsupported,
    ValidationError,
)
from services.payment_service.provider import PaydClient, normalize_msisdn, normalize_payout_number


@pytest.mark.parametrize("raw", ["0712345678", "712345678", "+254712345678", "254712345678", "0712 345 678"])
def test_normalize_msisdn(raw):
    assert normalize_msisdn(raw) == "254712345678"


def test_normalize_msisdn_accepts_01_prefix():
    assert normalize_msisdn("0110123456") == "254110123456"


@pytest.mark.parametrize("raw", ["", "12345", "0812345678", "25471234567"])
def test_normalize_msisdn_rejects(raw):
    with pytest.raises(ValidationError):
        normalize_msisdn(raw)


def test_normalize_payout_number():
    assert normalize_payout_number("254712345678") == "0712345678"
    assert normalize_payout_number("0712345678") == "0712345678"
    with pytest.raises(ValidationError):
        normalize_payout_number("0812345678")


@pytest.fixture
def client(settings, payd):
    return PaydClient(settings, http_client=httpx.AsyncClient(transport=httpx.MockTransport(payd)))


async def test_initiate_payment_sends_stk_push(client, payd, settings):
    reference = await client.initiate_payment(
        amount=Decimal("1500.00"), phone_number="254712345678", invoice_id="INV-1", narration="Order ORD-1"
    )

    assert reference.startswith("PAYD-")
    request = payd.calls("POST", "/payments")[0]
    body = json.loads(request.content)
    assert body["amount"] == 1500
    assert body["reference"] == "INV-1"
    assert body["callback_url"] == "https://shop.example.com/webhooks/payd/payments"
    assert request.headers["authorization"].startswith("Basic ")


async def test_transport_errors_are_retried(client, payd):
    payd.payment_responses = [
        httpx.ConnectError("connection refused"),
        httpx.Response(503, json={"message": "maintenance"}),
        {"success": True, "transaction_reference": "PAYD-OK"},
    ]

    reference = await client.initiate_payment(
        amount=Decimal("10"), phone_number="254712345678", invoice_id="INV-2", narration="x"
    )

    assert reference == "PAYD-OK"
    assert len(payd.calls("POST", "/payments")) == 3


async def test_transport_errors_exhaust_attempts(client, payd):
    payd.payment_responses = [httpx.ConnectError("down")] * 3

    with pytest.raises(ProviderTransportError):
        await client.initiate_payment(
            amount=Decimal("10"), phone_number="254712345678", invoice_id="INV-3", narration="x"
        )
    assert len(payd.calls("POST", "/payments")) == 3


async def test_rejections_are_not_retried(client, payd):
    payd.payment_responses = [httpx.Response(400, json={"message": "Invalid phone"})]

    with pytest.raises(ProviderRejectedError) as exc:
        await client.initiate_payment(
            amount=Decimal("10"), phone_number="254712345678", invoice_id="INV-4", narration="x"
        )
    assert "Invalid phone" in exc.value.message
    assert len(payd.calls("POST", "/payments")) == 1


async def test_success_false_is_a_rejection(client, payd):
    payd.payment_responses = [{"success": False, "message": "Account suspended"}]

    with pytest.raises(ProviderRejectedError):
        await client.initiate_payment(
            amount=Decimal("10"), phone_number="254712345678", invoice_id="INV-5", narration="x"
        )


async def test_accepted_without_reference_returns_none(client, payd):
    payd.payment_responses = [{"success": True}]

    reference = await client.initiate_payment(
        amount=Decimal("10"), phone_number="254712345678", invoice_id="INV-6", narration="x"
    )

    assert reference is None


async def test_query_payment_status(client, payd):
    payd.statuses["PAYD-9"] = {"data": {"status": "SUCCESS", "amount": "250.00"}}

    result = await client.query_payment_status("PAYD-9")

    assert result.reference == "PAYD-9"
    assert result.outcome is Outcome.SUCCEEDED
    assert result.amount == Decimal("250.00")


async def test_initiate_payout(client, payd):
    reference = await client.initiate_payout(amount=Decimal("1000.00"), mpesa_number="0712345678", narration="x")

    assert reference.startswith("COR-")
    body = json.loads(payd.calls("POST", "/withdrawal")[0].content)
    assert body["phone_number"] == "0712345678"
    assert body["callback_url"] == "https://shop.example.com/webhooks/payd/payouts"


async def test_payout_without_correlator_returns_none(client, payd):
    payd.payout_responses = [{"success": True, "message": "queued"}]

    assert await client.initiate_payout(amount=Decimal("100"), mpesa_number="0712345678", narration="x") is None


async def test_payout_status_query_unsupported(client):
    with pytest.raises(StatusQueryUnsupported):
        await client.query_payout_status("COR-1")

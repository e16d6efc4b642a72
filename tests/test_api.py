import json

import httpx
import pytest

from services.payment_service.app import app, stream_payment_status
from services.payment_service.models import Fulfilment

from .conftest import BUYER, signed


@pytest.fixture
async def api(ctx):
    app.state.ctx = ctx
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


def sse_events(text):
    return [json.loads(line[len("data: "):]) for line in text.splitlines() if line.startswith("data: ")]


async def checkout_body(make_seller, make_product, fulfilment=Fulfilment.PHYSICAL):
    seller = await make_seller()
    product = await make_product(seller, fulfilment=fulfilment)
    return seller, {**BUYER, "items": [{"product_id": str(product.id), "quantity": 1}]}


async def test_initiate_and_reuse(api, make_seller, make_product):
    seller, body = await checkout_body(make_seller, make_product)

    first = await api.post("/payments/initiate", json=body, headers={"Idempotency-Key": "cart-42"})
    second = await api.post("/payments/initiate", json=body, headers={"Idempotency-Key": "cart-42"})

    assert first.status_code == 201
    assert first.json()["status"] == "pending"
    assert first.json()["amount"] == "1500.00"
    assert second.status_code == 200
    assert second.json()["reused"] is True
    assert second.json()["invoice_id"] == first.json()["invoice_id"]


async def test_initiate_validation_error(api, make_seller, make_product):
    seller, body = await checkout_body(make_seller, make_product)
    body["buyer_phone"] = "999"

    response = await api.post("/payments/initiate", json=body)

    assert response.status_code == 422
    assert response.json()["status"] == "error"
    assert response.json()["code"] == "ValidationError"


async def test_initiate_provider_down_returns_502(api, payd, make_seller, make_product):
    seller, body = await checkout_body(make_seller, make_product)
    payd.payment_responses = [httpx.Response(503) for _ in range(3)]

    response = await api.post("/payments/initiate", json=body)

    assert response.status_code == 502
    assert response.json()["code"] == "http_503"


async def test_status_endpoint(api, make_seller, make_product, payd):
    seller, body = await checkout_body(make_seller, make_product)
    invoice_id = (await api.post("/payments/initiate", json=body)).json()["invoice_id"]

    response = await api.get(f"/payments/status/{invoice_id}")
    assert response.status_code == 200
    assert response.json()["status"] == "pending"

    reference = response.json()["provider_reference"]
    payd.statuses[reference] = {"status": "SUCCESS"}
    refreshed = await api.get(f"/payments/status/{invoice_id}", params={"refresh": "true"})
    assert refreshed.json()["status"] == "completed"
    assert refreshed.json()["resolution_source"] == "reconciliation"

    assert (await api.get("/payments/status/INV-MISSING")).status_code == 404


async def test_webhook_endpoint(api, make_seller, make_product):
    seller, body = await checkout_body(make_seller, make_product)
    intent = (await api.post("/payments/initiate", json=body)).json()
    payload = {"transaction_reference": intent["provider_reference"], "result_code": 200}

    raw, headers = signed(payload)
    unsigned = await api.post("/webhooks/payd/payments", content=raw,
                              headers={"content-type": "application/json"})
    assert unsigned.status_code == 401
    assert unsigned.json()["code"] == "missing_signature"

    response = await api.post("/webhooks/payd/payments", content=raw, headers=headers)
    assert response.status_code == 200
    assert response.json() == {"status": "applied", "reference": intent["provider_reference"]}

    duplicate = await api.post("/webhooks/payd/payments", content=raw, headers=headers)
    assert duplicate.status_code == 200
    assert duplicate.json()["status"] == "already_processed"


async def test_webhook_malformed_returns_400(api):
    raw, headers = signed({"status": "SUCCESS"})

    response = await api.post("/webhooks/payd/payments", content=raw, headers=headers)

    assert response.status_code == 400


async def test_stream_of_settled_payment(api, make_seller, make_product):
    seller, body = await checkout_body(make_seller, make_product)
    intent = (await api.post("/payments/initiate", json=body)).json()
    raw, headers = signed({"transaction_reference": intent["provider_reference"], "result_code": 1032})
    await api.post("/webhooks/payd/payments", content=raw, headers=headers)

    response = await api.get(f"/payments/stream/{intent['invoice_id']}")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = sse_events(response.text)
    assert [event["type"] for event in events] == ["connected", "cancelled"]
    assert events[-1]["failureDetails"]["code"] == "provider_callback"


async def test_stream_of_pending_payment_times_out(api, ctx, make_seller, make_product):
    seller, body = await checkout_body(make_seller, make_product)
    intent = (await api.post("/payments/initiate", json=body)).json()

    response = await api.get(f"/payments/stream/{intent['invoice_id']}")

    events = sse_events(response.text)
    assert events[1]["type"] == "status"
    assert events[1]["status"] == "pending"
    assert events[-1]["type"] == "timeout"
    assert ctx.broadcaster.connection_count(intent["invoice_id"]) == 0


async def test_stream_unknown_invoice(api, ctx):
    response = await api.get("/payments/stream/INV-MISSING")

    assert response.status_code == 404
    assert ctx.broadcaster.total_connections() == 0


async def test_stream_registers_only_once_body_is_read(api, ctx, make_seller, make_product):
    seller, body = await checkout_body(make_seller, make_product)
    intent = (await api.post("/payments/initiate", json=body)).json()

    response = await stream_payment_status(intent["invoice_id"], ctx=ctx)
    assert ctx.broadcaster.total_connections() == 0

    frames = response.body_iterator
    await frames.__anext__()
    assert ctx.broadcaster.connection_count(intent["invoice_id"]) == 1

    await frames.aclose()
    assert ctx.broadcaster.total_connections() == 0


async def test_withdrawal_endpoints(api, make_seller):
    seller = await make_seller(balance="5000")

    created = await api.post(
        f"/sellers/{seller.id}/withdrawals",
        json={"amount": "1000", "mpesa_number": "0712345678", "mpesa_name": "Amina Otieno"},
    )
    assert created.status_code == 201
    assert created.json()["status"] == "processing"

    listed = await api.get(f"/sellers/{seller.id}/withdrawals")
    assert listed.status_code == 200
    assert listed.json()[0]["provider_reference"].startswith("COR-")

    too_much = await api.post(
        f"/sellers/{seller.id}/withdrawals",
        json={"amount": "10000", "mpesa_number": "0712345678", "mpesa_name": "Amina Otieno"},
    )
    assert too_much.status_code == 422
    assert too_much.json()["code"] == "InsufficientBalanceError"


async def test_order_endpoints(api, make_seller, make_product):
    seller = await make_seller()
    product = await make_product(seller)

    created = await api.post("/orders/debt", json={
        **BUYER,
        "seller_id": str(seller.id),
        "items": [{"product_id": str(product.id), "quantity": 2}],
    })
    assert created.status_code == 201
    assert created.json()["status"] == "DEBT_PENDING"
    assert created.json()["total_amount"] == "3000.00"

    order_id = created.json()["id"]
    invalid = await api.post(f"/orders/{order_id}/status", json={"status": "COMPLETED"})
    assert invalid.status_code == 409

    cancelled = await api.post(f"/orders/{order_id}/status", json={"status": "CANCELLED"})
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "CANCELLED"


async def test_health(api):
    response = await api.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["sse_connections"] == 0

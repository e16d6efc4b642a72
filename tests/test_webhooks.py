from decimal import Decimal

import pytest

from shared.config import Settings
from shared.outbox import OutboxMessage
from services.payment_service.errors import MalformedPayloadError, WebhookAuthError
from services.payment_service.models import (
    Fulfilment,
    LedgerEntry,
    Order,
    OrderAuditLog,
    OrderStatus,
    PaymentStatus,
    SecurityAlert,
    Seller,
    WebhookChannel,
    WebhookLog,
    WithdrawalRequest,
    WithdrawalStatus,
)
from services.payment_service.webhooks import (
    WebhookRateLimiter,
    WebhookVerifier,
    client_ip_allowed,
    sign_payload,
)

from .conftest import signed

PAYMENT = WebhookChannel.PAYMENT
PAYOUT = WebhookChannel.PAYOUT
IP = "41.90.64.10"


def success_payload(reference):
    return {"transaction_reference": reference, "result_code": 200, "status": "SUCCESS", "amount": 1500}


@pytest.mark.parametrize("ip, allowed, expected", [
    ("41.90.64.10", ["41.90.64.10"], True),
    ("::ffff:41.90.64.10", ["41.90.64.10"], True),
    ("41.90.64.10", ["41.90.*.*"], True),
    ("41.90.64.10", ["41.90.x.x"], True),
    ("41.91.64.10", ["41.90.*.*"], False),
    ("10.0.0.1", ["41.90.64.10"], False),
    (None, ["41.90.64.10"], False),
])
def test_client_ip_allowed(ip, allowed, expected):
    assert client_ip_allowed(ip, allowed) is expected


def test_rate_limiter_fixed_window():
    now = [0.0]
    limiter = WebhookRateLimiter(limit=2, window_seconds=60, clock=lambda: now[0])

    assert limiter.allow(IP)
    assert limiter.allow(IP)
    assert not limiter.allow(IP)
    assert limiter.allow("10.0.0.2")

    now[0] = 61
    assert limiter.allow(IP)


def test_unconfigured_security_rejected_in_production():
    verifier = WebhookVerifier(Settings(environment="production", webhook_secret=None, webhook_allowed_ips=""))

    with pytest.raises(WebhookAuthError) as exc:
        verifier.verify(b"{}", {}, IP)
    assert exc.value.status_code == 403
    assert exc.value.alert_type == "security_unconfigured"


def test_unconfigured_security_allowed_in_development():
    verifier = WebhookVerifier(Settings(environment="development", webhook_secret=None, webhook_allowed_ips=""))
    verifier.verify(b"{}", {}, IP)


def test_signature_accepts_sha256_prefix(settings):
    verifier = WebhookVerifier(settings)
    body = b'{"transaction_reference": "PAYD-1"}'

    verifier.verify(body, {"x-payd-signature": "sha256=" + sign_payload(settings.webhook_secret, body)}, IP)


async def test_unsigned_callback_is_rejected_without_mutation(ctx, checkout, get_payment, count_rows):
    seller, product, receipt = await checkout()
    body, headers = signed(success_payload(receipt.provider_reference))
    del headers["x-payd-signature"]

    with pytest.raises(WebhookAuthError) as exc:
        await ctx.ingestor.handle(PAYMENT, body, headers, IP)

    assert exc.value.status_code == 401
    assert (await get_payment(receipt.invoice_id)).status == PaymentStatus.PENDING.value
    assert await count_rows(SecurityAlert, SecurityAlert.alert_type == "missing_signature") == 1


async def test_bad_signature_is_rejected(ctx, checkout, get_payment, count_rows):
    seller, product, receipt = await checkout()
    body, headers = signed(success_payload(receipt.provider_reference), secret="wrong-secret")

    with pytest.raises(WebhookAuthError) as exc:
        await ctx.ingestor.handle(PAYMENT, body, headers, IP)

    assert exc.value.status_code == 401
    assert (await get_payment(receipt.invoice_id)).status == PaymentStatus.PENDING.value
    assert await count_rows(SecurityAlert, SecurityAlert.alert_type == "invalid_signature") == 1


async def test_ip_allowlist(ctx, checkout, get_payment):
    seller, product, receipt = await checkout()
    ctx.settings.webhook_allowed_ips = "41.90.*.*"
    body, headers = signed(success_payload(receipt.provider_reference))

    with pytest.raises(WebhookAuthError) as exc:
        await ctx.ingestor.handle(PAYMENT, body, headers, "10.0.0.1")
    assert exc.value.status_code == 403
    assert (await get_payment(receipt.invoice_id)).status == PaymentStatus.PENDING.value

    response = await ctx.ingestor.handle(PAYMENT, body, headers, "::ffff:41.90.1.2")
    assert response["status"] == "applied"


async def test_success_callback_completes_physical_order(ctx, checkout, get_payment, fetch, count_rows):
    seller, product, receipt = await checkout()
    body, headers = signed(success_payload(receipt.provider_reference))

    response = await ctx.ingestor.handle(PAYMENT, body, headers, IP)

    assert response == {"status": "applied", "reference": receipt.provider_reference}
    payment = await get_payment(receipt.invoice_id)
    assert payment.status == PaymentStatus.COMPLETED.value
    assert payment.resolution_source == "webhook"
    assert payment.resolution_reason == "provider_callback"
    assert payment.payment_metadata["resolution"]["result_code"] == 200

    order = await fetch(Order, receipt.order_id)
    assert order.status == OrderStatus.DELIVERY_PENDING.value
    assert order.payment_status == PaymentStatus.COMPLETED.value
    # Physical goods pay out on completion, not on payment
    assert (await fetch(Seller, seller.id)).balance == Decimal("0.00")

    assert await count_rows(OutboxMessage, OutboxMessage.event_type == "payment.completed") == 1
    assert await count_rows(WebhookLog, WebhookLog.outcome == "applied") == 1


async def test_success_callback_completes_digital_order_and_credits_seller(ctx, checkout, fetch, count_rows):
    seller, product, receipt = await checkout(fulfilment=Fulfilment.DIGITAL)
    body, headers = signed(success_payload(receipt.provider_reference))

    await ctx.ingestor.handle(PAYMENT, body, headers, IP)

    order = await fetch(Order, receipt.order_id)
    assert order.status == OrderStatus.COMPLETED.value
    assert order.payout_released_at is not None
    assert (await fetch(Seller, seller.id)).balance == Decimal("1365.00")
    assert await count_rows(LedgerEntry, LedgerEntry.seller_id == seller.id) == 1
    assert await count_rows(OutboxMessage, OutboxMessage.event_type == "order.completed") == 1


async def test_duplicate_callback_is_idempotent(ctx, checkout, fetch, count_rows):
    seller, product, receipt = await checkout(fulfilment=Fulfilment.DIGITAL)
    body, headers = signed(success_payload(receipt.provider_reference))

    first = await ctx.ingestor.handle(PAYMENT, body, headers, IP)
    audits = await count_rows(OrderAuditLog)
    events = await count_rows(OutboxMessage)

    second = await ctx.ingestor.handle(PAYMENT, body, headers, IP)

    assert first["status"] == "applied"
    assert second["status"] == "already_processed"
    assert await count_rows(OrderAuditLog) == audits
    assert await count_rows(OutboxMessage) == events
    assert (await fetch(Seller, seller.id)).balance == Decimal("1365.00")


async def test_terminal_status_is_never_overwritten(ctx, checkout, get_payment):
    seller, product, receipt = await checkout()
    await ctx.ingestor.handle(PAYMENT, *signed(success_payload(receipt.provider_reference)), IP)

    body, headers = signed({"transaction_reference": receipt.provider_reference, "result_code": 1})
    response = await ctx.ingestor.handle(PAYMENT, body, headers, IP)

    assert response["status"] == "already_processed"
    payment = await get_payment(receipt.invoice_id)
    assert payment.status == PaymentStatus.COMPLETED.value
    assert payment.failure_reason is None


async def test_failure_callback_cancels_pending_order(ctx, checkout, get_payment, fetch, count_rows):
    seller, product, receipt = await checkout()
    body, headers = signed({
        "data": {"transaction_reference": receipt.provider_reference, "result_code": 1032,
                 "remarks": "Request cancelled by user"},
    })

    await ctx.ingestor.handle(PAYMENT, body, headers, IP)

    payment = await get_payment(receipt.invoice_id)
    assert payment.status == PaymentStatus.CANCELLED.value
    assert payment.failure_reason == "Request cancelled by user"
    order = await fetch(Order, receipt.order_id)
    assert order.status == OrderStatus.CANCELLED.value
    assert await count_rows(OutboxMessage, OutboxMessage.event_type == "payment.cancelled") == 1


async def test_callback_echoing_invoice_id_is_correlated(ctx, checkout, get_payment):
    seller, product, receipt = await checkout()

    await ctx.ingestor.handle(PAYMENT, *signed(success_payload(receipt.invoice_id)), IP)

    assert (await get_payment(receipt.invoice_id)).status == PaymentStatus.COMPLETED.value


async def test_pending_callback_is_ignored(ctx, checkout, get_payment):
    seller, product, receipt = await checkout()
    body, headers = signed({"transaction_reference": receipt.provider_reference, "status": "PROCESSING"})

    response = await ctx.ingestor.handle(PAYMENT, body, headers, IP)

    assert response["status"] == "ignored"
    assert (await get_payment(receipt.invoice_id)).status == PaymentStatus.PENDING.value


async def test_unknown_reference_is_acknowledged(ctx, count_rows):
    response = await ctx.ingestor.handle(PAYMENT, *signed(success_payload("PAYD-UNKNOWN")), IP)

    assert response == {"status": "not_found", "reference": "PAYD-UNKNOWN"}
    assert await count_rows(WebhookLog, WebhookLog.outcome == "not_found") == 1


async def test_missing_reference_is_malformed(ctx, count_rows):
    with pytest.raises(MalformedPayloadError):
        await ctx.ingestor.handle(PAYMENT, *signed({"status": "SUCCESS", "amount": 10}), IP)

    assert await count_rows(WebhookLog, WebhookLog.outcome == "malformed") == 1


async def test_invalid_json_and_content_type(ctx, settings, count_rows):
    body = b"not json"
    headers = {"content-type": "application/json", "x-payd-signature": sign_payload(settings.webhook_secret, body)}
    with pytest.raises(MalformedPayloadError):
        await ctx.ingestor.handle(PAYMENT, body, headers, IP)

    body, headers = signed(success_payload("PAYD-1"))
    headers["content-type"] = "text/plain"
    with pytest.raises(MalformedPayloadError):
        await ctx.ingestor.handle(PAYMENT, body, headers, IP)

    assert await count_rows(WebhookLog, WebhookLog.outcome == "malformed") == 2


async def test_payout_callback_never_touches_payments(ctx, checkout, get_payment):
    seller, product, receipt = await checkout()
    body, headers = signed({"correlator_id": receipt.provider_reference, "status": "SUCCESS", "result_code": 0})

    response = await ctx.ingestor.handle(PAYOUT, body, headers, IP)

    assert response["status"] == "not_found"
    assert (await get_payment(receipt.invoice_id)).status == PaymentStatus.PENDING.value


async def payout_sharing_reference(ctx, payd, make_seller, reference):
    payee = await make_seller(balance="5000", name="Payee")
    request = await ctx.withdrawals.request_withdrawal(payee.id, Decimal("1000"), "0712345678", "Amina Otieno")
    payd.payout_responses = [{"success": True, "correlator_id": reference}]
    await ctx.withdrawals.dispatch_payout(request.id)
    return payee, request


async def test_payout_failure_with_colliding_reference(ctx, checkout, make_seller, payd, get_payment, fetch):
    seller, product, receipt = await checkout()
    payee, request = await payout_sharing_reference(ctx, payd, make_seller, receipt.provider_reference)
    assert (await fetch(WithdrawalRequest, request.id)).provider_reference == receipt.provider_reference

    body, headers = signed({"correlator_id": receipt.provider_reference, "result_code": 1, "message": "Invalid account"})
    response = await ctx.ingestor.handle(PAYOUT, body, headers, IP)

    assert response["status"] == "applied"
    assert (await fetch(WithdrawalRequest, request.id)).status == WithdrawalStatus.FAILED.value
    assert (await fetch(Seller, payee.id)).balance == Decimal("5000.00")
    assert (await get_payment(receipt.invoice_id)).status == PaymentStatus.PENDING.value


async def test_payment_success_with_colliding_reference(ctx, checkout, make_seller, payd, get_payment, fetch):
    seller, product, receipt = await checkout()
    payee, request = await payout_sharing_reference(ctx, payd, make_seller, receipt.provider_reference)

    response = await ctx.ingestor.handle(PAYMENT, *signed(success_payload(receipt.provider_reference)), IP)

    assert response["status"] == "applied"
    assert (await get_payment(receipt.invoice_id)).status == PaymentStatus.COMPLETED.value
    withdrawal = await fetch(WithdrawalRequest, request.id)
    assert withdrawal.status == WithdrawalStatus.PROCESSING.value
    assert withdrawal.processed_at is None
    assert (await fetch(Seller, payee.id)).balance == Decimal("4000.00")

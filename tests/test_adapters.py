from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from services.payment_service.adapters import Outcome, parse_provider_payload
from services.payment_service.errors import MalformedPayloadError
from services.payment_service.models import PaymentStatus, WebhookChannel


def test_transaction_reference_shape_success():
    result = parse_provider_payload(
        {
            "transaction_reference": "PAYD-1",
            "result_code": 200,
            "status": "SUCCESS",
            "amount": 1500,
            "phone_number": "254712345678",
            "remarks": "Paid",
        },
        WebhookChannel.PAYMENT,
    )

    assert result.reference == "PAYD-1"
    assert result.outcome is Outcome.SUCCEEDED
    assert result.outcome.payment_status is PaymentStatus.COMPLETED
    assert result.amount == Decimal("1500")
    assert result.phone_number == "254712345678"
    assert result.failure_reason is None


def test_reference_fallback_chain():
    assert parse_provider_payload({"reference": "R1", "status": "SUCCESS"}, WebhookChannel.PAYMENT).reference == "R1"
    assert parse_provider_payload({"transaction_id": "T1", "status": "SUCCESS"}, WebhookChannel.PAYMENT).reference == "T1"


def test_data_envelope_is_unwrapped():
    result = parse_provider_payload(
        {"data": {"transaction_reference": "PAYD-2", "result_code": "1", "remarks": "Insufficient funds"}},
        WebhookChannel.PAYMENT,
    )

    assert result.reference == "PAYD-2"
    assert result.outcome is Outcome.FAILED
    assert result.failure_reason == "Insufficient funds"


def test_result_code_takes_precedence_over_status():
    result = parse_provider_payload(
        {"transaction_reference": "PAYD-3", "result_code": 200, "status": "FAILED"},
        WebhookChannel.PAYMENT,
    )
    assert result.outcome is Outcome.SUCCEEDED

    result = parse_provider_payload(
        {"transaction_reference": "PAYD-4", "result_code": 1, "status": "SUCCESS"},
        WebhookChannel.PAYMENT,
    )
    assert result.outcome is Outcome.FAILED


def test_user_cancelled_result_code():
    result = parse_provider_payload(
        {"transaction_reference": "PAYD-5", "result_code": 1032, "remarks": "Request cancelled by user"},
        WebhookChannel.PAYMENT,
    )

    assert result.outcome is Outcome.CANCELLED
    assert result.outcome.payment_status is PaymentStatus.CANCELLED
    assert result.failure_reason == "Request cancelled by user"


def test_result_code_zero_means_success_only_for_payouts():
    payout = parse_provider_payload({"correlator_id": "COR-1", "result_code": 0}, WebhookChannel.PAYOUT)
    payment = parse_provider_payload({"transaction_reference": "PAYD-6", "result_code": 0}, WebhookChannel.PAYMENT)

    assert payout.outcome is Outcome.SUCCEEDED
    assert payment.outcome is Outcome.FAILED


@pytest.mark.parametrize("status, expected", [
    ("SUCCESS", Outcome.SUCCEEDED),
    ("completed", Outcome.SUCCEEDED),
    ("FAILED", Outcome.FAILED),
    ("declined", Outcome.FAILED),
    ("CANCELLED", Outcome.CANCELLED),
    ("PENDING", Outcome.PENDING),
    ("processing", Outcome.PENDING),
    ("SOMETHING_NEW", Outcome.PENDING),
])
def test_status_string_without_result_code(status, expected):
    result = parse_provider_payload({"transaction_reference": "PAYD-7", "status": status}, WebhookChannel.PAYMENT)
    assert result.outcome is expected
    assert result.is_terminal is (expected is not Outcome.PENDING)


def test_correlator_shape():
    result = parse_provider_payload(
        {"correlator_id": "COR-2", "status_code": "FAILED", "status_description": "Invalid account"},
        WebhookChannel.PAYOUT,
    )

    assert result.reference == "COR-2"
    assert result.outcome is Outcome.FAILED
    assert result.failure_reason == "Invalid account"


def test_missing_reference_is_malformed():
    with pytest.raises(MalformedPayloadError):
        parse_provider_payload({"status": "SUCCESS", "amount": 100}, WebhookChannel.PAYMENT)


def test_non_object_is_malformed():
    with pytest.raises(MalformedPayloadError):
        parse_provider_payload(["PAYD-1"], WebhookChannel.PAYMENT)


def test_default_reference_for_status_queries():
    result = parse_provider_payload({"status": "SUCCESS"}, WebhookChannel.PAYMENT, default_reference="PAYD-8")
    assert result.reference == "PAYD-8"


def test_stale_callback_detection():
    old = (datetime.now(timezone.utc) - timedelta(minutes=10)).isoformat()
    fresh = datetime.now(timezone.utc).isoformat()

    assert parse_provider_payload(
        {"transaction_reference": "P", "status": "SUCCESS", "timestamp": old}, WebhookChannel.PAYMENT
    ).is_stale()
    assert not parse_provider_payload(
        {"transaction_reference": "P", "status": "SUCCESS", "timestamp": fresh}, WebhookChannel.PAYMENT
    ).is_stale()
    assert not parse_provider_payload(
        {"transaction_reference": "P", "status": "SUCCESS"}, WebhookChannel.PAYMENT
    ).is_stale()

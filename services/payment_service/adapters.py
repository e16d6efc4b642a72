"""
Provider payload adapters.

Payd has sent at least two callback shapes across API versions:

* transaction-reference shape: ``transaction_reference | reference |
  transaction_id``, ``result_code``, ``status``, ``amount``,
  ``phone_number``, ``remarks``
* correlator shape: ``correlator_id``, ``status | status_code``,
  ``status_description | message``

Either may arrive wrapped in a ``data`` envelope. Everything that guesses at
field names lives here; the rest of the service only sees ``ProviderResult``.

Outcome precedence: a numeric ``result_code`` decides when present and the
status string is only cross-checked; otherwise the status string decides.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .errors import MalformedPayloadError
from .models import PaymentStatus, WebhookChannel

logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(minutes=5)

# Result codes meaning success, per channel. Payouts report 0, STK pushes 200.
SUCCESS_RESULT_CODES = {
    WebhookChannel.PAYMENT: {200},
    WebhookChannel.PAYOUT: {0, 200},
}
CANCELLED_RESULT_CODES = {1032}  # Request cancelled by user

SUCCESS_STATUSES = {"SUCCESS", "SUCCESSFUL", "COMPLETED", "COMPLETE"}
FAILED_STATUSES = {"FAILED", "FAILURE", "REJECTED", "ERROR", "DECLINED"}
CANCELLED_STATUSES = {"CANCELLED", "CANCELED"}
PENDING_STATUSES = {"PENDING", "PROCESSING", "QUEUED", "INITIATED"}


class Outcome(str, Enum):
    """Canonical provider verdict."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PENDING = "pending"

    @property
    def payment_status(self) -> Optional[PaymentStatus]:
        return {
            Outcome.SUCCEEDED: PaymentStatus.COMPLETED,
            Outcome.FAILED: PaymentStatus.FAILED,
            Outcome.CANCELLED: PaymentStatus.CANCELLED,
        }.get(self)


@dataclass
class ProviderResult:
    """One provider verdict, whatever shape it arrived in."""

    channel: WebhookChannel
    reference: str
    outcome: Outcome
    amount: Optional[Decimal] = None
    phone_number: Optional[str] = None
    failure_reason: Optional[str] = None
    result_code: Optional[int] = None
    status: Optional[str] = None
    timestamp: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.outcome is not Outcome.PENDING

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        if self.timestamp is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now - self.timestamp > STALE_AFTER


class TransactionReferencePayload(BaseModel):
    """Callback shape keyed on ``transaction_reference``."""
    transaction_reference: Optional[str] = None
    reference: Optional[str] = None
    transaction_id: Optional[str] = None
    original_reference: Optional[str] = None
    result_code: Optional[Union[int, str]] = None
    status: Optional[str] = None
    amount: Optional[Union[Decimal, str]] = None
    phone_number: Optional[str] = None
    remarks: Optional[str] = None
    message: Optional[str] = None

    class Config:
        extra = "allow"
        coerce_numbers_to_str = True

    @property
    def provider_reference(self) -> Optional[str]:
        return (
            self.transaction_reference
            or self.reference
            or self.transaction_id
            or self.original_reference
        )

    @property
    def status_text(self) -> Optional[str]:
        return self.status

    @property
    def description(self) -> Optional[str]:
        return self.remarks or self.message


class CorrelatorPayload(BaseModel):
    """Callback shape keyed on ``correlator_id``."""
    correlator_id: str
    status: Optional[str] = None
    status_code: Optional[Union[int, str]] = None
    status_description: Optional[str] = None
    message: Optional[str] = None
    amount: Optional[Union[Decimal, str]] = None
    phone_number: Optional[str] = None
    result_code: Optional[Union[int, str]] = None

    class Config:
        extra = "allow"
        coerce_numbers_to_str = True

    @property
    def provider_reference(self) -> Optional[str]:
        return self.correlator_id

    @property
    def status_text(self) -> Optional[str]:
        if self.status is not None:
            return self.status
        return self.status_code

    @property
    def description(self) -> Optional[str]:
        return self.status_description or self.message


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _as_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        logger.warning(f"Ignoring unparseable amount in provider payload: {value!r}")
        return None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    try:
        if isinstance(value, (int, float)) or str(value).isdigit():
            seconds = float(value)
            if seconds > 1e12:  # Milliseconds
                seconds /= 1000
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _outcome_from_status(status: Optional[str], channel: WebhookChannel) -> Outcome:
    if status is None:
        return Outcome.PENDING

    text = str(status).strip().upper()
    code = _as_int(text)
    if code is not None:
        return _outcome_from_code(code, channel)
    if text in SUCCESS_STATUSES:
        return Outcome.SUCCEEDED
    if text in FAILED_STATUSES:
        return Outcome.FAILED
    if text in CANCELLED_STATUSES:
        return Outcome.CANCELLED
    if text not in PENDING_STATUSES:
        logger.warning(f"Unrecognised provider status '{status}', treating as pending")
    return Outcome.PENDING


def _outcome_from_code(code: int, channel: WebhookChannel) -> Outcome:
    if code in SUCCESS_RESULT_CODES[channel]:
        return Outcome.SUCCEEDED
    if code in CANCELLED_RESULT_CODES:
        return Outcome.CANCELLED
    return Outcome.FAILED


def unwrap(payload: Any) -> Dict[str, Any]:
    """Strip the optional ``data`` envelope."""
    if not isinstance(payload, dict):
        raise MalformedPayloadError("Payload must be a JSON object")
    inner = payload.get("data")
    if isinstance(inner, dict):
        return inner
    return payload


def parse_provider_payload(
    payload: Any,
    channel: WebhookChannel,
    default_reference: Optional[str] = None,
    timestamp_header: Optional[str] = None,
) -> ProviderResult:
    """
    Map a raw provider body to a ``ProviderResult``.

    Args:
        payload: Decoded JSON body (callback or status query response)
        channel: Which flow the body belongs to; decides result code meaning
        default_reference: Reference to assume when the body carries none,
            used for status query responses
        timestamp_header: ``X-Webhook-Timestamp`` header value, if any

    Raises:
        MalformedPayloadError: Not an object, or no reference anywhere
    """
    body = unwrap(payload)

    try:
        if body.get("correlator_id"):
            variant: Union[TransactionReferencePayload, CorrelatorPayload] = CorrelatorPayload(**body)
        else:
            variant = TransactionReferencePayload(**body)
    except PydanticValidationError as e:
        raise MalformedPayloadError(f"Unrecognised payload shape: {e.error_count()} invalid field(s)") from e

    reference = variant.provider_reference or default_reference
    if not reference:
        raise MalformedPayloadError("Invalid payload: missing transaction reference")

    result_code = _as_int(variant.result_code)
    status_outcome = _outcome_from_status(variant.status_text, channel)

    if result_code is not None:
        outcome = _outcome_from_code(result_code, channel)
        if variant.status_text is not None and status_outcome not in (outcome, Outcome.PENDING):
            logger.warning(
                f"Provider result_code {result_code} and status '{variant.status_text}' "
                f"disagree for {reference}; using result_code ({outcome.value})"
            )
    else:
        outcome = status_outcome

    failure_reason = None
    if outcome in (Outcome.FAILED, Outcome.CANCELLED):
        failure_reason = variant.description or f"Provider reported {variant.status_text or result_code}"

    timestamp = None
    for candidate in (body.get("timestamp"), body.get("created_at"), body.get("time"), timestamp_header):
        timestamp = _parse_timestamp(candidate)
        if timestamp:
            break

    return ProviderResult(
        channel=channel,
        reference=str(reference),
        outcome=outcome,
        amount=_as_decimal(variant.amount),
        phone_number=variant.phone_number,
        failure_reason=failure_reason,
        result_code=result_code,
        status=variant.status_text,
        timestamp=timestamp,
        raw=dict(body),
    )

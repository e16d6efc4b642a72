"""Payment service exceptions and their HTTP status codes."""
from typing import Optional


class PaymentServiceError(Exception):
    """Base class for domain errors surfaced to API callers."""

    status_code = 400

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__


class ValidationError(PaymentServiceError):
    """Request rejected before it reaches the state machine."""
    status_code = 422


class NotFoundError(PaymentServiceError):
    status_code = 404


class ConflictError(PaymentServiceError):
    status_code = 409


class InsufficientBalanceError(ValidationError):
    """Withdrawal larger than the seller's balance."""


class InvalidTransitionError(ConflictError):
    """Order status change not allowed from the current state."""


class ProviderError(PaymentServiceError):
    """Failure talking to the payment provider."""
    status_code = 502


class ProviderTransportError(ProviderError):
    """Timeout, connection reset or 5xx. Retried with backoff."""


class ProviderRejectedError(ProviderError):
    """The provider understood the request and refused it."""
    status_code = 422


class StatusQueryUnsupported(ProviderError):
    """The provider exposes no status query for this kind of transaction."""
    status_code = 501


class MalformedPayloadError(PaymentServiceError):
    """Webhook body is not JSON or carries no usable reference."""
    status_code = 400


class WebhookAuthError(PaymentServiceError):
    """Callback failed the signature, allowlist or rate check."""

    def __init__(self, message: str, status_code: int = 401, alert_type: str = "invalid_signature"):
        super().__init__(message, code=alert_type)
        self.status_code = status_code
        self.alert_type = alert_type

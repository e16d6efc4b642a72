"""Domain events emitted by payment state transitions."""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from .database import utcnow


class EventType(str, Enum):
    """Event types published through the outbox."""

    # Payment-in events
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_CANCELLED = "payment.cancelled"

    # Order events
    ORDER_COMPLETED = "order.completed"

    # Payout events
    WITHDRAWAL_REQUESTED = "withdrawal.requested"
    WITHDRAWAL_COMPLETED = "withdrawal.completed"
    WITHDRAWAL_FAILED = "withdrawal.failed"


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    aggregate_id: UUID  # Payment, order or withdrawal id
    timestamp: datetime = Field(default_factory=utcnow)
    version: int = Field(default=1)
    correlation_id: str  # Invoice id or withdrawal reference
    causation_id: Optional[UUID] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# Payment Events
class PaymentCompletedEvent(BaseEvent):
    """A payment reached `completed`; fulfilment and confirmation follow."""
    event_type: EventType = EventType.PAYMENT_COMPLETED
    order_id: UUID
    invoice_id: str
    amount: Decimal
    currency: str = "KES"
    email: Optional[str] = None
    phone_number: Optional[str] = None
    provider_reference: Optional[str] = None
    fulfilment: Optional[str] = None


class PaymentFailedEvent(BaseEvent):
    """A payment reached `failed`."""
    event_type: EventType = EventType.PAYMENT_FAILED
    order_id: UUID
    invoice_id: str
    reason: str
    resolution_reason: Optional[str] = None
    email: Optional[str] = None


class PaymentCancelledEvent(BaseEvent):
    """A payment was cancelled by the payer."""
    event_type: EventType = EventType.PAYMENT_CANCELLED
    order_id: UUID
    invoice_id: str
    reason: str
    email: Optional[str] = None


# Order Events
class OrderCompletedEvent(BaseEvent):
    """An order completed and the seller was credited."""
    event_type: EventType = EventType.ORDER_COMPLETED
    order_id: UUID
    seller_id: UUID
    seller_payout_amount: Decimal


# Withdrawal Events
class WithdrawalRequestedEvent(BaseEvent):
    """A seller asked for a payout."""
    event_type: EventType = EventType.WITHDRAWAL_REQUESTED
    withdrawal_id: UUID
    seller_id: UUID
    amount: Decimal
    mpesa_number: str


class WithdrawalCompletedEvent(BaseEvent):
    """A payout was confirmed by the provider."""
    event_type: EventType = EventType.WITHDRAWAL_COMPLETED
    withdrawal_id: UUID
    seller_id: UUID
    amount: Decimal
    mpesa_number: str


class WithdrawalFailedEvent(BaseEvent):
    """A payout failed and the deduction was reversed."""
    event_type: EventType = EventType.WITHDRAWAL_FAILED
    withdrawal_id: UUID
    seller_id: UUID
    amount: Decimal
    mpesa_number: str
    reason: str
    new_balance: Optional[Decimal] = None


# Event Registry for deserialization
EVENT_REGISTRY: Dict[EventType, type[BaseEvent]] = {
    EventType.PAYMENT_COMPLETED: PaymentCompletedEvent,
    EventType.PAYMENT_FAILED: PaymentFailedEvent,
    EventType.PAYMENT_CANCELLED: PaymentCancelledEvent,

    EventType.ORDER_COMPLETED: OrderCompletedEvent,

    EventType.WITHDRAWAL_REQUESTED: WithdrawalRequestedEvent,
    EventType.WITHDRAWAL_COMPLETED: WithdrawalCompletedEvent,
    EventType.WITHDRAWAL_FAILED: WithdrawalFailedEvent,
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseEvent:
    """Deserialize event from dictionary."""
    event_type = EventType(event_data["event_type"])
    event_class = EVENT_REGISTRY.get(event_type, BaseEvent)
    return event_class(**event_data)

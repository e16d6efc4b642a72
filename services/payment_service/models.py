"""Database models for Payment Service."""
from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, Numeric, String, Text, Uuid

from shared.database import Base, JSONType, utcnow

Money = Numeric(12, 2, asdecimal=True)


class PaymentStatus(str, Enum):
    """Payment status. Everything but PENDING is terminal."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


TERMINAL_PAYMENT_STATUSES = frozenset(
    status.value for status in PaymentStatus if status.is_terminal
)


class ResolutionSource(str, Enum):
    """Which path performed a terminal transition."""
    WEBHOOK = "webhook"
    RECONCILIATION = "reconciliation"
    INITIATION = "initiation"


class ReasonCode(str, Enum):
    """Why a terminal transition happened."""
    PROVIDER_CALLBACK = "provider_callback"
    PROVIDER_CONFIRMED = "provider_confirmed"
    POLICY_TIMEOUT = "policy_timeout"
    PROVIDER_REJECTED = "provider_rejected"
    PROVIDER_UNREACHABLE = "provider_unreachable"
    NEEDS_MANUAL_REVIEW = "needs_manual_review"


class OrderStatus(str, Enum):
    """Order status."""
    PENDING = "PENDING"
    DELIVERY_PENDING = "DELIVERY_PENDING"
    DELIVERY_COMPLETE = "DELIVERY_COMPLETE"
    COMPLETED = "COMPLETED"
    DEBT_PENDING = "DEBT_PENDING"
    CANCELLED = "CANCELLED"


class Fulfilment(str, Enum):
    """How a purchase is delivered once paid."""
    PHYSICAL = "physical"
    DIGITAL = "digital"


class LedgerEntryKind(str, Enum):
    """Kinds of seller balance mutation."""
    SALE_CREDIT = "sale_credit"
    WITHDRAWAL_DEBIT = "withdrawal_debit"
    WITHDRAWAL_REVERSAL = "withdrawal_reversal"


class WithdrawalStatus(str, Enum):
    """Withdrawal request status."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookChannel(str, Enum):
    """Discriminates payment-in callbacks from payout callbacks."""
    PAYMENT = "payment"
    PAYOUT = "payout"


class Product(Base):
    """Catalog entry. Read here for authoritative prices only."""

    __tablename__ = "products"

    id = Column(Uuid, primary_key=True, default=uuid4)
    seller_id = Column(Uuid, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    price = Column(Money, nullable=False)
    fulfilment = Column(String(20), default=Fulfilment.PHYSICAL.value, nullable=False)
    active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)


class Seller(Base):
    """Seller account holding the withdrawable balance."""

    __tablename__ = "sellers"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    phone = Column(String(20), nullable=True)
    balance = Column(Money, default=0, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class LedgerEntry(Base):
    """Append-only record of every seller balance mutation."""

    __tablename__ = "ledger_entries"

    id = Column(Uuid, primary_key=True, default=uuid4)
    seller_id = Column(Uuid, nullable=False, index=True)
    kind = Column(String(30), nullable=False)
    amount = Column(Money, nullable=False)  # Signed
    balance_after = Column(Money, nullable=False)
    reference = Column(String(100), nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_ledger_entries_seller_created", "seller_id", "created_at"),
    )


class Order(Base):
    """The business transaction a payment settles."""

    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_number = Column(String(50), nullable=False, unique=True)

    buyer_name = Column(String(255), nullable=False)
    buyer_email = Column(String(255), nullable=False)
    buyer_phone = Column(String(20), nullable=False)
    seller_id = Column(Uuid, nullable=False, index=True)

    items = Column(JSONType, nullable=False)  # [{"product_id", "name", "quantity", "unit_price"}]
    total_amount = Column(Money, nullable=False)
    platform_fee_amount = Column(Money, nullable=False)
    seller_payout_amount = Column(Money, nullable=False)
    fulfilment = Column(String(20), default=Fulfilment.PHYSICAL.value, nullable=False)

    status = Column(String(30), default=OrderStatus.PENDING.value, nullable=False, index=True)
    payment_status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False)
    payment_id = Column(Uuid, nullable=True)  # Active payment attempt

    payout_released_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_orders_status_created", "status", "created_at"),
    )


class OrderAuditLog(Base):
    """Audit trail for order status and payment_status changes."""

    __tablename__ = "order_audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, nullable=False, index=True)
    payment_id = Column(Uuid, nullable=True)

    from_status = Column(String(30), nullable=True)
    to_status = Column(String(30), nullable=False)
    from_payment_status = Column(String(20), nullable=True)
    to_payment_status = Column(String(20), nullable=False)
    reason = Column(String(100), nullable=False)
    actor = Column(String(50), nullable=False)  # webhook, reconciliation, initiation, seller

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_order_audit_logs_order_created", "order_id", "created_at"),
    )


class Payment(Base):
    """One attempted inbound money movement tied to an order."""

    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid4)
    invoice_id = Column(String(50), nullable=False, unique=True)
    order_id = Column(Uuid, nullable=False, index=True)

    # Caller token or hash of (buyer, cart, time bucket)
    idempotency_key = Column(String(255), unique=True, nullable=False)

    amount = Column(Money, nullable=False)
    currency = Column(String(3), default="KES", nullable=False)
    status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True)
    payment_method = Column(String(20), default="mpesa", nullable=False)
    phone_number = Column(String(20), nullable=False)
    email = Column(String(255), nullable=True)

    # Set once when the provider acknowledges; webhook dedup key
    provider_reference = Column(String(100), nullable=True, unique=True)

    resolution_source = Column(String(20), nullable=True)
    resolution_reason = Column(String(30), nullable=True)
    failure_reason = Column(Text, nullable=True)
    payment_metadata = Column("metadata", JSONType, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_payments_status_created", "status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYMENT_STATUSES


class WithdrawalRequest(Base):
    """Outbound transfer of seller balance to mobile money."""

    __tablename__ = "withdrawal_requests"

    id = Column(Uuid, primary_key=True, default=uuid4)
    seller_id = Column(Uuid, nullable=False, index=True)
    amount = Column(Money, nullable=False)
    mpesa_number = Column(String(20), nullable=False)
    mpesa_name = Column(String(255), nullable=False)
    status = Column(String(20), default=WithdrawalStatus.PROCESSING.value, nullable=False, index=True)

    provider_reference = Column(String(100), nullable=True, unique=True)
    resolution_reason = Column(String(30), nullable=True)
    failure_reason = Column(Text, nullable=True)
    request_metadata = Column("metadata", JSONType, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_withdrawal_requests_status_created", "status", "created_at"),
    )


class WebhookLog(Base):
    """Every authenticated provider callback and what became of it."""

    __tablename__ = "webhook_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    channel = Column(String(20), nullable=False)
    reference = Column(String(100), nullable=True, index=True)
    client_ip = Column(String(64), nullable=True)
    payload = Column(JSONType, nullable=True)
    outcome = Column(String(30), nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)


class SecurityAlert(Base):
    """Rejected callbacks: bad signature, unknown source, rate limit."""

    __tablename__ = "security_alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_type = Column(String(50), nullable=False)
    details = Column(JSONType, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

"""Payment intent creation with idempotency."""
import hashlib
import json
import logging
import secrets
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from shared.config import Settings
from shared.locking import LockManager

from .adapters import Outcome, ProviderResult
from .errors import ConflictError, ProviderRejectedError, ProviderTransportError, ValidationError
from .ledger import to_money
from .models import (
    OrderAuditLog,
    OrderStatus,
    Payment,
    PaymentStatus,
    ReasonCode,
    ResolutionSource,
    WebhookChannel,
)
from .orders import CartLine, OrderLifecycle, price_cart
from .provider import PaydClient, normalize_msisdn
from .settlement import Settlement

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")


@dataclass
class IntentReceipt:
    invoice_id: str
    provider_reference: Optional[str]
    status: str
    order_id: UUID
    amount: Decimal
    reused: bool = False

    @classmethod
    def from_payment(cls, payment: Payment, reused: bool = False) -> "IntentReceipt":
        return cls(
            invoice_id=payment.invoice_id,
            provider_reference=payment.provider_reference,
            status=payment.status,
            order_id=payment.order_id,
            amount=payment.amount,
            reused=reused,
        )


def generate_invoice_id() -> str:
    return f"INV-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


class PaymentIntentTracker:
    """Creates pending Order/Payment pairs and starts the STK push."""

    def __init__(
        self,
        session_factory,
        locks: LockManager,
        provider: PaydClient,
        settlement: Settlement,
        orders: OrderLifecycle,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.provider = provider
        self.settlement = settlement
        self.orders = orders
        self.settings = settings

    def idempotency_key(
        self,
        *,
        buyer_email: str,
        buyer_phone: str,
        lines: Sequence[CartLine] = (),
        order_id: Optional[UUID] = None,
        token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Key repeated checkouts of the same cart onto one intent.

        A caller token wins. Otherwise the key hashes buyer, cart (or debt
        order) and the current ``idempotency_window_seconds`` bucket.
        """
        if token:
            return f"token:{token}"

        now = now or datetime.now(timezone.utc)
        bucket = int(now.timestamp()) // self.settings.idempotency_window_seconds

        quantities = {}
        for line in lines:
            quantities[str(line.product_id)] = quantities.get(str(line.product_id), 0) + line.quantity
        subject = f"order:{order_id}" if order_id else sorted(quantities.items())

        material = json.dumps([buyer_email.strip().lower(), buyer_phone, subject, bucket])
        return "hash:" + hashlib.sha256(material.encode()).hexdigest()

    async def initiate(
        self,
        *,
        buyer_name: str,
        buyer_email: str,
        buyer_phone: str,
        lines: Sequence[CartLine] = (),
        amount: Optional[Decimal] = None,
        order_id: Optional[UUID] = None,
        idempotency_token: Optional[str] = None,
    ) -> IntentReceipt:
        """
        Create (or reuse) a pending payment and send the STK push.

        Only a pending intent is reused. A failed or cancelled one under the
        same key is superseded by a fresh attempt: a new order for a cart,
        a new payment for a debt order.

        Raises:
            ValidationError: Bad buyer details, cart, debt order or amount
            ConflictError: Debt order already has a payment in flight
            ProviderTransportError: Payd unreachable; the payment is failed
            ProviderRejectedError: Payd refused; the payment is failed
        """
        phone = normalize_msisdn(buyer_phone)
        if not buyer_email or "@" not in buyer_email:
            raise ValidationError("A valid email address is required")
        if not buyer_name or not buyer_name.strip():
            raise ValidationError("Buyer name is required")
        if not order_id and not lines:
            raise ValidationError("Cart is empty")

        key = self.idempotency_key(
            buyer_email=buyer_email,
            buyer_phone=phone,
            lines=lines,
            order_id=order_id,
            token=idempotency_token,
        )

        payment, created = await self._create_pending(
            key,
            buyer_name=buyer_name.strip(),
            buyer_email=buyer_email.strip(),
            phone=phone,
            lines=lines,
            amount=amount,
            order_id=order_id,
        )
        if not created:
            logger.info(f"Reusing intent {payment.invoice_id} for idempotency key {key[:20]}...")
            return IntentReceipt.from_payment(payment, reused=True)

        try:
            reference = await self.provider.initiate_payment(
                amount=payment.amount,
                phone_number=payment.phone_number,
                invoice_id=payment.invoice_id,
                narration=f"Payment for {payment.payment_metadata.get('order_number')}",
            )
        except (ProviderTransportError, ProviderRejectedError) as e:
            reason = (
                ReasonCode.PROVIDER_UNREACHABLE
                if isinstance(e, ProviderTransportError)
                else ReasonCode.PROVIDER_REJECTED
            )
            logger.error(f"STK push failed for {payment.invoice_id}: {e.message}")
            await self.settlement.apply(
                payment.invoice_id,
                ProviderResult(
                    channel=WebhookChannel.PAYMENT,
                    reference=payment.invoice_id,
                    outcome=Outcome.FAILED,
                    failure_reason=e.message,
                ),
                source=ResolutionSource.INITIATION,
                reason=reason,
                by="invoice",
            )
            raise

        if reference:
            await self._store_reference(payment, reference)
        else:
            logger.warning(f"Intent {payment.invoice_id} stays pending without a provider reference")
        return IntentReceipt.from_payment(payment)

    async def _create_pending(
        self,
        key: str,
        *,
        buyer_name: str,
        buyer_email: str,
        phone: str,
        lines: Sequence[CartLine],
        amount: Optional[Decimal],
        order_id: Optional[UUID],
    ):
        async with self.session_factory() as session:
            try:
                async with AsyncExitStack() as stack:
                    await stack.enter_async_context(self.locks.hold(session, "intent", key))

                    result = await session.execute(select(Payment).where(Payment.idempotency_key == key))
                    existing = result.scalar_one_or_none()
                    if existing is not None:
                        if existing.status == PaymentStatus.PENDING.value:
                            return existing, False
                        self._supersede(existing, key)
                        await session.flush()

                    payment_id = uuid4()
                    if order_id:
                        await stack.enter_async_context(self.locks.hold(session, "order", order_id))
                        order = await self.orders.lock_order(session, order_id)
                        await self._check_debt_order(session, order)
                        audit_reason = "payment_attempt"
                    else:
                        cart = await price_cart(session, lines)
                        order = self.orders.build_order(
                            cart,
                            buyer_name=buyer_name,
                            buyer_email=buyer_email,
                            buyer_phone=phone,
                        )
                        order.id = uuid4()
                        session.add(order)
                        audit_reason = "order_placed"

                    total = to_money(order.total_amount)
                    if amount is not None and abs(to_money(amount) - total) > AMOUNT_TOLERANCE:
                        raise ValidationError(f"Amount {amount} does not match order total {total}")

                    payment = Payment(
                        id=payment_id,
                        invoice_id=generate_invoice_id(),
                        order_id=order.id,
                        idempotency_key=key,
                        amount=total,
                        currency=self.settings.currency,
                        status=PaymentStatus.PENDING.value,
                        phone_number=phone,
                        email=buyer_email,
                        payment_metadata={
                            "order_number": order.order_number,
                            "fulfilment": order.fulfilment,
                            "buyer_name": buyer_name,
                        },
                    )
                    session.add(payment)

                    session.add(OrderAuditLog(
                        order_id=order.id,
                        payment_id=payment_id,
                        from_status=None if audit_reason == "order_placed" else order.status,
                        to_status=order.status,
                        from_payment_status=None if audit_reason == "order_placed" else order.payment_status,
                        to_payment_status=PaymentStatus.PENDING.value,
                        reason=audit_reason,
                        actor="initiation",
                    ))
                    order.payment_id = payment_id
                    order.payment_status = PaymentStatus.PENDING.value

                    await session.commit()

            except IntegrityError:
                # Another worker committed the same key first
                await session.rollback()
                result = await session.execute(select(Payment).where(Payment.idempotency_key == key))
                existing = result.scalar_one_or_none()
                if existing is None:
                    raise
                return existing, False

        logger.info(f"Created intent {payment.invoice_id} for order {order.order_number} ({payment.amount})")
        return payment, True

    @staticmethod
    def _supersede(payment: Payment, key: str):
        """Release ``key`` from a settled attempt so a retry can take it."""
        logger.info(f"Intent {payment.invoice_id} is {payment.status}; starting a new attempt")
        payment.idempotency_key = f"{key}:superseded:{payment.id}"

    async def _check_debt_order(self, session, order):
        if order.status != OrderStatus.DEBT_PENDING.value:
            raise ValidationError(f"Order {order.order_number} is not awaiting payment")

        if order.payment_id is not None:
            active = await session.get(Payment, order.payment_id)
            if active is not None and active.status == PaymentStatus.PENDING.value:
                raise ConflictError(
                    f"Order {order.order_number} already has a payment in flight ({active.invoice_id})"
                )

    async def _store_reference(self, payment: Payment, reference: str):
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    update(Payment)
                    .where(Payment.id == payment.id, Payment.provider_reference.is_(None))
                    .values(provider_reference=reference)
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.error(f"Provider reference {reference} already belongs to another payment")
                return

        if result.rowcount:
            payment.provider_reference = reference
        else:
            logger.warning(f"Payment {payment.invoice_id} already has a provider reference; keeping it")

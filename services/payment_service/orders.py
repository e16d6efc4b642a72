"""Order lifecycle: pricing, audited transitions and seller payout release."""
import logging
import secrets
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Sequence, Set, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import Settings
from shared.database import utcnow
from shared.events import OrderCompletedEvent
from shared.locking import LockManager
from shared.outbox import save_event_to_outbox

from .errors import InvalidTransitionError, NotFoundError, ValidationError
from .ledger import CENT, SellerLedger, to_money
from .models import (
    Fulfilment,
    LedgerEntry,
    LedgerEntryKind,
    Order,
    OrderAuditLog,
    OrderStatus,
    Payment,
    PaymentStatus,
    Product,
)

logger = logging.getLogger(__name__)

# Transitions a seller or admin may request directly. Payment-driven
# transitions go through apply_payment_outcome instead.
VALID_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.CANCELLED},
    OrderStatus.DEBT_PENDING: {OrderStatus.CANCELLED},
    OrderStatus.DELIVERY_PENDING: {OrderStatus.DELIVERY_COMPLETE},
    OrderStatus.DELIVERY_COMPLETE: {OrderStatus.COMPLETED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}


@dataclass(frozen=True)
class CartLine:
    product_id: UUID
    quantity: int


@dataclass
class PricedCart:
    seller_id: UUID
    fulfilment: Fulfilment
    items: List[dict]
    total: Decimal


def compute_fees(total: Decimal, commission_rate: Decimal) -> Tuple[Decimal, Decimal]:
    """
    Split an order total into platform fee and seller payout.

    Returns:
        Tuple of (platform_fee, seller_payout)
    """
    total = to_money(total)
    fee = (total * Decimal(str(commission_rate))).quantize(CENT, rounding=ROUND_HALF_UP)
    return fee, total - fee


def generate_order_number() -> str:
    return f"ORD-{int(time.time() * 1000)}-{secrets.token_hex(2).upper()}"


async def price_cart(session: AsyncSession, lines: Sequence[CartLine]) -> PricedCart:
    """
    Price a cart from the catalog, never from the client.

    Raises:
        ValidationError: Empty cart, bad quantity, unknown or inactive
            product, or products from more than one seller
    """
    if not lines:
        raise ValidationError("Cart is empty")

    quantities: Dict[UUID, int] = {}
    for line in lines:
        if line.quantity <= 0:
            raise ValidationError(f"Quantity for product {line.product_id} must be positive")
        quantities[line.product_id] = quantities.get(line.product_id, 0) + line.quantity

    result = await session.execute(select(Product).where(Product.id.in_(list(quantities))))
    products = {product.id: product for product in result.scalars().all()}

    items = []
    total = Decimal("0")
    for product_id, quantity in sorted(quantities.items(), key=lambda kv: str(kv[0])):
        product = products.get(product_id)
        if not product or not product.active:
            raise ValidationError(f"Product {product_id} is not available")
        unit_price = to_money(product.price)
        total += unit_price * quantity
        items.append({
            "product_id": str(product.id),
            "name": product.name,
            "quantity": quantity,
            "unit_price": str(unit_price),
            "fulfilment": product.fulfilment,
        })

    seller_ids = {product.seller_id for product in products.values()}
    if len(seller_ids) != 1:
        raise ValidationError("All items in one checkout must come from the same seller")

    fulfilment = Fulfilment.DIGITAL
    if any(item["fulfilment"] != Fulfilment.DIGITAL.value for item in items):
        fulfilment = Fulfilment.PHYSICAL

    return PricedCart(
        seller_id=seller_ids.pop(),
        fulfilment=fulfilment,
        items=items,
        total=to_money(total),
    )


class OrderLifecycle:
    """Audited order status changes and the payout credit they can trigger."""

    def __init__(self, session_factory, locks: LockManager, ledger: SellerLedger, settings: Settings):
        self.session_factory = session_factory
        self.locks = locks
        self.ledger = ledger
        self.settings = settings

    def build_order(
        self,
        cart: PricedCart,
        *,
        buyer_name: str,
        buyer_email: str,
        buyer_phone: str,
        status: OrderStatus = OrderStatus.PENDING,
    ) -> Order:
        fee, payout = compute_fees(cart.total, self.settings.platform_commission_rate)
        return Order(
            order_number=generate_order_number(),
            buyer_name=buyer_name,
            buyer_email=buyer_email,
            buyer_phone=buyer_phone,
            seller_id=cart.seller_id,
            items=cart.items,
            total_amount=cart.total,
            platform_fee_amount=fee,
            seller_payout_amount=payout,
            fulfilment=cart.fulfilment.value,
            status=status.value,
            payment_status=PaymentStatus.PENDING.value,
        )

    async def lock_order(self, session: AsyncSession, order_id: UUID) -> Order:
        result = await session.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if not order:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    def record(
        self,
        session: AsyncSession,
        order: Order,
        *,
        reason: str,
        actor: str,
        status: Optional[OrderStatus] = None,
        payment_status: Optional[PaymentStatus] = None,
        payment_id: Optional[UUID] = None,
    ) -> OrderAuditLog:
        """Change status and/or payment_status, always leaving an audit row."""
        audit = OrderAuditLog(
            order_id=order.id,
            payment_id=payment_id or order.payment_id,
            from_status=order.status,
            to_status=status.value if status else order.status,
            from_payment_status=order.payment_status,
            to_payment_status=payment_status.value if payment_status else order.payment_status,
            reason=reason,
            actor=actor,
        )
        session.add(audit)

        if status:
            order.status = status.value
            if status is OrderStatus.COMPLETED:
                order.completed_at = utcnow()
        if payment_status:
            order.payment_status = payment_status.value

        logger.info(
            f"Order {order.order_number}: {audit.from_status}/{audit.from_payment_status} -> "
            f"{audit.to_status}/{audit.to_payment_status} ({reason}, by {actor})"
        )
        return audit

    async def release_payout(
        self,
        session: AsyncSession,
        stack: AsyncExitStack,
        order: Order,
    ) -> Optional[LedgerEntry]:
        """
        Credit the seller's share of a completed order, once.

        Takes the seller lock on ``stack`` so it is held until the caller
        commits.
        """
        if order.payout_released_at is not None:
            logger.info(f"Payout for order {order.order_number} already released")
            return None

        await stack.enter_async_context(self.ledger.hold(session, order.seller_id))
        seller = await self.ledger.lock_seller(session, order.seller_id)
        entry = await self.ledger.credit(
            session,
            seller,
            order.seller_payout_amount,
            LedgerEntryKind.SALE_CREDIT,
            reference=order.order_number,
        )
        order.payout_released_at = utcnow()

        await save_event_to_outbox(
            session,
            OrderCompletedEvent(
                aggregate_id=order.id,
                correlation_id=order.order_number,
                order_id=order.id,
                seller_id=order.seller_id,
                seller_payout_amount=to_money(order.seller_payout_amount),
            ),
        )
        return entry

    async def apply_payment_outcome(
        self,
        session: AsyncSession,
        stack: AsyncExitStack,
        order: Order,
        payment: Payment,
        *,
        reason: str,
        actor: str,
    ):
        """Bring the order in line with its active payment's terminal status."""
        new_payment_status = PaymentStatus(payment.status)
        current = OrderStatus(order.status)

        if new_payment_status is PaymentStatus.COMPLETED:
            if current is OrderStatus.PENDING and order.fulfilment == Fulfilment.PHYSICAL.value:
                self.record(session, order, status=OrderStatus.DELIVERY_PENDING,
                            payment_status=new_payment_status, reason=reason, actor=actor,
                            payment_id=payment.id)
            elif current in (OrderStatus.PENDING, OrderStatus.DEBT_PENDING):
                self.record(session, order, status=OrderStatus.COMPLETED,
                            payment_status=new_payment_status, reason=reason, actor=actor,
                            payment_id=payment.id)
                await self.release_payout(session, stack, order)
            else:
                logger.warning(
                    f"Payment {payment.invoice_id} completed for order {order.order_number} "
                    f"in status {current.value}; recording payment status only"
                )
                self.record(session, order, payment_status=new_payment_status,
                            reason=f"{reason}:late_completion", actor=actor, payment_id=payment.id)
            return

        if current is OrderStatus.PENDING:
            self.record(session, order, status=OrderStatus.CANCELLED,
                        payment_status=new_payment_status, reason=reason, actor=actor,
                        payment_id=payment.id)
        else:
            # Debt orders stay open for another attempt
            self.record(session, order, payment_status=new_payment_status,
                        reason=reason, actor=actor, payment_id=payment.id)

    async def transition(self, order_id: UUID, new_status: OrderStatus, actor: str = "seller") -> Order:
        """
        Apply a manual status change.

        Raises:
            NotFoundError: Unknown order
            InvalidTransitionError: Not allowed from the current status, or
                completion without a completed payment
        """
        async with self.session_factory() as session:
            async with AsyncExitStack() as stack:
                await stack.enter_async_context(self.locks.hold(session, "order", order_id))
                order = await self.lock_order(session, order_id)
                current = OrderStatus(order.status)

                if new_status not in VALID_TRANSITIONS.get(current, set()):
                    raise InvalidTransitionError(
                        f"Cannot move order {order.order_number} from {current.value} to {new_status.value}"
                    )

                if new_status is OrderStatus.COMPLETED:
                    if order.payment_status != PaymentStatus.COMPLETED.value:
                        raise InvalidTransitionError(
                            f"Order {order.order_number} cannot complete with payment {order.payment_status}"
                        )
                    self.record(session, order, status=new_status, reason="delivery_confirmed", actor=actor)
                    await self.release_payout(session, stack, order)
                else:
                    if new_status is OrderStatus.CANCELLED and order.payment_id is not None:
                        payment = await session.get(Payment, order.payment_id)
                        if payment and payment.status == PaymentStatus.PENDING.value:
                            raise InvalidTransitionError(
                                f"Order {order.order_number} has a payment in flight ({payment.invoice_id})"
                            )
                    self.record(session, order, status=new_status, reason=f"manual_{new_status.value.lower()}",
                                actor=actor)

                await session.commit()

        logger.info(f"Order {order.order_number} moved to {order.status} by {actor}")
        return order

    async def open_debt_order(
        self,
        *,
        seller_id: UUID,
        lines: Sequence[CartLine],
        buyer_name: str,
        buyer_email: str,
        buyer_phone: str,
    ) -> Order:
        """Record a sale on credit; the buyer settles it later through an intent."""
        async with self.session_factory() as session:
            cart = await price_cart(session, lines)
            if cart.seller_id != seller_id:
                raise ValidationError("Debt orders may only contain the seller's own products")

            order = self.build_order(
                cart,
                buyer_name=buyer_name,
                buyer_email=buyer_email,
                buyer_phone=buyer_phone,
                status=OrderStatus.DEBT_PENDING,
            )
            session.add(order)
            await session.flush()
            session.add(OrderAuditLog(
                order_id=order.id,
                from_status=None,
                to_status=order.status,
                from_payment_status=None,
                to_payment_status=order.payment_status,
                reason="debt_opened",
                actor="seller",
            ))
            await session.commit()

        logger.info(f"Debt order {order.order_number} opened for seller {seller_id} ({order.total_amount})")
        return order

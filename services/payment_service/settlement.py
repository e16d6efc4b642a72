"""
Terminal transitions for payment-in records.

Webhook ingestion, the reconciliation sweep and the initiation failure path
all end up here, so a payment leaves ``pending`` through exactly one routine,
under exactly one lock.
"""
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import utcnow
from shared.events import PaymentCancelledEvent, PaymentCompletedEvent, PaymentFailedEvent
from shared.locking import LockManager
from shared.outbox import save_event_to_outbox

from .adapters import Outcome, ProviderResult
from .models import Order, Payment, PaymentStatus, ReasonCode, ResolutionSource

logger = logging.getLogger(__name__)


class SettlementStatus(str, Enum):
    APPLIED = "applied"
    ALREADY_TERMINAL = "already_processed"
    NOT_FOUND = "not_found"
    IGNORED = "ignored"


@dataclass
class SettlementOutcome:
    status: SettlementStatus
    payment: Optional[Payment] = None
    event: Optional[Dict[str, Any]] = None


def payment_snapshot(payment: Payment) -> Dict[str, Any]:
    """Client-facing view of a payment."""
    return {
        "invoice_id": payment.invoice_id,
        "order_id": str(payment.order_id),
        "amount": str(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
        "provider_reference": payment.provider_reference,
        "resolution_reason": payment.resolution_reason,
        "resolved_at": payment.resolved_at.isoformat() if payment.resolved_at else None,
    }


def status_event(payment: Payment) -> Dict[str, Any]:
    """Broadcast event ``{type, status, payment?, failureDetails?}``."""
    event: Dict[str, Any] = {
        "type": payment.status,
        "status": payment.status,
        "payment": payment_snapshot(payment),
    }
    if payment.status in (PaymentStatus.FAILED.value, PaymentStatus.CANCELLED.value):
        event["failureDetails"] = {
            "reason": payment.failure_reason,
            "code": payment.resolution_reason,
        }
    return event


class Settlement:
    """Applies a provider verdict to a payment and its order, exactly once."""

    def __init__(self, session_factory, locks: LockManager, orders, broadcaster=None):
        """
        Args:
            session_factory: Async session factory
            locks: Shared lock manager
            orders: ``OrderLifecycle`` for the order side of the transition
            broadcaster: ``StatusBroadcaster`` notified after commit
        """
        self.session_factory = session_factory
        self.locks = locks
        self.orders = orders
        self.broadcaster = broadcaster

    async def find_payment(self, session: AsyncSession, reference: str, by: str = "provider_reference") -> Optional[Payment]:
        """
        Correlate a payment-in reference.

        ``by="provider_reference"`` falls back to the invoice id, since some
        callbacks echo our reference instead of Payd's.
        """
        if by != "invoice":
            result = await session.execute(
                select(Payment).where(Payment.provider_reference == reference)
            )
            payment = result.scalar_one_or_none()
            if payment is not None:
                return payment

        result = await session.execute(select(Payment).where(Payment.invoice_id == reference))
        return result.scalar_one_or_none()

    async def lock_payment(self, session: AsyncSession, payment_id) -> Payment:
        """Re-read a payment with ``SELECT ... FOR UPDATE`` once its lock is held."""
        result = await session.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def apply(
        self,
        reference: str,
        result: ProviderResult,
        source: ResolutionSource,
        reason: ReasonCode,
        by: str = "provider_reference",
    ) -> SettlementOutcome:
        """
        Transition a pending payment to the verdict's terminal status.

        Returns:
            ``applied`` with the status event, ``already_processed`` when the
            payment was terminal already, ``not_found``, or ``ignored`` for a
            non-terminal verdict
        """
        if not result.is_terminal:
            logger.info(f"Ignoring non-terminal {result.status or result.outcome.value} for {reference}")
            return SettlementOutcome(SettlementStatus.IGNORED)

        async with self.session_factory() as session:
            payment = await self.find_payment(session, reference, by=by)
            if payment is None:
                logger.warning(f"No payment matches reference {reference}")
                return SettlementOutcome(SettlementStatus.NOT_FOUND)

            async with AsyncExitStack() as stack:
                # Keyed on the invoice id whichever reference correlated it
                await stack.enter_async_context(self.locks.hold(session, "payment", payment.invoice_id))
                payment = await self.lock_payment(session, payment.id)

                if payment.is_terminal:
                    logger.info(
                        f"Payment {payment.invoice_id} already {payment.status} "
                        f"({payment.resolution_source}/{payment.resolution_reason}); "
                        f"discarding {source.value} verdict {result.outcome.value}"
                    )
                    return SettlementOutcome(SettlementStatus.ALREADY_TERMINAL, payment=payment)

                self._transition(payment, result, source, reason)
                await self._write_events(session, payment)

                await stack.enter_async_context(self.locks.hold(session, "order", payment.order_id))
                order = await self.orders.lock_order(session, payment.order_id)
                if order.payment_id == payment.id:
                    await self.orders.apply_payment_outcome(
                        session, stack, order, payment, reason=reason.value, actor=source.value
                    )
                else:
                    logger.warning(
                        f"Payment {payment.invoice_id} is not the active attempt of order "
                        f"{order.order_number}; order left unchanged"
                    )

                await session.commit()

        event = status_event(payment)
        logger.info(
            f"Payment {payment.invoice_id} -> {payment.status} via {source.value} ({reason.value})"
        )
        if self.broadcaster:
            await self.broadcaster.publish(payment.invoice_id, event)
        return SettlementOutcome(SettlementStatus.APPLIED, payment=payment, event=event)

    def _transition(self, payment: Payment, result: ProviderResult, source: ResolutionSource, reason: ReasonCode):
        payment.status = result.outcome.payment_status.value
        payment.resolution_source = source.value
        payment.resolution_reason = reason.value
        payment.resolved_at = utcnow()

        if result.outcome is not Outcome.SUCCEEDED:
            payment.failure_reason = result.failure_reason or f"Payment {payment.status}"

        if result.amount is not None and result.amount != payment.amount:
            logger.warning(
                f"Provider amount {result.amount} differs from {payment.amount} for {payment.invoice_id}"
            )

        metadata = dict(payment.payment_metadata or {})
        metadata["resolution"] = {
            "source": source.value,
            "reason": reason.value,
            "result_code": result.result_code,
            "provider_status": result.status,
            "provider_payload": result.raw,
        }
        payment.payment_metadata = metadata

    async def _write_events(self, session: AsyncSession, payment: Payment):
        common = dict(
            aggregate_id=payment.id,
            correlation_id=payment.invoice_id,
            order_id=payment.order_id,
            invoice_id=payment.invoice_id,
            email=payment.email,
        )

        if payment.status == PaymentStatus.COMPLETED.value:
            event = PaymentCompletedEvent(
                amount=payment.amount,
                currency=payment.currency,
                phone_number=payment.phone_number,
                provider_reference=payment.provider_reference,
                fulfilment=(payment.payment_metadata or {}).get("fulfilment"),
                **common,
            )
        elif payment.status == PaymentStatus.CANCELLED.value:
            event = PaymentCancelledEvent(reason=payment.failure_reason, **common)
        else:
            event = PaymentFailedEvent(
                reason=payment.failure_reason,
                resolution_reason=payment.resolution_reason,
                **common,
            )

        await save_event_to_outbox(session, event)

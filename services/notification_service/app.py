"""Notification Service: fulfilment and confirmations for payment events."""
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict

from fastapi import FastAPI

from shared.config import Settings
from shared.events import (
    BaseEvent,
    EventType,
    PaymentCancelledEvent,
    PaymentCompletedEvent,
    PaymentFailedEvent,
    WithdrawalCompletedEvent,
    WithdrawalFailedEvent,
)
from shared.message_broker import MessageBroker

# Settings
settings = Settings(service_name="notification-service", service_port=8005)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Message broker
message_broker = MessageBroker(settings.rabbitmq_url)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    # Startup
    logger.info("Starting Notification Service...")

    await message_broker.connect()
    await subscribe_to_events()

    logger.info("Notification Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Notification Service...")
    await message_broker.disconnect()


app = FastAPI(title="Notification Service", lifespan=lifespan)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "notification-service"}


# Delivery channels. Plain log-backed sends; templating lives elsewhere.
async def send_email(recipient: str, subject: str, body: str):
    logger.info(f"[EMAIL] To: {recipient} | Subject: {subject} | {body}")


async def send_sms(recipient: str, message: str):
    logger.info(f"[SMS] To: {recipient} | {message}")


async def issue_digital_delivery(event: PaymentCompletedEvent):
    """Release tickets or download links for a paid digital order."""
    logger.info(f"[FULFILMENT] Issuing digital items for order {event.order_id} (invoice {event.invoice_id})")
    if event.email:
        await send_email(
            recipient=event.email,
            subject="Your purchase is ready",
            body=f"Payment {event.invoice_id} confirmed. Your tickets/downloads are attached.",
        )


# Event Handlers
async def handle_payment_completed(event: PaymentCompletedEvent):
    """Confirm a payment and trigger fulfilment."""
    if event.email:
        await send_email(
            recipient=event.email,
            subject="Payment Confirmed",
            body=f"We received KES {event.amount} for invoice {event.invoice_id}.",
        )
    if event.phone_number:
        await send_sms(event.phone_number, f"Payment of KES {event.amount} confirmed ({event.invoice_id}).")

    if event.fulfilment == "digital":
        await issue_digital_delivery(event)


async def handle_payment_failed(event: PaymentFailedEvent):
    """Tell the buyer why the payment did not go through."""
    if event.email:
        await send_email(
            recipient=event.email,
            subject="Payment Failed",
            body=f"Payment {event.invoice_id} failed: {event.reason}. Please try again.",
        )


async def handle_payment_cancelled(event: PaymentCancelledEvent):
    if event.email:
        await send_email(
            recipient=event.email,
            subject="Payment Cancelled",
            body=f"Payment {event.invoice_id} was cancelled: {event.reason}.",
        )


async def handle_withdrawal_completed(event: WithdrawalCompletedEvent):
    await send_sms(event.mpesa_number, f"Your withdrawal of KES {event.amount} has been sent to M-Pesa.")


async def handle_withdrawal_failed(event: WithdrawalFailedEvent):
    await send_sms(
        event.mpesa_number,
        f"Your withdrawal of KES {event.amount} failed ({event.reason}). "
        f"KES {event.amount} was returned to your balance (now KES {event.new_balance}).",
    )


HANDLERS: Dict[EventType, Callable[[BaseEvent], Awaitable[None]]] = {
    EventType.PAYMENT_COMPLETED: handle_payment_completed,
    EventType.PAYMENT_FAILED: handle_payment_failed,
    EventType.PAYMENT_CANCELLED: handle_payment_cancelled,
    EventType.WITHDRAWAL_COMPLETED: handle_withdrawal_completed,
    EventType.WITHDRAWAL_FAILED: handle_withdrawal_failed,
}


async def subscribe_to_events():
    """Subscribe to payment and withdrawal outcomes."""
    for event_type, handler in HANDLERS.items():
        await message_broker.subscribe_to_event(
            event_type,
            f"notification_service_{event_type.value.replace('.', '_')}",
            handler,
        )

    logger.info("Subscribed to notification events")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)

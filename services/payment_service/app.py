"""Payment Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy import select

from shared.config import Settings
from shared.message_broker import MessageBroker

from .context import PaymentServiceContext, build_context
from .errors import PaymentServiceError
from .models import OrderStatus, Payment, WebhookChannel
from .orders import CartLine
from .settlement import payment_snapshot, status_event

# Settings
settings = Settings(service_name="payment-service", service_port=8003)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    # Startup
    logger.info("Starting Payment Service...")

    ctx = build_context(settings, message_broker=MessageBroker(settings.rabbitmq_url))
    app.state.ctx = ctx

    await ctx.database.create_tables()
    await ctx.message_broker.connect()
    await ctx.outbox_publisher.start()
    await ctx.scheduler.start()

    logger.info("Payment Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Payment Service...")
    await ctx.scheduler.stop()
    await ctx.outbox_publisher.stop()
    await ctx.broadcaster.close()
    await ctx.message_broker.disconnect()
    await ctx.provider.close()
    await ctx.database.close()


app = FastAPI(title="Payment Service", lifespan=lifespan)


def get_context(request: Request) -> PaymentServiceContext:
    return request.app.state.ctx


@app.exception_handler(PaymentServiceError)
async def handle_service_error(request: Request, exc: PaymentServiceError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"status": "error", "code": exc.code, "message": exc.message},
    )


# Request/Response models
class CartItem(BaseModel):
    """One cart line; prices always come from the catalog."""
    product_id: UUID
    quantity: int = Field(default=1)


class InitiatePaymentRequest(BaseModel):
    """Checkout request for a cart or an open debt order."""
    buyer_name: str
    buyer_email: str
    buyer_phone: str
    items: List[CartItem] = Field(default_factory=list)
    amount: Optional[Decimal] = None
    order_id: Optional[UUID] = None
    idempotency_key: Optional[str] = None


class IntentResponse(BaseModel):
    """Payment intent."""
    success: bool = True
    invoice_id: str
    provider_reference: Optional[str]
    status: str
    order_id: UUID
    amount: Decimal
    reused: bool


class PaymentStatusResponse(BaseModel):
    """Stored payment status."""
    invoice_id: str
    order_id: UUID
    status: str
    amount: Decimal
    currency: str
    provider_reference: Optional[str]
    resolution_source: Optional[str]
    resolution_reason: Optional[str]
    failure_reason: Optional[str]
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class WithdrawalCreateRequest(BaseModel):
    """Seller payout request."""
    amount: Decimal
    mpesa_number: str
    mpesa_name: str


class WithdrawalResponse(BaseModel):
    """Withdrawal request."""
    id: UUID
    seller_id: UUID
    amount: Decimal
    mpesa_number: str
    mpesa_name: str
    status: str
    provider_reference: Optional[str]
    failure_reason: Optional[str]
    resolution_reason: Optional[str]
    created_at: datetime
    processed_at: Optional[datetime]

    class Config:
        from_attributes = True


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class DebtOrderRequest(BaseModel):
    """Sale on credit recorded by a seller."""
    seller_id: UUID
    buyer_name: str
    buyer_email: str
    buyer_phone: str
    items: List[CartItem]


class OrderResponse(BaseModel):
    """Order."""
    id: UUID
    order_number: str
    seller_id: UUID
    status: str
    payment_status: str
    total_amount: Decimal
    platform_fee_amount: Decimal
    seller_payout_amount: Decimal
    payment_id: Optional[UUID]
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


# API Endpoints
@app.post("/payments/initiate", response_model=IntentResponse, status_code=201)
async def initiate_payment(
    body: InitiatePaymentRequest,
    response: Response,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    ctx: PaymentServiceContext = Depends(get_context),
):
    """Create a pending payment and send the STK push."""
    receipt = await ctx.intents.initiate(
        buyer_name=body.buyer_name,
        buyer_email=body.buyer_email,
        buyer_phone=body.buyer_phone,
        lines=[CartLine(item.product_id, item.quantity) for item in body.items],
        amount=body.amount,
        order_id=body.order_id,
        idempotency_token=body.idempotency_key or idempotency_key,
    )
    if receipt.reused:
        response.status_code = 200

    return IntentResponse(
        invoice_id=receipt.invoice_id,
        provider_reference=receipt.provider_reference,
        status=receipt.status,
        order_id=receipt.order_id,
        amount=receipt.amount,
        reused=receipt.reused,
    )


@app.get("/payments/status/{invoice_id}", response_model=PaymentStatusResponse)
async def get_payment_status(
    invoice_id: str,
    refresh: bool = False,
    ctx: PaymentServiceContext = Depends(get_context),
):
    """One-shot status check; ``refresh=true`` asks Payd first."""
    if refresh:
        payment = await ctx.scheduler.refresh_payment(invoice_id)
    else:
        async with ctx.database.session_factory() as session:
            result = await session.execute(select(Payment).where(Payment.invoice_id == invoice_id))
            payment = result.scalar_one_or_none()

    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")

    return PaymentStatusResponse.model_validate(payment)


async def _status_frames(ctx: PaymentServiceContext, invoice_id: str):
    # Subscribe before reading so a transition in between is not missed
    subscription = ctx.broadcaster.subscribe(invoice_id)
    frames = ctx.broadcaster.stream(subscription)
    try:
        async with ctx.database.session_factory() as session:
            result = await session.execute(select(Payment).where(Payment.invoice_id == invoice_id))
            payment = result.scalar_one()

        if payment.is_terminal:
            subscription.deliver(status_event(payment))
        else:
            subscription.deliver({"type": "status", "status": payment.status, "payment": payment_snapshot(payment)})

        async for frame in frames:
            yield frame
    finally:
        await frames.aclose()
        ctx.broadcaster.unsubscribe(invoice_id, subscription)


@app.get("/payments/stream/{invoice_id}")
async def stream_payment_status(invoice_id: str, ctx: PaymentServiceContext = Depends(get_context)):
    """
    Server-Sent Events stream of status changes for one invoice.

    The subscription is registered once the body starts streaming, so a
    client that disconnects before then leaves nothing behind.
    """
    async with ctx.database.session_factory() as session:
        result = await session.execute(select(Payment.id).where(Payment.invoice_id == invoice_id))
        if result.scalar_one_or_none() is None:
            raise HTTPException(status_code=404, detail="Payment not found")

    return StreamingResponse(
        _status_frames(ctx, invoice_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


async def _ingest(channel: WebhookChannel, request: Request, ctx: PaymentServiceContext):
    body = await request.body()
    client_ip = request.client.host if request.client else None
    return await ctx.ingestor.handle(channel, body, request.headers, client_ip)


@app.post("/webhooks/payd/payments")
async def payd_payment_webhook(request: Request, ctx: PaymentServiceContext = Depends(get_context)):
    """Payd STK push callback."""
    return await _ingest(WebhookChannel.PAYMENT, request, ctx)


@app.post("/webhooks/payd/payouts")
async def payd_payout_webhook(request: Request, ctx: PaymentServiceContext = Depends(get_context)):
    """Payd withdrawal callback."""
    return await _ingest(WebhookChannel.PAYOUT, request, ctx)


@app.post("/sellers/{seller_id}/withdrawals", response_model=WithdrawalResponse, status_code=201)
async def create_withdrawal(
    seller_id: UUID,
    body: WithdrawalCreateRequest,
    background_tasks: BackgroundTasks,
    ctx: PaymentServiceContext = Depends(get_context),
):
    """Deduct the balance now; the payout is sent once the request is committed."""
    request = await ctx.withdrawals.request_withdrawal(
        seller_id, body.amount, body.mpesa_number, body.mpesa_name
    )
    background_tasks.add_task(ctx.withdrawals.dispatch_payout, request.id)
    return WithdrawalResponse.model_validate(request)


@app.get("/sellers/{seller_id}/withdrawals", response_model=List[WithdrawalResponse])
async def list_withdrawals(seller_id: UUID, ctx: PaymentServiceContext = Depends(get_context)):
    """Withdrawal history with failure reasons."""
    requests = await ctx.withdrawals.list_withdrawals(seller_id)
    return [WithdrawalResponse.model_validate(request) for request in requests]


@app.post("/orders/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: UUID,
    body: OrderStatusUpdate,
    ctx: PaymentServiceContext = Depends(get_context),
):
    """Manual order transition (delivery, completion, cancellation)."""
    order = await ctx.orders.transition(order_id, body.status)
    return OrderResponse.model_validate(order)


@app.post("/orders/debt", response_model=OrderResponse, status_code=201)
async def create_debt_order(body: DebtOrderRequest, ctx: PaymentServiceContext = Depends(get_context)):
    """Record a sale on credit."""
    order = await ctx.orders.open_debt_order(
        seller_id=body.seller_id,
        lines=[CartLine(item.product_id, item.quantity) for item in body.items],
        buyer_name=body.buyer_name,
        buyer_email=body.buyer_email,
        buyer_phone=body.buyer_phone,
    )
    return OrderResponse.model_validate(order)


@app.get("/health")
async def health_check(ctx: PaymentServiceContext = Depends(get_context)):
    """Health check endpoint."""
    health = {
        "status": "healthy",
        "service": "payment-service",
        "sse_connections": ctx.broadcaster.total_connections(),
    }
    if ctx.outbox_publisher:
        health["outbox"] = await ctx.outbox_publisher.backlog()
    return health


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)

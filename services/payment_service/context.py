"""Wiring of the payment service components."""
from dataclasses import dataclass
from typing import Optional

from shared.config import Settings
from shared.database import Database
from shared.locking import LockManager
from shared.message_broker import MessageBroker
from shared.outbox import OutboxPublisher

from .broadcast import StatusBroadcaster
from .intent_tracker import PaymentIntentTracker
from .ledger import SellerLedger
from .orders import OrderLifecycle
from .provider import PaydClient
from .reconciliation import ReconciliationScheduler
from .settlement import Settlement
from .webhooks import WebhookIngestor, WebhookVerifier
from .withdrawals import WithdrawalService


@dataclass
class PaymentServiceContext:
    settings: Settings
    database: Database
    locks: LockManager
    provider: PaydClient
    broadcaster: StatusBroadcaster
    ledger: SellerLedger
    orders: OrderLifecycle
    settlement: Settlement
    intents: PaymentIntentTracker
    withdrawals: WithdrawalService
    ingestor: WebhookIngestor
    scheduler: ReconciliationScheduler
    message_broker: Optional[MessageBroker] = None
    outbox_publisher: Optional[OutboxPublisher] = None


def build_context(
    settings: Settings,
    database: Optional[Database] = None,
    provider: Optional[PaydClient] = None,
    message_broker: Optional[MessageBroker] = None,
) -> PaymentServiceContext:
    """
    Build every component around one database and one lock manager.

    Args:
        settings: Service settings
        database: Database to use instead of ``settings.database_url``
        provider: Payd client to use, e.g. one on a mock transport
        message_broker: Broker for the outbox publisher; None disables it
    """
    database = database or Database(settings.database_url)
    session_factory = database.session_factory
    locks = LockManager()
    provider = provider or PaydClient(settings)

    broadcaster = StatusBroadcaster(
        heartbeat_seconds=settings.sse_heartbeat_seconds,
        max_duration_seconds=settings.sse_max_duration_seconds,
    )
    ledger = SellerLedger(locks)
    orders = OrderLifecycle(session_factory, locks, ledger, settings)
    settlement = Settlement(session_factory, locks, orders, broadcaster)
    withdrawals = WithdrawalService(session_factory, locks, ledger, provider, settings)

    outbox_publisher = None
    if message_broker is not None:
        outbox_publisher = OutboxPublisher(session_factory=session_factory, broker=message_broker)

    return PaymentServiceContext(
        settings=settings,
        database=database,
        locks=locks,
        provider=provider,
        broadcaster=broadcaster,
        ledger=ledger,
        orders=orders,
        settlement=settlement,
        intents=PaymentIntentTracker(session_factory, locks, provider, settlement, orders, settings),
        withdrawals=withdrawals,
        ingestor=WebhookIngestor(session_factory, WebhookVerifier(settings), settlement, withdrawals),
        scheduler=ReconciliationScheduler(session_factory, settlement, withdrawals, provider, settings),
        message_broker=message_broker,
        outbox_publisher=outbox_publisher,
    )

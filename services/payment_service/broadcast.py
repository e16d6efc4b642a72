"""
Server-Sent Events fan-out of payment status changes.

Subscriptions live in memory, keyed by invoice id. Registry changes never
await, so the event loop serializes them. Events published while nobody is
subscribed are dropped; clients fall back to ``GET /payments/status``.
"""
import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional
from uuid import uuid4

logger = logging.getLogger(__name__)

TERMINAL_EVENT_TYPES = frozenset({"completed", "failed", "cancelled"})

_CLOSE = object()

# Oldest events are dropped once a client falls this far behind
QUEUE_SIZE = 16


def sse_frame(data: Dict[str, Any]) -> str:
    return f"data: {json.dumps(data, default=str)}\n\n"


HEARTBEAT_FRAME = ": heartbeat\n\n"


def is_terminal_event(event: Dict[str, Any]) -> bool:
    return event.get("type") in TERMINAL_EVENT_TYPES


class Subscription:
    """One open client connection waiting on an invoice."""

    def __init__(self, invoice_id: str):
        self.id = uuid4().hex[:12]
        self.invoice_id = invoice_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_SIZE)
        self.closed = False

    def deliver(self, event: Dict[str, Any]) -> bool:
        """Queue an event; a terminal event also closes the subscription."""
        if self.closed:
            return False
        self._offer(event)
        if is_terminal_event(event):
            self.close()
        return True

    def close(self):
        if not self.closed:
            self.closed = True
            self._offer(_CLOSE)

    def _offer(self, item):
        if self.queue.full():
            dropped = self.queue.get_nowait()
            logger.warning(f"SSE: client {self.id} is not reading; dropped {dropped.get('type')}")
        self.queue.put_nowait(item)


class StatusBroadcaster:
    """Registry of live subscriptions per invoice id."""

    def __init__(self, heartbeat_seconds: float = 30.0, max_duration_seconds: float = 300.0):
        self.heartbeat_seconds = heartbeat_seconds
        self.max_duration_seconds = max_duration_seconds
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, invoice_id: str) -> Subscription:
        subscription = Subscription(invoice_id)
        self._subscriptions.setdefault(invoice_id, []).append(subscription)
        logger.info(
            f"SSE: client {subscription.id} subscribed to {invoice_id}. "
            f"Total clients: {self.connection_count(invoice_id)}"
        )
        return subscription

    def unsubscribe(self, invoice_id: str, subscription: Subscription):
        """Remove one subscription, leaving its siblings alone."""
        subscription.close()
        subscriptions = self._subscriptions.get(invoice_id)
        if not subscriptions or subscription not in subscriptions:
            return

        subscriptions.remove(subscription)
        logger.info(
            f"SSE: client {subscription.id} unsubscribed from {invoice_id}. "
            f"Remaining clients: {len(subscriptions)}"
        )
        if not subscriptions:
            del self._subscriptions[invoice_id]

    async def publish(self, invoice_id: str, event: Dict[str, Any]) -> int:
        """
        Deliver an event to every subscription of an invoice.

        Terminal events close and deregister all of them afterwards.

        Returns:
            Number of subscriptions the event was delivered to
        """
        subscriptions = list(self._subscriptions.get(invoice_id, ()))
        if not subscriptions:
            logger.debug(f"SSE: no clients subscribed to {invoice_id}; dropping {event.get('type')}")
            return 0

        delivered = sum(1 for subscription in subscriptions if subscription.deliver(event))
        logger.info(f"SSE: broadcast {event.get('type')} to {delivered} client(s) for {invoice_id}")

        if is_terminal_event(event):
            for subscription in subscriptions:
                self.unsubscribe(invoice_id, subscription)
        return delivered

    def connection_count(self, invoice_id: str) -> int:
        return len(self._subscriptions.get(invoice_id, ()))

    def total_connections(self) -> int:
        return sum(len(subscriptions) for subscriptions in self._subscriptions.values())

    async def close(self):
        """Close every subscription, e.g. on shutdown."""
        for invoice_id, subscriptions in list(self._subscriptions.items()):
            for subscription in list(subscriptions):
                self.unsubscribe(invoice_id, subscription)

    async def stream(self, subscription: Subscription, max_duration: Optional[float] = None) -> AsyncIterator[str]:
        """
        Render a subscription as SSE frames.

        Ends after a terminal event, on close, or after ``max_duration_seconds``
        with a ``timeout`` event telling the client to poll instead.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + (max_duration or self.max_duration_seconds)

        try:
            yield ": SSE connection established\n\n"
            yield sse_frame({"type": "connected", "invoiceId": subscription.invoice_id})

            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.info(f"SSE: client {subscription.id} for {subscription.invoice_id} timed out")
                    yield sse_frame({
                        "type": "timeout",
                        "status": "pending",
                        "message": "No final status yet; check /payments/status",
                    })
                    break

                try:
                    item = await asyncio.wait_for(
                        subscription.queue.get(), timeout=min(self.heartbeat_seconds, remaining)
                    )
                except asyncio.TimeoutError:
                    if deadline - loop.time() > 0:
                        yield HEARTBEAT_FRAME
                    continue

                if item is _CLOSE:
                    break
                yield sse_frame(item)
        finally:
            self.unsubscribe(subscription.invoice_id, subscription)

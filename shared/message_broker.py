"""RabbitMQ transport for payment events."""
import asyncio
import json
import logging
from collections import OrderedDict
from typing import Any, Callable, Optional

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange
from tenacity import retry, stop_after_attempt, wait_exponential

from .events import BaseEvent, EventType, deserialize_event

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "payment_events"
DEAD_LETTER_EXCHANGE_NAME = "payment_events_dlx"
DEAD_LETTER_QUEUE_NAME = "payment_events_dead_letter"

RETRY_HEADER = "x-retry-count"
SEEN_EVENTS_LIMIT = 10000


def _retry_count(message: aio_pika.IncomingMessage) -> int:
    if message.headers and RETRY_HEADER in message.headers:
        return int(message.headers[RETRY_HEADER])
    return 0


class MessageBroker:
    """
    Publishes outbox events and dispatches them to consumers.

    The outbox delivers at least once, so consumers skip event ids they
    have already handled in this process.
    """

    def __init__(self, rabbitmq_url: str):
        self.rabbitmq_url = rabbitmq_url
        self.connection: Optional[AbstractConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self.exchange: Optional[AbstractExchange] = None
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    @retry(
        stop=stop_after_attempt(6),
        wait=wait_exponential(multiplier=0.5, max=15),
        reraise=True,
    )
    async def connect(self):
        """Connect to RabbitMQ and declare the payment event topology."""
        logger.info(f"Connecting to RabbitMQ exchange '{EXCHANGE_NAME}'...")
        self.connection = await aio_pika.connect_robust(self.rabbitmq_url)
        self.channel = await self.connection.channel()
        await self.channel.set_qos(prefetch_count=10)
        await self._declare_topology()
        logger.info("Connected to RabbitMQ")

    async def _declare_topology(self):
        self.exchange = await self.channel.declare_exchange(EXCHANGE_NAME, ExchangeType.TOPIC, durable=True)

        dead_letters = await self.channel.declare_exchange(
            DEAD_LETTER_EXCHANGE_NAME, ExchangeType.TOPIC, durable=True
        )
        parked = await self.channel.declare_queue(
            DEAD_LETTER_QUEUE_NAME, durable=True, arguments={"x-queue-type": "quorum"}
        )
        await parked.bind(dead_letters, routing_key="#")

    async def disconnect(self):
        if self.connection:
            await self.connection.close()
            self.connection = None
            self.channel = None
            self.exchange = None
            logger.info("RabbitMQ connection closed")

    async def publish_event(self, event: BaseEvent, routing_key: Optional[str] = None):
        """
        Publish one event, routed by its type unless ``routing_key`` is given.

        Raises:
            RuntimeError: ``connect`` has not been called
        """
        if not self.exchange:
            raise RuntimeError("RabbitMQ channel is not open; call connect() first")

        routing_key = routing_key or event.event_type.value
        await self.exchange.publish(
            Message(
                body=json.dumps(event.model_dump(mode="json")).encode(),
                delivery_mode=DeliveryMode.PERSISTENT,
                content_type="application/json",
                message_id=str(event.event_id),
                correlation_id=event.correlation_id,
                headers={
                    "event_type": event.event_type.value,
                    "aggregate_id": str(event.aggregate_id),
                    "version": event.version,
                },
            ),
            routing_key=routing_key,
        )

        logger.info(f"Published {event.event_type.value} for {event.correlation_id} (id={event.event_id})")

    def _first_delivery(self, event_id: str) -> bool:
        if event_id in self._seen:
            return False
        self._seen[event_id] = None
        if len(self._seen) > SEEN_EVENTS_LIMIT:
            self._seen.popitem(last=False)
        return True

    async def subscribe_to_event(
        self,
        event_type: EventType,
        queue_name: str,
        handler: Callable[[BaseEvent], Any],
        max_retries: int = 3
    ):
        """
        Consume events of one type.

        A handler failure republishes the message with an incremented
        ``x-retry-count`` header; after ``max_retries`` it is dead-lettered.
        """
        if not self.channel:
            raise RuntimeError("RabbitMQ channel is not open; call connect() first")

        queue = await self.channel.declare_queue(
            queue_name,
            durable=True,
            arguments={
                "x-dead-letter-exchange": DEAD_LETTER_EXCHANGE_NAME,
                "x-dead-letter-routing-key": f"dlq.{event_type.value}",
                "x-queue-type": "quorum"
            }
        )
        await queue.bind(self.exchange, routing_key=event_type.value)

        async def process_message(message: aio_pika.IncomingMessage):
            async with message.process(requeue=False):
                attempt = _retry_count(message)
                event = deserialize_event(json.loads(message.body.decode()))

                if attempt == 0 and not self._first_delivery(str(event.event_id)):
                    logger.info(f"Skipping redelivered {event.event_type.value} {event.event_id}")
                    return

                try:
                    await handler(event)
                except Exception as e:
                    logger.error(
                        f"Handler for {event.event_type.value} {event.event_id} failed: {str(e)}",
                        exc_info=True
                    )
                    if attempt + 1 > max_retries:
                        logger.error(f"Giving up on {event.event_id} after {max_retries} retries; dead-lettering")
                        raise
                    await self._republish(message, event_type, attempt + 1)

        await queue.consume(process_message)
        logger.info(f"Subscribed to {event_type.value} on queue {queue_name}")

    async def _republish(self, message: aio_pika.IncomingMessage, event_type: EventType, attempt: int):
        headers = dict(message.headers or {})
        headers[RETRY_HEADER] = attempt

        await asyncio.sleep(min(2 ** attempt, 60))
        await self.exchange.publish(
            Message(
                body=message.body,
                delivery_mode=DeliveryMode.PERSISTENT,
                content_type=message.content_type,
                message_id=message.message_id,
                correlation_id=message.correlation_id,
                headers=headers,
            ),
            routing_key=event_type.value,
        )
        logger.info(f"Requeued {message.message_id} (retry {attempt})")

"""
Outbox for transition side effects.

A state transition and the events describing it are committed together, so
fulfilment and notifications are triggered exactly once per transition and
never roll the transition back when they fail:
1. Events are saved to the outbox table in the transition's transaction
2. A poller publishes pending events to the message broker
3. Failed publishes are retried up to ``max_retries`` and then parked as
   ``failed`` until ``retry_failed_messages`` resets them
"""
import asyncio
import json
import logging
from enum import Enum
from typing import Dict, Optional
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, Uuid, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .database import Base, utcnow
from .events import BaseEvent, deserialize_event

logger = logging.getLogger(__name__)


class OutboxStatus(str, Enum):
    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


class OutboxMessage(Base):
    """One event waiting to leave the service."""

    __tablename__ = "event_outbox"

    id = Column(Uuid, primary_key=True, default=uuid4)
    event_id = Column(Uuid, nullable=False, unique=True)
    event_type = Column(String(100), nullable=False)
    aggregate_id = Column(Uuid, nullable=False)
    correlation_id = Column(String(100), nullable=False)
    event_data = Column(Text, nullable=False)
    status = Column(String(20), default=OutboxStatus.PENDING.value, nullable=False, index=True)
    retry_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    published_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_event_outbox_pending", "status", "created_at"),
        Index("ix_event_outbox_aggregate", "aggregate_id"),
    )


class OutboxPublisher:
    """
    Background relay from the outbox table to the broker.

    ``broker`` is anything with an async ``publish_event(event)``. A message
    that fails ``max_retries`` times is parked as ``failed``.
    """

    def __init__(
        self,
        session_factory,
        broker,
        poll_interval: float = 1,
        batch_size: int = 100,
        max_retries: int = 5
    ):
        self.session_factory = session_factory
        self.broker = broker
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_retries = max_retries
        self._stopped: Optional[asyncio.Event] = None
        self._relay: Optional[asyncio.Task] = None

    async def start(self):
        if self._relay is not None:
            logger.warning("Outbox relay is already running")
            return

        self._stopped = asyncio.Event()
        self._relay = asyncio.create_task(self._relay_loop())
        logger.info(f"Outbox relay started (every {self.poll_interval}s, batch {self.batch_size})")

    async def stop(self):
        if self._relay is None:
            return

        self._stopped.set()
        relay, self._relay = self._relay, None
        try:
            await asyncio.wait_for(relay, timeout=max(self.poll_interval, 1) * 5)
        except asyncio.TimeoutError:
            logger.warning("Outbox relay did not stop in time; cancelled")

        logger.info("Outbox relay stopped")

    async def _relay_loop(self):
        while not self._stopped.is_set():
            try:
                await self.publish_pending_messages()
            except Exception as e:
                logger.error(f"Outbox relay pass failed: {str(e)}", exc_info=True)

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue

    async def publish_pending_messages(self) -> int:
        """
        Publish one batch of pending messages, oldest first.

        Rows are claimed with ``FOR UPDATE SKIP LOCKED`` so several workers
        can poll the same table without publishing a message twice.

        Returns:
            Number of messages published
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(OutboxMessage)
                .where(OutboxMessage.status == OutboxStatus.PENDING.value)
                .order_by(OutboxMessage.created_at)
                .limit(self.batch_size)
                .with_for_update(skip_locked=True)
            )
            messages = result.scalars().all()
            if not messages:
                return 0

            logger.info(f"Publishing {len(messages)} outbox message(s)")
            published = 0
            for message in messages:
                if await self._publish_one(message):
                    published += 1

            await session.commit()

        return published

    async def _publish_one(self, message: OutboxMessage) -> bool:
        try:
            event = deserialize_event(json.loads(message.event_data))
            await self.broker.publish_event(event)
        except Exception as e:
            message.retry_count += 1
            message.error_message = str(e)
            logger.error(
                f"Publishing {message.event_type} {message.event_id} failed "
                f"(attempt {message.retry_count}/{self.max_retries}): {str(e)}"
            )
            if message.retry_count >= self.max_retries:
                message.status = OutboxStatus.FAILED.value
                logger.error(f"Parked {message.event_id} for {message.correlation_id} as failed")
            return False

        message.status = OutboxStatus.PUBLISHED.value
        message.published_at = utcnow()
        logger.debug(f"Published {message.event_type} {message.event_id} for {message.correlation_id}")
        return True

    async def backlog(self) -> Dict[str, int]:
        """Count of unpublished messages per status."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(OutboxMessage.status, func.count())
                .where(OutboxMessage.status != OutboxStatus.PUBLISHED.value)
                .group_by(OutboxMessage.status)
            )
            counts = {status.value: 0 for status in (OutboxStatus.PENDING, OutboxStatus.FAILED)}
            counts.update({status: count for status, count in result.all()})
            return counts

    async def retry_failed_messages(self) -> int:
        """Put every parked message back in the queue with a fresh retry budget."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(OutboxMessage)
                .where(OutboxMessage.status == OutboxStatus.FAILED.value)
                .values(status=OutboxStatus.PENDING.value, retry_count=0, error_message=None)
            )
            await session.commit()

        logger.info(f"Requeued {result.rowcount} parked outbox message(s)")
        return result.rowcount


async def save_event_to_outbox(session: AsyncSession, event: BaseEvent):
    """
    Queue an event in the caller's transaction.

    Must run in the same transaction as the state change it describes; the
    caller commits.
    """
    session.add(OutboxMessage(
        event_id=event.event_id,
        event_type=event.event_type.value,
        aggregate_id=event.aggregate_id,
        correlation_id=event.correlation_id,
        event_data=json.dumps(event.model_dump(mode="json")),
        status=OutboxStatus.PENDING.value,
        created_at=utcnow(),
    ))
    logger.debug(f"Queued {event.event_type.value} {event.event_id} in outbox")

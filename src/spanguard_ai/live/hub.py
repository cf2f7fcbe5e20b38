"""
Live Channel Hub

Fans analysis progress and alerts out to connected dashboards.

Each subscriber owns a bounded queue drained by a single writer task, so
`publish` never blocks on a slow socket. A subscriber whose queue is full is
disconnected rather than silently losing events.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from fastapi import WebSocket
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 30.0
RECONNECT_DELAY_MS = 3000
SUBSCRIBER_QUEUE_SIZE = 256

# Policy violation: the client could not keep up
SLOW_CONSUMER_CLOSE_CODE = 1008


class EventType(str, Enum):
    ANALYSIS_START = "analysis-start"
    ANALYSIS_CHUNK = "analysis-chunk"
    ANALYSIS_COMPLETE = "analysis-complete"
    ALERT = "alert"
    HEARTBEAT = "heartbeat"


class LiveEvent(BaseModel):
    """One message on the live channel."""

    type: EventType
    data: Optional[Any] = None
    anomaly_ids: Optional[list[str]] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class Subscriber:
    """A connected dashboard."""

    def __init__(self, websocket: WebSocket, maxsize: int = SUBSCRIBER_QUEUE_SIZE):
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.connected_at = datetime.utcnow()
        self.writer: Optional[asyncio.Task] = None


class LiveChannelHub:
    """
    Publish/subscribe hub for live dashboard events.

    Usage:
        hub = LiveChannelHub()
        await hub.start()
        subscriber = hub.register(websocket)
        hub.alert("critical", "Payment gateway down", {"service": "payments"})
    """

    def __init__(
        self,
        queue_size: int = SUBSCRIBER_QUEUE_SIZE,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ):
        self.queue_size = queue_size
        self.heartbeat_interval = heartbeat_interval
        self._subscribers: dict[str, Subscriber] = {}
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the heartbeat loop."""
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
            logger.info("Live channel hub started")

    async def stop(self) -> None:
        """Stop the heartbeat loop and close every subscriber."""
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        for subscriber_id in list(self._subscribers):
            self.unregister(subscriber_id)

        logger.info("Live channel hub stopped")

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self.heartbeat()

    # -------------------------------------------------------------------------
    # Subscribers
    # -------------------------------------------------------------------------

    def register(self, websocket: WebSocket) -> Subscriber:
        """
        Attach an accepted websocket.

        The subscriber is greeted with a heartbeat carrying the reconnect delay.
        """
        subscriber = Subscriber(websocket, maxsize=self.queue_size)
        subscriber.writer = asyncio.create_task(self._writer(subscriber))
        self._subscribers[subscriber.id] = subscriber
        subscriber.queue.put_nowait(self._heartbeat_event().to_json())
        logger.info(f"Live subscriber {subscriber.id} connected ({self.subscriber_count} total)")
        return subscriber

    def unregister(self, subscriber_id: str) -> None:
        """Detach a subscriber. Safe to call more than once."""
        subscriber = self._subscribers.pop(subscriber_id, None)
        if subscriber is None:
            return
        if subscriber.writer and not subscriber.writer.done():
            subscriber.writer.cancel()
        logger.info(f"Live subscriber {subscriber_id} disconnected ({self.subscriber_count} total)")

    async def _writer(self, subscriber: Subscriber) -> None:
        try:
            while True:
                message = await subscriber.queue.get()
                await subscriber.websocket.send_json(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Live subscriber {subscriber.id} send failed: {e}")
            self.unregister(subscriber.id)

    def _drop_slow(self, subscriber: Subscriber) -> None:
        logger.warning(f"Live subscriber {subscriber.id} queue full, disconnecting")
        self.unregister(subscriber.id)
        task = asyncio.create_task(self._close(subscriber))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _close(self, subscriber: Subscriber) -> None:
        try:
            await subscriber.websocket.close(
                code=SLOW_CONSUMER_CLOSE_CODE, reason="Subscriber too slow"
            )
        except Exception as e:
            logger.debug(f"Closing live subscriber {subscriber.id} failed: {e}")

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def publish(self, event: LiveEvent) -> int:
        """
        Queue an event for every subscriber. Never blocks.

        Returns:
            Number of subscribers the event was queued for
        """
        message = event.to_json()
        delivered = 0

        for subscriber in list(self._subscribers.values()):
            try:
                subscriber.queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                self._drop_slow(subscriber)

        return delivered

    def analysis_start(self, anomaly_ids: list[str]) -> int:
        return self.publish(LiveEvent(
            type=EventType.ANALYSIS_START,
            anomaly_ids=list(anomaly_ids),
        ))

    def analysis_chunk(self, chunk: str, anomaly_ids: Optional[list[str]] = None) -> int:
        return self.publish(LiveEvent(
            type=EventType.ANALYSIS_CHUNK,
            data=chunk,
            anomaly_ids=list(anomaly_ids) if anomaly_ids else None,
        ))

    def analysis_complete(self, text: str, anomaly_ids: Optional[list[str]] = None) -> int:
        return self.publish(LiveEvent(
            type=EventType.ANALYSIS_COMPLETE,
            data=text,
            anomaly_ids=list(anomaly_ids) if anomaly_ids else None,
        ))

    def alert(self, severity: str, message: str, context: Optional[dict] = None) -> int:
        return self.publish(LiveEvent(
            type=EventType.ALERT,
            data={"severity": severity, "message": message, "context": context or {}},
        ))

    def _heartbeat_event(self) -> LiveEvent:
        return LiveEvent(
            type=EventType.HEARTBEAT,
            data={"retry_ms": RECONNECT_DELAY_MS, "subscribers": self.subscriber_count},
        )

    def heartbeat(self) -> int:
        return self.publish(self._heartbeat_event())

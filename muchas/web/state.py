"""Fanout — pushes serialized events to every connected WebSocket client."""
import asyncio
import logging
import uuid
from typing import Optional

from ..config import SUBSCRIBER_QUEUE_SIZE
from ..models import Event, serialize_event

logger = logging.getLogger(__name__)


class Subscriber:
    """One live channel. get() returns None once the subscriber is dropped."""

    def __init__(self, maxsize: int):
        self.id = uuid.uuid4().hex
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = False

    async def get(self) -> Optional[str]:
        if self.dropped and self.queue.empty():
            return None
        return await self.queue.get()

    def offer(self, message: str) -> bool:
        try:
            self.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            return False

    def drop(self):
        """Discard pending messages and wake the writer with the end marker."""
        self.dropped = True
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(None)


class Fanout:
    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: dict[str, Subscriber] = {}

    def subscribe(self) -> Subscriber:
        sub = Subscriber(self.queue_size)
        self._subscribers[sub.id] = sub
        return sub

    def unsubscribe(self, subscriber_id: str):
        self._subscribers.pop(subscriber_id, None)

    @property
    def client_count(self) -> int:
        return len(self._subscribers)

    def broadcast(self, event: Event) -> int:
        """Push an event to all clients. Returns how many received it.

        A client whose queue is full is disconnected instead of waited on.
        """
        message = serialize_event(event)
        delivered = 0
        for sub in list(self._subscribers.values()):
            if sub.offer(message):
                delivered += 1
                continue
            logger.warning("Dropping slow WebSocket client %s", sub.id)
            self._subscribers.pop(sub.id, None)
            sub.drop()
        return delivered

"""Real-time event broadcaster.

Every connected client gets its own bounded asyncio.Queue.  The
coordinator and the Booking API publish into it without waiting: delivery
is best-effort, a full queue drops its oldest event, and nothing in the
booking path depends on an event being seen.

Publishers may run on the event loop (WebSocket handlers) or on a worker
thread (sync FastAPI routes), so deliveries to a queue owned by another
loop are handed over with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TypedDict

log = logging.getLogger("simplecal.events")

QUEUE_SIZE = 200


class Event(TypedDict):
    type: str          # hello_ack | claim_granted | claim_denied | slot_claimed | slot_released | booking_created | booking_updated | availability_updated | error | pong
    timestamp: float
    data: dict


@dataclass
class _Subscriber:
    queue: asyncio.Queue
    loop: asyncio.AbstractEventLoop | None


class EventBroadcaster:
    """Fan-out to all subscribers, or targeted delivery to one."""

    def __init__(self) -> None:
        self._subscribers: dict[str, _Subscriber] = {}

    def subscribe(self, client_id: str) -> asyncio.Queue[Event]:
        """Create (or replace) the queue for ``client_id`` and return it."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        q: asyncio.Queue[Event] = asyncio.Queue(maxsize=QUEUE_SIZE)
        self._subscribers[client_id] = _Subscriber(q, loop)
        log.info("Subscriber added: %s (total: %d)", client_id, len(self._subscribers))
        return q

    def unsubscribe(self, client_id: str) -> None:
        self._subscribers.pop(client_id, None)
        log.info("Subscriber removed: %s (total: %d)", client_id, len(self._subscribers))

    def publish(self, event_type: str, data: dict) -> Event:
        """Broadcast to every subscriber."""
        event = _make_event(event_type, data)
        for sub in list(self._subscribers.values()):
            self._offer(sub, event)
        log.debug("Published %s to %d subscribers", event_type, len(self._subscribers))
        return event

    def send(self, client_id: str, event_type: str, data: dict) -> bool:
        """Deliver to one subscriber only.  Returns False if it is not connected."""
        sub = self._subscribers.get(client_id)
        if sub is None:
            return False
        self._offer(sub, _make_event(event_type, data))
        return True

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _offer(self, sub: _Subscriber, event: Event) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if sub.loop is None or sub.loop is running:
            _put_dropping_oldest(sub.queue, event)
            return
        try:
            sub.loop.call_soon_threadsafe(_put_dropping_oldest, sub.queue, event)
        except RuntimeError:
            # Owning loop already closed; the subscriber is gone.
            pass


def _make_event(event_type: str, data: dict) -> Event:
    return {"type": event_type, "timestamp": time.time(), "data": data}


def _put_dropping_oldest(q: asyncio.Queue, event: Event) -> None:
    try:
        q.put_nowait(event)
    except asyncio.QueueFull:
        try:
            q.get_nowait()
            q.put_nowait(event)
        except (asyncio.QueueEmpty, asyncio.QueueFull):
            pass

"""In-process async event bus for Hive.

Events are dispatched to registered handlers asynchronously.
Handlers run concurrently but errors are isolated: one broken
handler never crashes the bus or blocks other handlers.

Delivery is at-most-once. When the queue is full the event is dropped,
and nothing the bus does can fail the operation that emitted it.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# Handler type: async function taking an Event
EventHandler = Callable[["Event"], Awaitable[None]]

NOTIFY = "notify"
MAIN_LOOP_EVENT = "main_loop_event"


@dataclass
class Event:
    """A typed event flowing through the bus."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    agent_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """Bounded queue plus one dispatcher task.

    Handlers for an event type run concurrently; a failing handler is
    logged and the rest still see the event. ``dropped`` counts events
    lost to a full queue.
    """

    def __init__(self, max_queue: int = 1000):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None
        self._running = False
        self.dropped = 0

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe ``handler`` to ``event_type``."""
        self._handlers[event_type].append(handler)
        logger.debug("Subscribed %s to '%s'", handler.__qualname__, event_type)

    def off(self, event_type: str, handler: EventHandler) -> bool:
        """Unsubscribe. Returns False when the handler was not registered."""
        handlers = self._handlers.get(event_type)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    async def emit(self, event: Event) -> bool:
        """Queue an event without blocking. Returns False if it was dropped."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Event bus full (%d dropped so far), dropping %s", self.dropped, event.type)
            return False
        return True

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="hive-event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Cancel the dispatcher, then deliver whatever is still queued."""
        self._running = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            delivered = await self._drain()
            if delivered:
                logger.debug("Delivered %d queued event(s) on stop", delivered)
        logger.info("Event bus stopped")

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _run(self) -> None:
        while self._running:
            event = await self._queue.get()
            try:
                await self._dispatch(event)
            except Exception:
                logger.exception("Event bus failed dispatching %s", event.type)

    async def _drain(self) -> int:
        delivered = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return delivered
            await self._dispatch(event)
            delivered += 1

    async def _dispatch(self, event: Event) -> None:
        # Snapshot so a handler may unsubscribe while the event is in flight.
        handlers = tuple(self._handlers.get(event.type, ()))
        if handlers:
            await asyncio.gather(*(self._call(h, event) for h in handlers))

    @staticmethod
    async def _call(handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Handler %s failed on %s", handler.__qualname__, event.type)

class Notifier:
    """Fire-and-forget front for the bus used by the orchestration core.

    Two channels: ``notify(topic)`` pings UI subscribers that a collection
    changed, ``push_main_loop_event`` is an informational broadcast to main
    sessions. A missing bus or a failing emit is logged and swallowed.
    """

    def __init__(self, bus: EventBus | None = None) -> None:
        self._bus = bus

    async def notify(self, topic: str, action: str = "update", id: str | None = None) -> None:
        data: dict[str, Any] = {"topic": topic, "action": action}
        if id is not None:
            data["id"] = id
        await self._emit(Event(type=NOTIFY, data=data))

    async def push_main_loop_event(
        self,
        event_type: str,
        text: str,
        *,
        user: str | None = None,
    ) -> None:
        await self._emit(Event(
            type=MAIN_LOOP_EVENT,
            data={"type": event_type, "text": text, "user": user},
        ))

    async def _emit(self, event: Event) -> None:
        if self._bus is None:
            return
        try:
            await self._bus.emit(event)
        except Exception:
            logger.warning("Dropped %s event: bus emit failed", event.type)

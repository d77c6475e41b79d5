"""Main-loop relay -- appends lifecycle events to main sessions.

Listens to: main_loop_event
Writes: ChatSession.main_loop_events on every main session

The core emits these as best-effort broadcasts. A failure here is logged
by the bus and never reaches the operation that emitted the event.
"""

from __future__ import annotations

import logging

from hive.core.directory import DirectoryManager
from hive.events import MAIN_LOOP_EVENT, Event, EventBus

logger = logging.getLogger(__name__)


class MainLoopRelay:
    """Bus handler that persists main-loop events."""

    def __init__(self, directory: DirectoryManager, bus: EventBus) -> None:
        self._directory = directory
        bus.on(MAIN_LOOP_EVENT, self.handle)

    async def handle(self, event: Event) -> None:
        event_type = event.data.get("type")
        text = event.data.get("text")
        if not event_type or not text:
            return
        updated = await self._directory.append_main_loop_event(
            event_type, text, user=event.data.get("user")
        )
        logger.debug("Relayed %s to %d main session(s)", event_type, updated)

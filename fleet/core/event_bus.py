"""Lightweight in-memory bus delivering agent and workflow events."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, List

from fleet.core.models import AgentEvent

logger = logging.getLogger(__name__)

EventListener = Callable[[AgentEvent], Awaitable[None]]


class EventBus:
    """Async event hub. Listeners are awaited in registration order."""

    def __init__(self) -> None:
        self._listeners: List[EventListener] = []
        self._subscribers: List[asyncio.Queue[AgentEvent]] = []
        self._lock = asyncio.Lock()

    def add_listener(self, listener: EventListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def publish(self, event: AgentEvent) -> None:
        """Deliver the event to every listener, then to every subscription queue."""
        logger.debug("event %s from %s", event.type.value, event.agent_id)
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception:  # noqa: BLE001
                # A broken listener must not stop delivery to the others.
                logger.exception("Event listener failed for %s", event.type.value)
        for queue in list(self._subscribers):
            await queue.put(event)

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[asyncio.Queue[AgentEvent]]:
        """Context manager yielding a queue that receives every published event."""
        queue: asyncio.Queue[AgentEvent] = asyncio.Queue()
        async with self._lock:
            self._subscribers.append(queue)
        try:
            yield queue
        finally:
            async with self._lock:
                if queue in self._subscribers:
                    self._subscribers.remove(queue)

"""In-process async event bus for Conjure.

Runs publish progress events (thinking, tool_call, tool_result, response,
done, error) through an EventSink. The bus queues them and dispatches to
registered handlers on a background task. Handler errors are isolated:
one broken handler never crashes the bus or blocks other handlers.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)

# Async callable receiving one Event
EventHandler = Callable[["Event"], Awaitable[None]]

# Handlers registered under this type receive every event
WILDCARD = "*"


@dataclass
class Event:
    """One progress notification from a run."""

    type: str
    thread_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "thread_id": self.thread_id,
            "data": self.data,
            "timestamp": int(self.timestamp.timestamp() * 1000),
        }


class EventSink(Protocol):
    def emit(self, event: Event) -> None: ...


class EventBus:
    """Queue-backed fan-out of run events to async handlers.

    emit() is synchronous and never waits: it enqueues, or drops the event
    with a warning when the queue is full. A background task feeds each
    event to its type handlers and the wildcard handlers at once; a failing
    handler is logged and the rest still run.
    """

    def __init__(self, max_queue: int = 1000):
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._worker: asyncio.Task | None = None

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe a handler to one event type, or to WILDCARD for all."""
        self._subscribers[event_type].append(handler)
        logger.debug("Subscribed %s to '%s'", handler.__qualname__, event_type)

    def off(self, event_type: str, handler: EventHandler) -> None:
        subscribers = self._subscribers.get(event_type, [])
        if handler in subscribers:
            subscribers.remove(handler)

    def emit(self, event: Event) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Dropping %s event for thread %s: queue full", event.type, event.thread_id)

    async def start(self) -> None:
        if self._worker is not None:
            return
        self._worker = asyncio.create_task(self._consume(), name="event-bus")
        logger.info("Event bus running (max queue %d)", self._queue.maxsize)

    async def stop(self) -> None:
        """Cancel the worker, then deliver whatever is still queued."""
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)
        drained = 0
        while not self._queue.empty():
            await self._deliver(self._queue.get_nowait())
            drained += 1
        logger.info("Event bus stopped (%d queued events delivered)", drained)

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            except Exception:
                logger.exception("Event bus failed delivering %s", event.type)

    async def _deliver(self, event: Event) -> None:
        handlers = [*self._subscribers.get(event.type, ()), *self._subscribers.get(WILDCARD, ())]
        if handlers:
            await asyncio.gather(*(self._call(handler, event) for handler in handlers))

    async def _call(self, handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Handler %s raised on %s event", handler.__qualname__, event.type)

    @property
    def pending(self) -> int:
        """Events queued but not yet delivered."""
        return self._queue.qsize()

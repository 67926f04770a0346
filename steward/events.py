"""In-process async event bus for diagnostic events.

Components emit events such as ``schedule_fired`` or ``task_dead_lettered``.
The bus dispatches them to registered handlers asynchronously -- chiefly the
mission loop, which folds them into every main session's pending events.
Handler errors are isolated: one broken handler never crashes the bus or
blocks other handlers.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from steward.utils import now_ms

logger = logging.getLogger(__name__)

# Handler type: async function taking an Event
EventHandler = Callable[["Event"], Awaitable[None]]

# Event types broadcast to main sessions as pending mission events.
DIAGNOSTIC_EVENT_TYPES: tuple[str, ...] = (
    "schedule_fired",
    "schedule_failed",
    "task_queued",
    "task_running",
    "task_completed",
    "task_failed",
    "task_retry_scheduled",
    "task_dead_lettered",
    "task_stall_recovered",
    "health_alert",
    "webhook_dead_lettered",
)


@dataclass
class Event:
    """A typed diagnostic event flowing through the bus."""

    type: str
    text: str
    data: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    user: str | None = None  # restricts broadcast to one user's main session
    timestamp: int = field(default_factory=now_ms)


class EventBus:
    """In-process async event bus with error isolation.

    Events are queued and processed by a background asyncio task.
    Handlers registered via on() are called concurrently for each event.
    Handler errors are logged but never propagate.
    """

    def __init__(self, max_queue: int = 1000):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None
        self._running = False

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for an event type. Can register multiple."""
        self._handlers[event_type].append(handler)
        logger.debug("Registered handler for '%s': %s", event_type, handler.__qualname__)

    def on_many(self, event_types: tuple[str, ...], handler: EventHandler) -> None:
        """Register one handler for several event types."""
        for event_type in event_types:
            self.on(event_type, handler)

    async def emit(self, event: Event) -> None:
        """Emit an event. Non-blocking, queued for async processing.

        If queue is full, logs warning and drops event (never blocks caller).
        """
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event bus queue full, dropping event: %s", event.type)

    async def start(self) -> None:
        """Start the background processing loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._process_loop(), name="event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop the bus, then drain remaining events."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            while not self._queue.empty():
                try:
                    event = self._queue.get_nowait()
                    await self._dispatch(event)
                except asyncio.QueueEmpty:
                    break
        logger.info("Event bus stopped")

    async def _process_loop(self) -> None:
        """Main processing loop, runs as a background task."""
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                await self._dispatch(event)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Unexpected error in event bus loop")

    async def _dispatch(self, event: Event) -> None:
        """Dispatch event to all registered handlers concurrently."""
        handlers = self._handlers.get(event.type, [])
        if not handlers:
            return
        await asyncio.gather(*(self._safe_handle(h, event) for h in handlers))

    async def _safe_handle(self, handler: EventHandler, event: Event) -> None:
        """Run handler with error isolation. Only CancelledError propagates."""
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Handler %s failed for event %s",
                handler.__qualname__,
                event.type,
            )

    @property
    def pending(self) -> int:
        """Number of events waiting in queue."""
        return self._queue.qsize()

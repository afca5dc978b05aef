"""Event bus: async pub/sub for SystemEvents.

Lifecycle code receives an EventBus instance explicitly and calls `emit`.
Events are queued and drained by a background worker so request handlers
are never blocked by slow subscribers. Subscriber failures are logged and
isolated; they never reach the emitter.

Usage:
    bus = EventBus()
    bus.subscribe(audit_on_event)
    await bus.start()

    await bus.emit(SystemEvent(
        event_type=EventType.SESSION_STARTED,
        session_id=session.id,
        data={"practitioner_id": str(practitioner_id)},
    ))

    await bus.stop()  # drains pending events
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from src.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

# Type alias for event handler functions
EventHandler = Callable[[SystemEvent], Coroutine[Any, Any, None]]


class EventBus:
    """In-process event dispatcher with global and per-type subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[EventHandler] = []
        self._type_subscribers: dict[EventType, list[EventHandler]] = {}
        self._queue: asyncio.Queue[SystemEvent] | None = None
        self._worker_task: asyncio.Task[None] | None = None

    # ── Subscription ─────────────────────────────────────────────────

    def subscribe(self, handler: EventHandler, event_types: list[EventType] | None = None) -> None:
        """Register an event handler.

        Args:
            handler: Async function that accepts a SystemEvent.
            event_types: If provided, handler only receives these event types.
                         If None, handler receives ALL events.
        """
        if event_types is None:
            self._subscribers.append(handler)
            logger.info("Registered global event subscriber: %s", handler.__name__)
            return

        for et in event_types:
            self._type_subscribers.setdefault(et, []).append(handler)
        logger.info(
            "Registered event subscriber %s for types: %s",
            handler.__name__,
            [t.value for t in event_types],
        )

    def unsubscribe(self, handler: EventHandler) -> None:
        """Remove a previously registered handler."""
        if handler in self._subscribers:
            self._subscribers.remove(handler)
        for handlers in self._type_subscribers.values():
            if handler in handlers:
                handlers.remove(handler)

    # ── Publishing ───────────────────────────────────────────────────

    async def emit(self, event: SystemEvent) -> None:
        """Queue an event for the background worker."""
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._ensure_worker()

        await self._queue.put(event)
        logger.debug("Event emitted: %s (session=%s)", event.event_type.value, event.session_id)

    async def emit_nowait(self, event: SystemEvent) -> None:
        """Dispatch directly, bypassing the queue. Used by tests and shutdown paths."""
        await self._dispatch(event)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Create the queue and start the worker. Call during app startup."""
        self._queue = asyncio.Queue()
        self._ensure_worker()
        logger.info(
            "Event bus started with %d global + %d typed subscribers",
            len(self._subscribers),
            sum(len(v) for v in self._type_subscribers.values()),
        )

    async def stop(self) -> None:
        """Drain pending events and stop the worker. Call during app shutdown."""
        if self._queue is not None and self._worker_task is not None and not self._worker_task.done():
            await self._queue.join()

        if self._worker_task is not None and not self._worker_task.done():
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass

        self._worker_task = None
        self._queue = None
        logger.info("Event bus stopped")

    # ── Internals ────────────────────────────────────────────────────

    def _ensure_worker(self) -> None:
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._worker())

    async def _worker(self) -> None:
        queue = self._queue
        if queue is None:
            return

        while True:
            try:
                event = await queue.get()
            except asyncio.CancelledError:
                break
            try:
                await self._dispatch(event)
            except Exception:
                logger.exception("Error in event worker")
            finally:
                queue.task_done()

    async def _dispatch(self, event: SystemEvent) -> None:
        handlers: list[EventHandler] = list(self._subscribers)
        handlers.extend(self._type_subscribers.get(event.event_type, []))
        if not handlers:
            return

        results = await asyncio.gather(
            *[handler(event) for handler in handlers],
            return_exceptions=True,
        )
        for handler, result in zip(handlers, results, strict=True):
            if isinstance(result, Exception):
                logger.error(
                    "Event handler %s failed for %s: %s",
                    handler.__name__,
                    event.event_type.value,
                    result,
                )

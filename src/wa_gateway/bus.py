"""bus.py — Typed event fan-out from the driver to the gateway's components.

The driver publishes DriverEvents. The lifecycle machine and the relay
subscribe to the types they care about. Neither side knows the other
exists, which is what lets tests inject synthetic events straight onto
the bus with no driver at all.

Handlers don't block the publisher: each one runs as its own task. A
handler that raises is logged and forgotten; the others still run.

Ordering: tasks start in the order events were published, so the
synchronous prefix of each handler (everything before its first await)
runs in publish order.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import logfire

from .driver import DriverEvent


Handler = Callable[[DriverEvent], Awaitable[None]]


class EventBus:
    """Fans driver events out to typed handlers.

    Usage:
        bus = EventBus()
        bus.subscribe(QrEvent, machine.on_qr)
        bus.publish(QrEvent(code="..."))
        await bus.drain()   # tests / shutdown
    """

    def __init__(self):
        self._handlers: list[tuple[type[DriverEvent], Handler]] = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    @property
    def pending(self) -> int:
        """Handler tasks still running."""
        return len(self._tasks)

    def subscribe(self, event_type: type[DriverEvent], handler: Handler) -> None:
        """Call handler for every published event that is an event_type."""
        self._handlers.append((event_type, handler))

    def unsubscribe(self, event_type: type[DriverEvent], handler: Handler) -> None:
        self._handlers.remove((event_type, handler))

    def publish(self, event: DriverEvent) -> int:
        """Dispatch an event to every matching handler.

        Sync, so the driver can call it straight from its read loop.
        Must be called with a running event loop.

        Returns:
            Number of handlers scheduled.
        """
        scheduled = 0
        for event_type, handler in self._handlers:
            if not isinstance(event, event_type):
                continue
            task = asyncio.create_task(self._safe_call(handler, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            scheduled += 1
        return scheduled

    async def drain(self) -> None:
        """Wait until every handler task (including ones they spawn
        through the bus) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _safe_call(self, handler: Handler, event: DriverEvent) -> None:
        """Run one handler so one bad handler doesn't kill the others."""
        try:
            await handler(event)
        except Exception as e:
            logfire.error(
                "Event handler {handler} failed on {event}: {error}",
                handler=getattr(handler, "__qualname__", repr(handler)),
                event=type(event).__name__,
                error=str(e),
            )

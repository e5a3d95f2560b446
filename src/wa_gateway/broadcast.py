"""Broadcaster — fan-out of status, QR, and contacts to live observers.

Each connected observer (a websocket on the push channel) gets its own
subscriber queue, so two browsers both see every event instead of
splitting them.

Unlike a replay log, reconnection here means "show me where things stand
now": subscribe() seeds the new queue with a snapshot built from the
current SessionState (status, the QR if one is pending, the contacts if
any are cached). Two observers joining at different times get the same
snapshot as long as nothing changed in between.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

from .state import SessionState, SessionStatus


class ContactsSource(Protocol):
    """The slice of ContactsProjection the broadcaster needs."""

    def request_refresh(self) -> None: ...

    async def wait_idle(self) -> None: ...


class Broadcaster:
    """Fan-out event distribution with snapshot replay.

    Usage:
        broadcaster = Broadcaster(state)

        # Producer side (lifecycle machine, contacts projection)
        broadcaster.publish("status", {"status": "connected", "info": {...}})

        # Consumer side (one per websocket)
        queue = broadcaster.subscribe()
        event = await queue.get()  # {"type": "status", "data": {...}, "id": 1}
        broadcaster.unsubscribe(queue)
    """

    def __init__(self, state: SessionState):
        self._state = state
        self._seq: int = 0
        self._subscribers: set[asyncio.Queue] = set()
        self._contacts: ContactsSource | None = None
        self._closed: bool = False

    @property
    def seq(self) -> int:
        """Current sequence number (last assigned)."""
        return self._seq

    @property
    def subscriber_count(self) -> int:
        """Number of active subscribers."""
        return len(self._subscribers)

    def bind_contacts(self, contacts: ContactsSource) -> None:
        """Wire in the projection used by request_contacts()."""
        self._contacts = contacts

    def publish(self, event_type: str, data: Any = None) -> int:
        """Publish an event to all subscribers.

        Sync, so it's safe to call from the middle of a state transition
        without yielding control.

        Args:
            event_type: "status", "qr", or "contacts"
            data: Event payload (dict, string, or list)

        Returns:
            The assigned sequence number.
        """
        if self._closed:
            return self._seq

        event = self._make_event(event_type, data)
        for queue in self._subscribers:
            queue.put_nowait(event)
        return self._seq

    def subscribe(self) -> asyncio.Queue:
        """Create a subscriber queue seeded with the current snapshot.

        Returns:
            An asyncio.Queue that receives the snapshot, then all future
            events. None sentinel signals shutdown.
        """
        queue: asyncio.Queue = asyncio.Queue()

        for event in self.snapshot():
            queue.put_nowait(event)

        self._subscribers.add(queue)

        if self._closed:
            queue.put_nowait(None)

        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        """Remove a subscriber. Idempotent."""
        self._subscribers.discard(queue)

    def snapshot(self) -> list[dict[str, Any]]:
        """The events a newly connected observer needs to catch up.

        Snapshot events carry the current sequence number instead of
        taking new ones, so replaying an unchanged state is idempotent.
        """
        state = self._state
        events = [self._make_event("status", state.status_payload(), advance=False)]
        if state.status is SessionStatus.QR_READY and state.qr:
            events.append(self._make_event("qr", state.qr, advance=False))
        if state.contacts:
            events.append(
                self._make_event("contacts", state.contacts_payload(), advance=False)
            )
        return events

    async def request_contacts(self, queue: asyncio.Queue) -> None:
        """Handle an observer's explicit contacts request.

        A non-empty cache is resent to that observer only. An empty cache
        while connected triggers a refresh, whose result goes out to every
        subscriber; this waits for that refresh to finish.
        """
        if self._state.contacts:
            queue.put_nowait(
                self._make_event(
                    "contacts", self._state.contacts_payload(), advance=False
                )
            )
        elif self._state.is_connected and self._contacts is not None:
            self._contacts.request_refresh()
            await self._contacts.wait_idle()

    def close(self) -> None:
        """Signal all subscribers to stop. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for queue in self._subscribers:
            queue.put_nowait(None)

    def _make_event(
        self, event_type: str, data: Any, advance: bool = True
    ) -> dict[str, Any]:
        if advance:
            self._seq += 1
        return {"type": event_type, "data": data, "id": self._seq}

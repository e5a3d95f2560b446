"""contacts.py — The recent-conversations projection.

A sorted list of direct (non-group) chats, newest activity first, rebuilt
wholesale from the driver whenever something suggests it changed: the
session became ready, a message arrived, an observer asked.

Readers never see a half-built list. The new tuple is assigned to
state.contacts in one step, and until then the old one stays put.
"""

from __future__ import annotations

import asyncio
from typing import Iterable

import logfire

from .broadcast import Broadcaster
from .driver import Chat, SessionDriver
from .state import ContactEntry, SessionState


def project(chats: Iterable[Chat]) -> tuple[ContactEntry, ...]:
    """Chats -> sorted ContactEntries. Pure.

    Groups are dropped. Name falls back from the chat's display name to
    the contact's push name to the bare number. Sorted by last message
    time, newest first; chats with no last message count as time 0.
    Ties keep their original order.
    """
    entries = []
    for chat in chats:
        if chat.is_group:
            continue
        last = chat.last_message
        entries.append(
            ContactEntry(
                id=chat.id,
                name=chat.name or chat.push_name or chat.user,
                phone=chat.user,
                is_group=chat.is_group,
                unread_count=chat.unread_count or 0,
                last_message=last.body if last else "",
                last_message_at=last.timestamp if last else None,
            )
        )
    # sorted() stays stable with reverse=True
    entries = sorted(entries, key=lambda e: e.last_message_at or 0, reverse=True)
    return tuple(entries)


class ContactsProjection:
    """Owns rebuilding state.contacts and announcing the result.

    request_refresh() is the fire-and-forget entry point. Overlapping
    requests collapse: while one rebuild runs, any number of new requests
    schedule exactly one more rebuild after it.
    """

    def __init__(
        self,
        state: SessionState,
        driver: SessionDriver,
        broadcaster: Broadcaster,
    ):
        self._state = state
        self._driver = driver
        self._broadcaster = broadcaster
        self._task: asyncio.Task | None = None
        self._rerun = False

    @property
    def refreshing(self) -> bool:
        return self._task is not None and not self._task.done()

    async def refresh(self) -> None:
        """Rebuild the cache now.

        Not connected: the cache is emptied and nothing is fetched.
        Fetch failure: logged, cache left as it was.
        """
        if not self._state.is_connected:
            self._state.contacts = ()
            return

        try:
            chats = await self._driver.get_chats()
            contacts = project(chats)
        except Exception as e:
            logfire.error("Error loading contacts: {error}", error=str(e))
            return

        if not self._state.is_connected:
            # Session went away mid-fetch; the disconnect already cleared the cache.
            return

        self._state.contacts = contacts
        self._broadcaster.publish("contacts", self._state.contacts_payload())
        logfire.debug("Contacts refreshed ({count})", count=len(contacts))

    def request_refresh(self) -> None:
        """Schedule a rebuild without waiting for it."""
        if self.refreshing:
            self._rerun = True
            return
        self._task = asyncio.create_task(self._run())

    async def wait_idle(self) -> None:
        """Wait for the in-flight rebuild (and its trailing rerun) to end."""
        while self.refreshing:
            await asyncio.shield(self._task)

    async def close(self) -> None:
        if self.refreshing:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._rerun = False

    async def _run(self) -> None:
        while True:
            self._rerun = False
            await self.refresh()
            if not self._rerun:
                return

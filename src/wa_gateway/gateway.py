"""gateway.py — Wires the components together around one SessionState.

The gateway composes:
  - EventBus: driver events in
  - LifecycleMachine: status transitions and recovery
  - ContactsProjection: the recent-conversations cache
  - EventRelay: webhook, read receipts, call rejection
  - Broadcaster: status/QR/contacts out to observers
  - CommandAPI: outbound operations for the HTTP layer

Usage:
    gateway = Gateway(Settings.from_env())
    await gateway.start()
    ...
    await gateway.stop()

Tests build it with a fake driver and an httpx client on a mock
transport, then push synthetic events onto gateway.bus.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import httpx
import logfire

from . import qr
from .bridge import BridgeDriver
from .broadcast import Broadcaster
from .bus import EventBus
from .commands import CommandAPI
from .config import Settings
from .contacts import ContactsProjection
from .driver import SessionDriver
from .lifecycle import LifecycleMachine
from .relay import EventRelay
from .state import SessionState


class Gateway:
    """The whole session bridge, minus the HTTP transport."""

    def __init__(
        self,
        settings: Settings | None = None,
        driver: SessionDriver | None = None,
        bus: EventBus | None = None,
        http_client: httpx.AsyncClient | None = None,
        render_qr: Callable[[str], str] = qr.render,
    ):
        self.settings = settings or Settings()
        self.state = SessionState()
        self.bus = bus or EventBus()
        self.driver = driver or BridgeDriver(self.bus, self.settings.bridge_url)

        self.broadcaster = Broadcaster(self.state)
        self.contacts = ContactsProjection(self.state, self.driver, self.broadcaster)
        self.broadcaster.bind_contacts(self.contacts)
        self.lifecycle = LifecycleMachine(
            self.state,
            self.driver,
            self.broadcaster,
            self.contacts,
            recovery_delay=self.settings.recovery_delay,
            render_qr=render_qr,
        )
        self.relay = EventRelay(
            self.state,
            self.driver,
            self.contacts,
            webhook_url=self.settings.webhook_url,
            http_client=http_client,
            timeout=self.settings.webhook_timeout,
        )
        self.commands = CommandAPI(self.state, self.driver, self.lifecycle)

        self.lifecycle.attach(self.bus)
        self.relay.attach(self.bus)

        self._start_task: asyncio.Task | None = None
        self._previous_handler: Any = None
        self._started = False

    async def start(self, initialize: bool = True) -> None:
        """Bring the gateway up.

        Driver initialization can take a while (it launches a browser), so
        it runs in the background; the HTTP surface is usable right away
        and reports "disconnected" until events arrive.
        """
        if self._started:
            return
        self._started = True

        loop = asyncio.get_running_loop()
        self._previous_handler = loop.get_exception_handler()
        loop.set_exception_handler(self._handle_loop_exception)

        await self.relay.start()
        logfire.info("Webhook target: {url}", url=self.settings.webhook_url)

        if initialize:
            self._start_task = asyncio.create_task(self.lifecycle.start())

    async def stop(self) -> None:
        """Tear everything down. Safe to call twice."""
        if not self._started:
            return
        self._started = False

        if self._start_task and not self._start_task.done():
            self._start_task.cancel()
            try:
                await self._start_task
            except asyncio.CancelledError:
                pass
        self._start_task = None

        self.broadcaster.close()
        await self.lifecycle.close()
        await self.contacts.close()
        await self.relay.close()
        await self.driver.close()

        asyncio.get_running_loop().set_exception_handler(self._previous_handler)
        logfire.info("Gateway stopped")

    async def settle(self) -> None:
        """Wait until event handlers, contacts refreshes and webhook
        deliveries have all run out."""
        while True:
            await self.bus.drain()
            await self.contacts.wait_idle()
            await self.relay.wait_deliveries()
            if not self.bus.pending and not self.contacts.refreshing:
                return

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        """Last line of defence: log, never crash."""
        error = context.get("exception")
        logfire.error(
            "Unhandled error: {message} {error}",
            message=context.get("message", ""),
            error=repr(error) if error else "",
        )

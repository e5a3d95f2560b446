"""lifecycle.py — The session's connection state machine.

Owns state.status and everything that hangs off it (info, QR, contacts
on disconnect). Transitions are driven by driver events off the bus,
plus two entry points of our own: start() and reset().

    any ──qr──────────▶ qr_ready
    any ──authenticated▶ authenticated
    any ──ready────────▶ connected        (info, contacts refresh)
    any ──auth_failure─▶ auth_failure
    any ──disconnected─▶ disconnected     (clear, then recover)
    start() fails ─────▶ auth_failure     ("Browser Launch Failed: ...")
    reset() ───────────▶ disconnected     (clear, logout, initialize)

Every handler makes its state change before its first await, so a
transition is never half-applied when another handler gets to run.

Recovery after an unsolicited disconnect: logout (errors ignored), wait
recovery_delay so the old browser lets go of the session storage, then
initialize once. Any newer session event, a reset, or shutdown cancels
a recovery that hasn't reached initialize yet. A disconnect that arrives
while a recovery is pending (its own logout reports one) clears state
but doesn't start another.
"""

from __future__ import annotations

import asyncio
from typing import Callable

import logfire

from . import qr
from .broadcast import Broadcaster
from .bus import EventBus
from .contacts import ContactsProjection
from .driver import (
    AuthenticatedEvent,
    AuthFailureEvent,
    DisconnectedEvent,
    QrEvent,
    ReadyEvent,
    SessionDriver,
)
from .state import SessionInfo, SessionState, SessionStatus


class LifecycleMachine:
    """Drives SessionStatus from driver events."""

    def __init__(
        self,
        state: SessionState,
        driver: SessionDriver,
        broadcaster: Broadcaster,
        contacts: ContactsProjection,
        recovery_delay: float = 1.0,
        render_qr: Callable[[str], str] = qr.render,
    ):
        self._state = state
        self._driver = driver
        self._broadcaster = broadcaster
        self._contacts = contacts
        self._recovery_delay = recovery_delay
        self._render_qr = render_qr

        self._epoch = 0
        self._resetting = False
        self._recovery_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self.failure_message: str | None = None

    @property
    def recovery_pending(self) -> bool:
        """True while a recovery is waiting to re-initialize."""
        return self._recovery_task is not None and not self._recovery_task.done()

    def attach(self, bus: EventBus) -> None:
        """Subscribe the transition handlers to the bus."""
        bus.subscribe(QrEvent, self.on_qr)
        bus.subscribe(AuthenticatedEvent, self.on_authenticated)
        bus.subscribe(ReadyEvent, self.on_ready)
        bus.subscribe(AuthFailureEvent, self.on_auth_failure)
        bus.subscribe(DisconnectedEvent, self.on_disconnected)

    # -- Entry points ---------------------------------------------------------

    async def start(self) -> None:
        """Initialize the driver for the first time.

        Never raises. A failure parks the session in auth_failure until
        someone resets it.
        """
        logfire.info("Initializing session driver")
        try:
            await self._driver.initialize()
        except Exception as e:
            logfire.error("Failed to initialize session driver: {error}", error=str(e))
            self._fail(f"Browser Launch Failed: {e}")

    async def reset(self) -> None:
        """Operator reset: clear to disconnected, logout, initialize.

        State is cleared before anything is awaited, so callers see the
        disconnected baseline as soon as this starts. Driver errors
        propagate; the state stays disconnected.
        """
        with logfire.span("lifecycle.reset", previous=self._state.status.value):
            self._cancel_recovery()
            self._enter_disconnected()
            self._resetting = True
            try:
                await self._driver.logout()
                await self._driver.initialize()
            finally:
                self._resetting = False

    async def close(self) -> None:
        """Cancel pending recovery and any background work."""
        self._cancel_recovery()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    # -- Transitions ----------------------------------------------------------

    async def on_qr(self, event: QrEvent) -> None:
        logfire.info("QR code received")
        try:
            image = self._render_qr(event.code)
        except Exception as e:
            logfire.error("Error generating QR code: {error}", error=str(e))
            return

        self._cancel_recovery()
        self._advance(SessionStatus.QR_READY)
        self._state.qr = image
        self._broadcaster.publish("qr", image)
        self._broadcaster.publish("status", self._state.status_payload())

    async def on_authenticated(self, event: AuthenticatedEvent) -> None:
        logfire.info("Authenticated")
        self._cancel_recovery()
        self._advance(SessionStatus.AUTHENTICATED)
        self._state.qr = None
        self._broadcaster.publish("status", self._state.status_payload())

    async def on_ready(self, event: ReadyEvent) -> None:
        logfire.info("Session ready ({wid})", wid=event.wid)
        self._cancel_recovery()
        epoch = self._advance(SessionStatus.CONNECTED)
        self._state.qr = None

        profile_pic_url = ""
        if event.wid:
            try:
                profile_pic_url = await self._driver.get_profile_pic_url(event.wid) or ""
            except Exception as e:
                logfire.warning("Error getting profile pic: {error}", error=str(e))

        if epoch != self._epoch:
            # Another transition happened while we were fetching.
            return

        self._state.info = SessionInfo(
            wid=event.wid,
            pushname=event.pushname,
            platform=event.platform,
            profile_pic_url=profile_pic_url,
        )
        self._broadcaster.publish("status", self._state.status_payload())
        self._contacts.request_refresh()

    async def on_auth_failure(self, event: AuthFailureEvent) -> None:
        logfire.error("Authentication failure: {message}", message=event.message)
        self._fail(event.message)

    async def on_disconnected(self, event: DisconnectedEvent) -> None:
        logfire.warning("Client was logged out: {reason}", reason=event.reason)
        self._enter_disconnected()
        if self._resetting or self.recovery_pending:
            # reset() or the pending recovery already does logout + initialize.
            # Recovery's own logout lands here too.
            return
        self._schedule_recovery()

    # -- Internals ------------------------------------------------------------

    def _advance(self, status: SessionStatus) -> int:
        """Switch status and bump the epoch. Returns the new epoch."""
        self._epoch += 1
        self._state.status = status
        if status is not SessionStatus.AUTH_FAILURE:
            self.failure_message = None
        return self._epoch

    def _fail(self, message: str) -> None:
        self._advance(SessionStatus.AUTH_FAILURE)
        self.failure_message = message
        payload = self._state.status_payload()
        payload["message"] = message
        self._broadcaster.publish("status", payload)

    def _enter_disconnected(self) -> None:
        self._epoch += 1
        self._state.clear_session()
        self.failure_message = None
        self._broadcaster.publish("status", self._state.status_payload())

    def _schedule_recovery(self) -> None:
        self._cancel_recovery()
        task = asyncio.create_task(self._recover())
        self._recovery_task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _cancel_recovery(self) -> None:
        if self.recovery_pending:
            self._recovery_task.cancel()
            logfire.debug("Pending recovery cancelled")
        self._recovery_task = None

    async def _recover(self) -> None:
        """logout -> delay -> initialize, once."""
        try:
            await self._driver.logout()
        except Exception as e:
            logfire.debug("Logout before reinitialize failed: {error}", error=str(e))

        await asyncio.sleep(self._recovery_delay)

        # Past this point a newer event no longer cancels us.
        if self._recovery_task is asyncio.current_task():
            self._recovery_task = None
        with logfire.span("lifecycle.recover"):
            try:
                await self._driver.initialize()
            except Exception as e:
                logfire.error("Error during client reinitialize: {error}", error=str(e))

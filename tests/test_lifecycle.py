"""Tests for lifecycle.py — the connection state machine.

Events go onto the bus exactly as the driver would publish them; the
FakeDriver records what the machine asks of it.
"""

import asyncio

import pytest

from wa_gateway.config import Settings
from wa_gateway.driver import (
    AuthenticatedEvent,
    AuthFailureEvent,
    DisconnectedEvent,
    QrEvent,
    ReadyEvent,
)
from wa_gateway.errors import DriverError
from wa_gateway.state import ContactEntry, SessionInfo, SessionStatus

from conftest import WEBHOOK_URL


READY = ReadyEvent(wid="6280000@c.us", pushname="Gateway", platform="android")


async def publish(gateway, *events):
    for event in events:
        gateway.bus.publish(event)
    await gateway.settle()


def drain_queue(queue: asyncio.Queue) -> list[dict]:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


# -- Transitions --------------------------------------------------------------


class TestTransitions:
    def test_starts_disconnected(self, make_gateway):
        gateway = make_gateway()
        assert gateway.state.status is SessionStatus.DISCONNECTED
        assert gateway.state.info is None
        assert gateway.state.qr is None

    @pytest.mark.asyncio
    async def test_qr_stores_challenge_and_notifies(self, make_gateway):
        gateway = make_gateway()
        queue = gateway.broadcaster.subscribe()
        drain_queue(queue)  # initial snapshot

        await publish(gateway, QrEvent(code="abc"))

        assert gateway.state.status is SessionStatus.QR_READY
        assert gateway.state.qr == "data:image/png;base64,abc"
        events = drain_queue(queue)
        assert [e["type"] for e in events] == ["qr", "status"]
        assert events[0]["data"] == "data:image/png;base64,abc"
        assert events[1]["data"]["status"] == "qr_ready"

    @pytest.mark.asyncio
    async def test_new_qr_supersedes_old(self, make_gateway):
        gateway = make_gateway()
        await publish(gateway, QrEvent(code="first"), QrEvent(code="second"))
        assert gateway.state.qr == "data:image/png;base64,second"

    @pytest.mark.asyncio
    async def test_authenticated_clears_qr(self, make_gateway):
        gateway = make_gateway()
        await publish(gateway, QrEvent(code="abc"), AuthenticatedEvent())

        assert gateway.state.status is SessionStatus.AUTHENTICATED
        assert gateway.state.qr is None

    @pytest.mark.asyncio
    async def test_ready_populates_info(self, make_gateway, driver):
        gateway = make_gateway()
        await publish(gateway, AuthenticatedEvent(), READY)

        assert gateway.state.status is SessionStatus.CONNECTED
        assert gateway.state.info == SessionInfo(
            wid="6280000@c.us",
            pushname="Gateway",
            platform="android",
            profile_pic_url="https://pps.example/me.jpg",
        )
        assert driver.called("get_profile_pic_url") == [("6280000@c.us",)]

    @pytest.mark.asyncio
    async def test_ready_survives_profile_pic_failure(self, make_gateway, driver):
        driver.fail["get_profile_pic_url"] = DriverError("no picture")
        gateway = make_gateway()

        await publish(gateway, READY)

        assert gateway.state.status is SessionStatus.CONNECTED
        assert gateway.state.info is not None
        assert gateway.state.info.profile_pic_url == ""

    @pytest.mark.asyncio
    async def test_ready_triggers_contacts_refresh(self, make_gateway, driver, sample_chats):
        driver.chats = sample_chats
        gateway = make_gateway()

        await publish(gateway, READY)

        assert driver.called("get_chats")
        assert [c.id for c in gateway.state.contacts] == ["333@c.us", "111@c.us", "222@c.us"]

    @pytest.mark.asyncio
    async def test_ready_status_excludes_private_fields(self, make_gateway):
        gateway = make_gateway()
        queue = gateway.broadcaster.subscribe()
        drain_queue(queue)

        await publish(gateway, ReadyEvent(raw={"me": {"secret": "x"}}, wid="1@c.us"))

        statuses = [e for e in drain_queue(queue) if e["type"] == "status"]
        info = statuses[-1]["data"]["info"]
        assert set(info) == {"wid", "pushname", "platform", "profilePicUrl"}

    @pytest.mark.asyncio
    async def test_auth_failure_carries_message(self, make_gateway):
        gateway = make_gateway()
        queue = gateway.broadcaster.subscribe()
        drain_queue(queue)

        await publish(gateway, AuthFailureEvent(message="bad creds"))

        assert gateway.state.status is SessionStatus.AUTH_FAILURE
        event = drain_queue(queue)[-1]
        assert event["data"]["status"] == "auth_failure"
        assert event["data"]["message"] == "bad creds"

    @pytest.mark.asyncio
    async def test_disconnect_clears_everything(self, make_gateway, driver, sample_chats):
        driver.chats = sample_chats
        gateway = make_gateway()
        await publish(gateway, READY)
        assert gateway.state.contacts

        await publish(gateway, DisconnectedEvent(reason="LOGOUT"))

        assert gateway.state.status is SessionStatus.DISCONNECTED
        assert gateway.state.info is None
        assert gateway.state.qr is None
        assert gateway.state.contacts == ()
        await gateway.lifecycle.close()

    @pytest.mark.asyncio
    async def test_disconnect_keeps_behavior_config(self, make_gateway):
        gateway = make_gateway()
        gateway.state.config.mark_read = True

        await publish(gateway, DisconnectedEvent())

        assert gateway.state.config.mark_read is True
        await gateway.lifecycle.close()


# -- Ordering -----------------------------------------------------------------


SEQUENCES = [
    ([QrEvent(code="a")], SessionStatus.QR_READY),
    ([QrEvent(code="a"), AuthenticatedEvent()], SessionStatus.AUTHENTICATED),
    ([QrEvent(code="a"), AuthenticatedEvent(), READY], SessionStatus.CONNECTED),
    ([AuthenticatedEvent(), READY, DisconnectedEvent()], SessionStatus.DISCONNECTED),
    ([READY, AuthFailureEvent(message="x")], SessionStatus.AUTH_FAILURE),
    ([AuthFailureEvent(message="x"), QrEvent(code="b")], SessionStatus.QR_READY),
    ([DisconnectedEvent(), QrEvent(code="c"), AuthenticatedEvent()], SessionStatus.AUTHENTICATED),
]


class TestOrdering:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("events,expected", SEQUENCES)
    async def test_final_status_is_last_transition(self, make_gateway, events, expected):
        gateway = make_gateway(settings=Settings(webhook_url=WEBHOOK_URL, recovery_delay=5))
        await publish(gateway, *events)
        assert gateway.state.status is expected
        await gateway.lifecycle.close()


# -- Recovery -----------------------------------------------------------------


class TestRecovery:
    @pytest.mark.asyncio
    async def test_disconnect_logs_out_then_reinitializes(self, make_gateway, driver):
        gateway = make_gateway()

        await publish(gateway, DisconnectedEvent(reason="NAVIGATION"))
        await asyncio.sleep(0.05)

        names = [name for name, _ in driver.calls]
        assert names == ["logout", "initialize"]
        assert not gateway.lifecycle.recovery_pending

    @pytest.mark.asyncio
    async def test_logout_failure_is_ignored(self, make_gateway, driver):
        driver.fail["logout"] = DriverError("already logged out")
        gateway = make_gateway()

        await publish(gateway, DisconnectedEvent())
        await asyncio.sleep(0.05)

        assert driver.called("initialize") == [()]

    @pytest.mark.asyncio
    async def test_reinitialize_failure_leaves_disconnected(self, make_gateway, driver):
        driver.fail["initialize"] = DriverError("browser crashed")
        gateway = make_gateway()

        await publish(gateway, DisconnectedEvent())
        await asyncio.sleep(0.05)

        assert len(driver.called("initialize")) == 1  # no retry loop
        assert gateway.state.status is SessionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_logout_reporting_disconnect_does_not_restart_recovery(self, make_gateway, driver):
        gateway = make_gateway()
        logouts = 0

        async def logout():
            nonlocal logouts
            logouts += 1
            # The real client reports its own logout as a disconnect.
            gateway.bus.publish(DisconnectedEvent(reason="LOGOUT"))

        driver.logout = logout

        await publish(gateway, DisconnectedEvent(reason="NAVIGATION"))
        await asyncio.sleep(0.1)
        await gateway.settle()

        assert logouts == 1
        assert driver.called("initialize") == [()]
        assert not gateway.lifecycle.recovery_pending
        assert gateway.state.status is SessionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_after_recovery_reinitialized_recovers_again(self, make_gateway, driver):
        gateway = make_gateway()

        await publish(gateway, DisconnectedEvent())
        await asyncio.sleep(0.05)
        await publish(gateway, DisconnectedEvent())
        await asyncio.sleep(0.05)

        assert len(driver.called("initialize")) == 2

    @pytest.mark.asyncio
    async def test_new_session_event_cancels_pending_recovery(self, make_gateway, driver):
        gateway = make_gateway(settings=Settings(webhook_url=WEBHOOK_URL, recovery_delay=5))

        await publish(gateway, DisconnectedEvent())
        assert gateway.lifecycle.recovery_pending

        await publish(gateway, QrEvent(code="fresh"))
        await asyncio.sleep(0)

        assert not gateway.lifecycle.recovery_pending
        assert driver.called("initialize") == []
        assert gateway.state.status is SessionStatus.QR_READY

    @pytest.mark.asyncio
    async def test_close_cancels_pending_recovery(self, make_gateway, driver):
        gateway = make_gateway(settings=Settings(webhook_url=WEBHOOK_URL, recovery_delay=5))
        await publish(gateway, DisconnectedEvent())

        await gateway.lifecycle.close()

        assert not gateway.lifecycle.recovery_pending
        assert driver.called("initialize") == []


# -- start() ------------------------------------------------------------------


class TestStart:
    @pytest.mark.asyncio
    async def test_start_initializes_driver(self, make_gateway, driver):
        gateway = make_gateway()
        await gateway.lifecycle.start()
        assert driver.called("initialize") == [()]
        assert gateway.state.status is SessionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_start_failure_parks_in_auth_failure(self, make_gateway, driver):
        driver.fail["initialize"] = DriverError("chrome not found")
        gateway = make_gateway()
        queue = gateway.broadcaster.subscribe()
        drain_queue(queue)

        await gateway.lifecycle.start()

        assert gateway.state.status is SessionStatus.AUTH_FAILURE
        assert gateway.lifecycle.failure_message == "Browser Launch Failed: chrome not found"
        assert drain_queue(queue)[-1]["data"]["message"].startswith("Browser Launch Failed")


# -- reset() ------------------------------------------------------------------


class TestReset:
    @pytest.mark.asyncio
    async def test_reset_while_connected_clears_state(self, make_gateway, driver, sample_chats):
        driver.chats = sample_chats
        gateway = make_gateway()
        await publish(gateway, READY)
        assert gateway.state.info is not None
        assert gateway.state.contacts
        driver.calls.clear()

        await gateway.lifecycle.reset()

        assert gateway.state.status is SessionStatus.DISCONNECTED
        assert gateway.state.info is None
        assert gateway.state.contacts == ()
        assert [name for name, _ in driver.calls] == ["logout", "initialize"]

    @pytest.mark.asyncio
    async def test_reset_clears_before_driver_returns(self, make_gateway, driver):
        gateway = make_gateway()
        gateway.state.status = SessionStatus.CONNECTED
        gateway.state.info = SessionInfo(wid="1@c.us")
        gateway.state.contacts = (ContactEntry(id="1@c.us", name="a", phone="1"),)

        seen = {}

        async def logout():
            seen["status"] = gateway.state.status
            seen["contacts"] = gateway.state.contacts

        driver.logout = logout
        await gateway.lifecycle.reset()

        assert seen == {"status": SessionStatus.DISCONNECTED, "contacts": ()}

    @pytest.mark.asyncio
    async def test_reset_error_propagates_and_stays_disconnected(self, make_gateway, driver):
        driver.fail["logout"] = DriverError("logout failed")
        gateway = make_gateway()
        gateway.state.status = SessionStatus.CONNECTED

        with pytest.raises(DriverError):
            await gateway.lifecycle.reset()

        assert gateway.state.status is SessionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_during_reset_does_not_schedule_recovery(self, make_gateway, driver):
        gateway = make_gateway(settings=Settings(webhook_url=WEBHOOK_URL, recovery_delay=5))

        async def logout():
            # The real client reports its own logout as a disconnect.
            gateway.bus.publish(DisconnectedEvent(reason="LOGOUT"))
            await gateway.bus.drain()

        driver.logout = logout
        await gateway.lifecycle.reset()

        assert not gateway.lifecycle.recovery_pending
        assert driver.called("initialize") == [()]

    @pytest.mark.asyncio
    async def test_reset_cancels_pending_recovery(self, make_gateway, driver):
        gateway = make_gateway(settings=Settings(webhook_url=WEBHOOK_URL, recovery_delay=5))
        await publish(gateway, DisconnectedEvent())
        assert gateway.lifecycle.recovery_pending

        await gateway.lifecycle.reset()

        assert not gateway.lifecycle.recovery_pending
        assert len(driver.called("initialize")) == 1

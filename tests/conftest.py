"""Shared test fixtures for wa_gateway.

FakeDriver stands in for the browser bridge: it records every command,
returns canned data, and fails on demand. Events are injected straight
onto the gateway's bus, the same way the real driver publishes them.
"""

from __future__ import annotations

from typing import Any

import httpx
import logfire
import pytest

from wa_gateway.config import Settings
from wa_gateway.driver import Chat, ChatMessage, Contact
from wa_gateway.errors import DriverError
from wa_gateway.gateway import Gateway


logfire.configure(send_to_logfire=False, console=False)


# -- Fake driver --------------------------------------------------------------


class FakeDriver:
    """SessionDriver that records calls.

    fail: command name -> exception to raise when it's called.
    """

    def __init__(self):
        self.calls: list[tuple[str, tuple]] = []
        self.fail: dict[str, Exception] = {}
        self.chats: list[Chat] = []
        self.contacts: dict[str, Contact] = {}
        self.numbers: dict[str, str] = {}
        self.profile_pic_url: str | None = "https://pps.example/me.jpg"
        self.send_ack: dict[str, Any] = {"id": "msg-1", "ack": 1}

    def called(self, name: str) -> list[tuple]:
        return [args for call, args in self.calls if call == name]

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, args))
        if name in self.fail:
            raise self.fail[name]

    async def initialize(self) -> None:
        self._record("initialize")

    async def logout(self) -> None:
        self._record("logout")

    async def get_profile_pic_url(self, wid: str) -> str | None:
        self._record("get_profile_pic_url", wid)
        return self.profile_pic_url

    async def get_chats(self) -> list[Chat]:
        self._record("get_chats")
        return list(self.chats)

    async def get_contact(self, contact_id: str) -> Contact | None:
        self._record("get_contact", contact_id)
        return self.contacts.get(contact_id)

    async def get_number_id(self, number: str) -> str | None:
        self._record("get_number_id", number)
        return self.numbers.get(number)

    async def send_message(self, chat_id: str, body: str) -> dict[str, Any]:
        self._record("send_message", chat_id, body)
        return self.send_ack

    async def send_seen(self, chat_id: str) -> None:
        self._record("send_seen", chat_id)

    async def send_presence(self, chat_id: str, state: str) -> None:
        self._record("send_presence", chat_id, state)

    async def reject_call(self, call_id: str) -> None:
        self._record("reject_call", call_id)

    async def close(self) -> None:
        self._record("close")


class WebhookRecorder:
    """httpx MockTransport handler that records webhook POSTs."""

    def __init__(self, status: int = 200, error: Exception | None = None):
        self.status = status
        self.error = error
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status, json={"ok": self.status < 400})


# -- Fixtures -----------------------------------------------------------------


WEBHOOK_URL = "https://hooks.example/inbound"


def fake_qr(code: str) -> str:
    return f"data:image/png;base64,{code}"


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
def webhook():
    return WebhookRecorder()


@pytest.fixture
def settings():
    return Settings(webhook_url=WEBHOOK_URL, recovery_delay=0.01)


@pytest.fixture
def make_gateway(driver, webhook, settings):
    """Build a Gateway around the fake driver and recorded webhook."""

    def _make(**overrides) -> Gateway:
        client = httpx.AsyncClient(transport=httpx.MockTransport(overrides.pop("webhook", webhook)))
        return Gateway(
            settings=overrides.pop("settings", settings),
            driver=overrides.pop("driver", driver),
            http_client=client,
            render_qr=fake_qr,
        )

    return _make


@pytest.fixture
def sample_chats():
    """Three direct chats and one group, deliberately out of order."""
    return [
        Chat(
            id="111@c.us", user="111", name="Alice", unread_count=2,
            last_message=ChatMessage(body="hi", timestamp=1700000100),
        ),
        Chat(
            id="222@c.us", user="222", name="", push_name="Bob",
            last_message=None,
        ),
        Chat(
            id="group-1@g.us", user="group-1", name="Team", is_group=True,
            last_message=ChatMessage(body="standup", timestamp=1700000999),
        ),
        Chat(
            id="333@c.us", user="333",
            last_message=ChatMessage(body="latest", timestamp=1700000500),
        ),
    ]


@pytest.fixture
def sample_ready_frame():
    """A ready event as the bridge sends it."""
    return {
        "type": "event",
        "event": "ready",
        "payload": {
            "info": {
                "wid": {"server": "c.us", "user": "6280000", "_serialized": "6280000@c.us"},
                "pushname": "Gateway",
                "platform": "android",
                "me": {"secret": "do-not-leak"},
            }
        },
    }


@pytest.fixture
def sample_message_frame():
    """An inbound message event as the bridge sends it."""
    return {
        "type": "event",
        "event": "message",
        "payload": {
            "id": {"_serialized": "false_6281234@c.us_ABC"},
            "from": "6281234@c.us",
            "body": "Hello there",
            "notifyName": "Citra",
            "timestamp": 1700000123,
            "isStatus": False,
        },
    }

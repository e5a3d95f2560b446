"""driver.py — The session driver's interface, its events, and its records.

The driver is the external thing that actually holds the messaging
session (a browser running the web client). The gateway never talks to
the browser directly. It calls SessionDriver commands and listens to the
events the driver publishes on the bus.

Event flow:
    bridge frame (dict) -> parse_event() -> typed Event -> EventBus

parse_event is the single point where the wire protocol maps to our type
system. Everything downstream only sees the dataclasses below.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import logfire


# -- Events -------------------------------------------------------------------


@dataclass
class DriverEvent:
    """Base event from the session driver."""

    raw: dict = field(default_factory=dict)


@dataclass
class QrEvent(DriverEvent):
    """A fresh login challenge. Supersedes any previous one."""

    code: str = ""


@dataclass
class AuthenticatedEvent(DriverEvent):
    """Credentials accepted. The session isn't usable yet."""


@dataclass
class ReadyEvent(DriverEvent):
    """Session fully loaded and usable.

    raw keeps the driver's whole account record; only the fields below
    are ever exposed (see state.SessionInfo).
    """

    wid: str = ""
    pushname: str = ""
    platform: str = ""


@dataclass
class AuthFailureEvent(DriverEvent):
    message: str = ""


@dataclass
class DisconnectedEvent(DriverEvent):
    reason: str = ""


@dataclass
class MessageEvent(DriverEvent):
    """An inbound message.

    sender is the raw sender id ("6281234@c.us"). chat_id is the
    conversation it arrived in; for direct chats it equals sender.
    """

    id: str = ""
    sender: str = ""
    chat_id: str = ""
    body: str = ""
    notify_name: str = ""
    timestamp: int = 0
    is_status: bool = False


@dataclass
class CallEvent(DriverEvent):
    """An inbound call offer."""

    id: str = ""
    sender: str = ""


# -- Records ------------------------------------------------------------------
# What driver queries return. Plain data, no behavior.


@dataclass
class ChatMessage:
    body: str = ""
    timestamp: int | None = None


@dataclass
class Chat:
    """A conversation as listed by the driver.

    user is the bare numeric part of the id ("6281234" for
    "6281234@c.us").
    """

    id: str
    user: str = ""
    name: str = ""
    is_group: bool = False
    unread_count: int = 0
    push_name: str = ""
    last_message: ChatMessage | None = None


@dataclass
class Contact:
    id: str
    number: str = ""
    pushname: str = ""


# -- Driver protocol ----------------------------------------------------------


PRESENCE_STATES = ("typing", "recording", "clear")


class SessionDriver(Protocol):
    """Commands the gateway issues against the session.

    Every method may raise errors.DriverError when the driver rejects the
    command. Query methods that can legitimately find nothing return None
    instead of raising.
    """

    async def initialize(self) -> None:
        """Start (or restart) the client. Events follow on the bus."""
        ...

    async def logout(self) -> None:
        """Log out and release the session storage."""
        ...

    async def get_profile_pic_url(self, wid: str) -> str | None: ...

    async def get_chats(self) -> list[Chat]: ...

    async def get_contact(self, contact_id: str) -> Contact | None: ...

    async def get_number_id(self, number: str) -> str | None:
        """Resolve a phone number to a serialized chat id, or None."""
        ...

    async def send_message(self, chat_id: str, body: str) -> dict[str, Any]:
        """Send a text message. Returns the driver's acknowledgment."""
        ...

    async def send_seen(self, chat_id: str) -> None: ...

    async def send_presence(self, chat_id: str, state: str) -> None:
        """Set typing/recording/clear in a conversation."""
        ...

    async def reject_call(self, call_id: str) -> None: ...

    async def close(self) -> None: ...


# -- Wire parsing -------------------------------------------------------------


def serialized_id(value: Any) -> str:
    """Ids arrive either as strings or as {"_serialized": "..."} objects."""
    if isinstance(value, dict):
        return str(value.get("_serialized", ""))
    return str(value) if value is not None else ""


def parse_event(name: str, payload: dict | None) -> DriverEvent:
    """Parse a named driver event into a typed DriverEvent.

    Unknown names come back as a bare DriverEvent so nothing downstream
    has to special-case them.
    """
    payload = payload or {}

    if name == "qr":
        return QrEvent(raw=payload, code=str(payload.get("qr", "")))

    elif name == "authenticated":
        return AuthenticatedEvent(raw=payload)

    elif name == "ready":
        info = payload.get("info", {}) or {}
        return ReadyEvent(
            raw=payload,
            wid=serialized_id(info.get("wid")),
            pushname=info.get("pushname", "") or "",
            platform=info.get("platform", "") or "",
        )

    elif name == "auth_failure":
        return AuthFailureEvent(raw=payload, message=str(payload.get("message", "")))

    elif name == "disconnected":
        return DisconnectedEvent(raw=payload, reason=str(payload.get("reason", "")))

    elif name == "message":
        sender = serialized_id(payload.get("from"))
        return MessageEvent(
            raw=payload,
            id=serialized_id(payload.get("id")),
            sender=sender,
            chat_id=serialized_id(payload.get("chatId")) or sender,
            body=payload.get("body", "") or "",
            notify_name=payload.get("notifyName", "") or "",
            timestamp=int(payload.get("timestamp") or 0),
            is_status=bool(payload.get("isStatus", False)),
        )

    elif name == "call":
        return CallEvent(
            raw=payload,
            id=serialized_id(payload.get("id")),
            sender=serialized_id(payload.get("from")),
        )

    else:
        return DriverEvent(raw=payload)


def parse_chat(raw: dict) -> Chat:
    """Map a chat record from the wire into a Chat."""
    chat_id = serialized_id(raw.get("id"))
    last = raw.get("lastMessage")
    contact = raw.get("contact") or {}
    return Chat(
        id=chat_id,
        user=raw.get("user") or chat_id.split("@", 1)[0],
        name=raw.get("name", "") or "",
        is_group=bool(raw.get("isGroup", False)),
        unread_count=int(raw.get("unreadCount") or 0),
        push_name=contact.get("pushname", "") or "",
        last_message=(
            ChatMessage(body=last.get("body", "") or "", timestamp=last.get("timestamp"))
            if isinstance(last, dict)
            else None
        ),
    )


# -- Transient error interceptor ----------------------------------------------
# The browser client occasionally loses its page context mid-injection when
# the web app navigates. The next navigation re-injects, so this one failure
# is expected to heal by itself. Only messages on this list are swallowed.

TRANSIENT_ERRORS = ("Execution context was destroyed",)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    message = str(exc)
    return any(marker in message for marker in TRANSIENT_ERRORS)


def ignore_transient(
    func: Callable[..., Awaitable[T]],
) -> Callable[..., Awaitable[T | None]]:
    """Swallow allow-listed transient errors from an async driver call.

    A matching failure is logged and the call returns None. Everything
    else propagates unchanged.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_transient(e):
                raise
            logfire.warning(
                "Ignored transient navigation error in {call}, will retry on next navigation",
                call=func.__name__,
            )
            return None

    return wrapper

"""state.py — The one session-state aggregate.

Everything process-wide about the single supported session lives here:
canonical status, identity, the active login challenge, behavior flags,
and the recent-contacts projection. Components receive the same
SessionState by reference through their constructors; nothing is a
module global.

Only the lifecycle machine writes `status`. Everyone else reads it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# -- Status -------------------------------------------------------------------


class SessionStatus(str, Enum):
    """Canonical connection status. Exactly one is active at a time."""

    DISCONNECTED = "disconnected"
    QR_READY = "qr_ready"
    AUTHENTICATED = "authenticated"
    CONNECTED = "connected"
    AUTH_FAILURE = "auth_failure"


# -- Records ------------------------------------------------------------------


@dataclass(frozen=True)
class SessionInfo:
    """Stable identity of the logged-in account. Only set while connected."""

    wid: str
    pushname: str = ""
    platform: str = ""
    profile_pic_url: str = ""

    def to_public(self) -> dict[str, Any]:
        """Wire form. Only these four fields ever leave the process."""
        return {
            "wid": self.wid,
            "pushname": self.pushname,
            "platform": self.platform,
            "profilePicUrl": self.profile_pic_url,
        }


@dataclass
class BehaviorConfig:
    """Flags read by the relay on every inbound event."""

    reject_calls: bool = False
    mark_read: bool = False

    def to_wire(self) -> dict[str, bool]:
        return {"rejectCall": self.reject_calls, "markRead": self.mark_read}


@dataclass(frozen=True)
class ContactEntry:
    """One row of the recent-conversations projection."""

    id: str
    name: str
    phone: str
    is_group: bool = False
    unread_count: int = 0
    last_message: str = ""
    last_message_at: int | None = None

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "isGroup": self.is_group,
            "unreadCount": self.unread_count,
            "lastMessage": self.last_message,
            "lastMessageAt": self.last_message_at,
        }


# -- Aggregate ----------------------------------------------------------------


@dataclass
class SessionState:
    """Mutable aggregate shared by every component.

    contacts is a tuple and is only ever replaced, never patched, so a
    reader holding the old reference keeps a consistent snapshot.
    """

    status: SessionStatus = SessionStatus.DISCONNECTED
    info: SessionInfo | None = None
    qr: str | None = None
    config: BehaviorConfig = field(default_factory=BehaviorConfig)
    contacts: tuple[ContactEntry, ...] = ()

    @property
    def is_connected(self) -> bool:
        return self.status is SessionStatus.CONNECTED

    def clear_session(self) -> None:
        """Drop everything derived from the session. Config survives."""
        self.status = SessionStatus.DISCONNECTED
        self.info = None
        self.qr = None
        self.contacts = ()

    def status_payload(self) -> dict[str, Any]:
        """Status frame for subscribers: {status, info}."""
        return {
            "status": self.status.value,
            "info": self.info.to_public() if self.info else None,
        }

    def snapshot(self) -> dict[str, Any]:
        """GET /status body."""
        return {
            "status": self.status.value,
            "info": self.info.to_public() if self.info else None,
            "qr": self.qr,
        }

    def contacts_payload(self) -> list[dict[str, Any]]:
        return [entry.to_wire() for entry in self.contacts]

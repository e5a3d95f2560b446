"""commands.py — Outbound operations, gated on the session's state.

Each command checks its preconditions before touching the driver and
reports problems as GatewayError subclasses. The HTTP layer maps those to
status codes; nothing here knows about HTTP.
"""

from __future__ import annotations

from typing import Any

import logfire

from .driver import PRESENCE_STATES, SessionDriver
from .errors import BadRequest, DriverFailure, GatewayError, ServiceUnavailable
from .lifecycle import LifecycleMachine
from .state import SessionState, SessionStatus


SENDABLE = (SessionStatus.CONNECTED, SessionStatus.AUTHENTICATED)


class CommandAPI:
    def __init__(
        self,
        state: SessionState,
        driver: SessionDriver,
        lifecycle: LifecycleMachine,
    ):
        self._state = state
        self._driver = driver
        self._lifecycle = lifecycle

    async def send_message(
        self,
        message: str | None,
        phone: str | None = None,
        chat_id: str | None = None,
    ) -> Any:
        """Send a text message to a phone number or chat id.

        chat_id wins when both are given. A target without "@" is a bare
        number and is resolved through the driver first.

        Returns:
            The driver's send acknowledgment.

        Raises:
            BadRequest: missing message/target, or unknown number.
            ServiceUnavailable: session not connected or authenticated.
            DriverFailure: the driver rejected the lookup or the send.
        """
        if (not phone and not chat_id) or not message:
            raise BadRequest("Phone or chat_id and message are required")

        if self._state.status not in SENDABLE:
            raise ServiceUnavailable("WhatsApp client is not connected")

        with logfire.span("command.send_message"):
            try:
                target = await self._resolve(
                    str(chat_id or phone), "The number is not a valid WhatsApp user"
                )
                return await self._driver.send_message(target, str(message))
            except GatewayError:
                raise
            except Exception as e:
                logfire.error("Error sending message: {error}", error=str(e))
                raise DriverFailure("Failed to send message", details=str(e)) from e

    def get_status(self) -> dict[str, Any]:
        """{status, info, qr}. Always available."""
        return self._state.snapshot()

    async def reset_session(self) -> None:
        """Drop the session and start over.

        Raises:
            DriverFailure: logout or initialize failed. The state is still
                reset to disconnected.
        """
        try:
            await self._lifecycle.reset()
        except Exception as e:
            logfire.error("Error resetting session: {error}", error=str(e))
            raise DriverFailure(str(e), details=str(e)) from e

    def update_config(
        self,
        reject_calls: Any = None,
        mark_read: Any = None,
    ) -> dict[str, bool]:
        """Merge the given flags into the behavior config.

        None means "leave as is". Anything else is taken for its truth
        value. Returns the full resulting config in wire form.
        """
        config = self._state.config
        if reject_calls is not None:
            config.reject_calls = bool(reject_calls)
        if mark_read is not None:
            config.mark_read = bool(mark_read)
        logfire.info(
            "Config updated: rejectCall={reject} markRead={read}",
            reject=config.reject_calls,
            read=config.mark_read,
        )
        return config.to_wire()

    async def set_chat_state(self, phone: str | None, state: str | None) -> None:
        """Show typing/recording in a chat, or clear it.

        Unrecognized states are accepted and do nothing.

        Raises:
            BadRequest: missing phone/state, or unknown number.
            ServiceUnavailable: session not connected.
            DriverFailure: the driver rejected the lookup or the presence.
        """
        if not phone or not state:
            raise BadRequest("Phone and state are required")

        if not self._state.is_connected:
            raise ServiceUnavailable("WhatsApp not connected")

        try:
            chat_id = await self._resolve(str(phone), "Invalid number")
            if state in PRESENCE_STATES:
                await self._driver.send_presence(chat_id, state)
            else:
                logfire.debug("Ignoring unknown chat state {state}", state=state)
        except GatewayError:
            raise
        except Exception as e:
            logfire.error("Error setting chat state: {error}", error=str(e))
            raise DriverFailure(str(e), details=str(e)) from e

    async def _resolve(self, target: str, not_found: str) -> str:
        """Bare number -> serialized chat id. Ids with '@' pass through."""
        if "@" in target:
            return target
        number_id = await self._driver.get_number_id(target)
        if not number_id:
            raise BadRequest(not_found)
        return number_id

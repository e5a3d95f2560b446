"""bridge.py — SessionDriver over a websocket to the browser bridge.

The browser client runs in a companion bridge process. We talk to it with
JSON frames over one websocket:

    → {"type": "command", "requestId": "...", "command": "sendMessage",
       "payload": {...}}
    ← {"type": "response", "requestId": "...", "ok": true, "result": {...}}
    ← {"type": "response", "requestId": "...", "ok": false,
       "error": {"code": "...", "message": "..."}}
    ← {"type": "event", "event": "qr", "payload": {"qr": "..."}}

Responses resolve the pending command with the same requestId. Events are
parsed (driver.parse_event) and published on the bus.

The websocket is (re)opened lazily by the next command. Losing it fails
every pending command and publishes a DisconnectedEvent, which the
lifecycle machine turns into a recovery; recovery's initialize() is the
command that reconnects.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any

import aiohttp
import logfire

from .bus import EventBus
from .driver import (
    Chat,
    Contact,
    DisconnectedEvent,
    ignore_transient,
    parse_chat,
    parse_event,
    serialized_id,
)
from .errors import DriverError


class BridgeDriver:
    """SessionDriver backed by the bridge websocket.

    Usage:
        driver = BridgeDriver(bus, "ws://127.0.0.1:3100/bridge")
        await driver.initialize()   # connects, then starts the client
        ...
        await driver.close()
    """

    def __init__(
        self,
        bus: EventBus,
        url: str,
        command_timeout: float | None = None,
        session: aiohttp.ClientSession | None = None,
    ):
        self._bus = bus
        self.url = url
        self._command_timeout = command_timeout
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._connect_lock = asyncio.Lock()
        self._pending: dict[str, asyncio.Future] = {}
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    # -- SessionDriver --------------------------------------------------------

    @ignore_transient
    async def initialize(self) -> None:
        await self._command("initialize")

    async def logout(self) -> None:
        await self._command("logout")

    async def get_profile_pic_url(self, wid: str) -> str | None:
        result = await self._command("getProfilePicUrl", {"contactId": wid})
        return result.get("url") or None

    async def get_chats(self) -> list[Chat]:
        result = await self._command("getChats")
        return [parse_chat(raw) for raw in result.get("chats", [])]

    async def get_contact(self, contact_id: str) -> Contact | None:
        result = await self._command("getContactById", {"contactId": contact_id})
        contact = result.get("contact")
        if not contact:
            return None
        return Contact(
            id=serialized_id(contact.get("id")) or contact_id,
            number=str(contact.get("number") or ""),
            pushname=contact.get("pushname", "") or "",
        )

    async def get_number_id(self, number: str) -> str | None:
        result = await self._command("getNumberId", {"number": number})
        return serialized_id(result.get("id")) or None

    async def send_message(self, chat_id: str, body: str) -> dict[str, Any]:
        return await self._command("sendMessage", {"chatId": chat_id, "content": body})

    async def send_seen(self, chat_id: str) -> None:
        await self._command("sendSeen", {"chatId": chat_id})

    async def send_presence(self, chat_id: str, state: str) -> None:
        await self._command("sendPresence", {"chatId": chat_id, "state": state})

    async def reject_call(self, call_id: str) -> None:
        await self._command("rejectCall", {"callId": call_id})

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None
        self._ws = None
        self._fail_pending("Bridge driver closed")
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    # -- Wire -----------------------------------------------------------------

    async def _command(self, command: str, payload: dict | None = None) -> dict:
        """Send one command and wait for its response.

        Raises:
            DriverError: bridge unreachable, connection lost, command
                rejected, or timed out.
        """
        ws = await self._ensure_connected()

        request_id = uuid.uuid4().hex
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        frame = {
            "type": "command",
            "requestId": request_id,
            "command": command,
            "payload": payload or {},
        }
        try:
            await ws.send_json(frame)
            if self._command_timeout:
                return await asyncio.wait_for(future, timeout=self._command_timeout)
            return await future
        except asyncio.TimeoutError:
            raise DriverError(f"{command} timed out", code="ERR_TIMEOUT") from None
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise DriverError(f"{command} failed: {e}", code="ERR_BRIDGE") from e
        finally:
            self._pending.pop(request_id, None)

    async def _ensure_connected(self) -> aiohttp.ClientWebSocketResponse:
        async with self._connect_lock:
            if self.connected:
                return self._ws
            if self._session is None:
                self._session = aiohttp.ClientSession()
            try:
                self._ws = await self._session.ws_connect(self.url, heartbeat=20)
            except (aiohttp.ClientError, OSError) as e:
                raise DriverError(
                    f"Bridge unreachable at {self.url}: {e}", code="ERR_BRIDGE"
                ) from e
            self._closing = False
            self._reader_task = asyncio.create_task(self._read_loop(self._ws))
            logfire.info("Connected to bridge at {url}", url=self.url)
            return self._ws

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        self.handle_frame(msg.json())
                    except ValueError:
                        logfire.warning("Invalid JSON from bridge")
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logfire.warning("Bridge websocket error: {error}", error=str(ws.exception()))
                    break
        finally:
            if self._ws is ws:
                self._ws = None
            self._fail_pending("Bridge connection lost")
            if not self._closing:
                logfire.warning("Bridge connection lost")
                self._bus.publish(DisconnectedEvent(reason="bridge connection lost"))

    def handle_frame(self, data: Any) -> None:
        """Dispatch one decoded frame: resolve a response or publish an event.

        A frame that fails to parse is logged and dropped; it never takes
        the connection down.
        """
        if not isinstance(data, dict):
            logfire.warning("Invalid bridge frame shape")
            return

        frame_type = data.get("type")
        if frame_type == "response":
            self._resolve_pending(str(data.get("requestId", "")), data)
        elif frame_type == "event":
            name = str(data.get("event", ""))
            try:
                event = parse_event(name, data.get("payload"))
            except (TypeError, ValueError, AttributeError) as e:
                logfire.warning(
                    "Dropping malformed {name} event from bridge: {error}", name=name, error=str(e)
                )
                return
            self._bus.publish(event)
        else:
            logfire.debug("Ignoring bridge frame of type {type}", type=frame_type)

    def _resolve_pending(self, request_id: str, data: dict) -> None:
        future = self._pending.get(request_id)
        if future is None or future.done():
            return

        if data.get("ok"):
            result = data.get("result")
            future.set_result(result if isinstance(result, dict) else {})
            return

        error = data.get("error") if isinstance(data.get("error"), dict) else {}
        future.set_exception(
            DriverError(
                str(error.get("message") or "Bridge command failed"),
                code=str(error.get("code") or "ERR_DRIVER"),
            )
        )

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(DriverError(reason, code="ERR_BRIDGE"))
        self._pending.clear()

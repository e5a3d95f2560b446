"""relay.py — Inbound messages and calls, forwarded outward.

Messages go to the webhook (fire-and-forget, no retries), optionally get
marked read, and nudge the contacts projection. Calls are optionally
rejected and otherwise ignored; nothing about a call reaches the webhook.

None of this is allowed to fail loudly. Every side effect is isolated:
a dead webhook doesn't stop the read receipt, a failed read receipt
doesn't stop the contacts refresh.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any

import httpx
import logfire

from .bus import EventBus
from .contacts import ContactsProjection
from .driver import CallEvent, MessageEvent, SessionDriver
from .state import SessionState


_NON_DIGITS = re.compile(r"\D+")


def digits(value: str) -> str:
    """Keep only 0-9."""
    return _NON_DIGITS.sub("", value)


def sender_digits(sender: str) -> str:
    """'6281234@c.us' -> '6281234'."""
    return digits(sender.split("@", 1)[0])


def webhook_payload(event: MessageEvent, phone: str) -> dict[str, Any]:
    """The JSON body the webhook receives."""
    return {
        "phone": phone,
        "from": phone,
        "from_jid": event.sender,
        "body": event.body,
        "name": event.notify_name,
        "timestamp": event.timestamp,
    }


class EventRelay:
    """Forwards inbound events and applies the behavior flags.

    Usage:
        relay = EventRelay(state, driver, contacts, webhook_url=url)
        relay.attach(bus)
        await relay.start()
        ...
        await relay.close()
    """

    def __init__(
        self,
        state: SessionState,
        driver: SessionDriver,
        contacts: ContactsProjection,
        webhook_url: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self._state = state
        self._driver = driver
        self._contacts = contacts
        self.webhook_url = webhook_url
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None
        self._deliveries: set[asyncio.Task] = set()

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(MessageEvent, self.on_message)
        bus.subscribe(CallEvent, self.on_call)

    async def start(self) -> None:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)

    async def close(self) -> None:
        """Let in-flight deliveries finish, then drop the HTTP client."""
        await self.wait_deliveries()
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def wait_deliveries(self) -> None:
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    # -- Messages -------------------------------------------------------------

    async def on_message(self, event: MessageEvent) -> None:
        if event.is_status:
            return

        logfire.info("Message received from {sender}", sender=event.sender)

        phone = await self.resolve_phone(event)

        task = asyncio.create_task(self.deliver(webhook_payload(event, phone)))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

        if self._state.config.mark_read:
            try:
                await self._driver.send_seen(event.chat_id)
            except Exception as e:
                logfire.warning("Error marking read: {error}", error=str(e))

        if self._state.is_connected:
            self._contacts.request_refresh()

    async def resolve_phone(self, event: MessageEvent) -> str:
        """Prefer the contact's registered number; else the sender id's digits."""
        phone = sender_digits(event.sender)
        try:
            contact = await self._driver.get_contact(event.sender)
        except Exception as e:
            logfire.warning(
                "Error getting contact info for incoming message: {error}", error=str(e)
            )
            return phone
        if contact is not None and contact.number:
            phone = digits(str(contact.number))
        return phone

    async def deliver(self, payload: dict[str, Any]) -> bool:
        """POST one payload to the webhook. Returns True on 2xx.

        Never raises.
        """
        if self._http_client is None:
            logfire.warning("Webhook client not started; dropping message")
            return False

        with logfire.span("relay.webhook", url=self.webhook_url) as span:
            try:
                response = await self._http_client.post(self.webhook_url, json=payload)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                logfire.error(
                    "Error forwarding message to webhook: {status} {body}",
                    status=e.response.status_code,
                    body=e.response.text,
                )
                span.set_attribute("status", e.response.status_code)
                return False
            except httpx.HTTPError as e:
                logfire.error("Error forwarding message to webhook: {error}", error=str(e))
                span.set_attribute("error", str(e))
                return False

            span.set_attribute("status", response.status_code)
            logfire.info("Message forwarded to webhook")
            return True

    # -- Calls ----------------------------------------------------------------

    async def on_call(self, event: CallEvent) -> None:
        if not self._state.config.reject_calls:
            return
        try:
            await self._driver.reject_call(event.id)
        except Exception as e:
            logfire.warning("Error rejecting call: {error}", error=str(e))
            return
        logfire.info("Incoming call from {sender} rejected", sender=event.sender)

#!/usr/bin/env python3
"""
Telegram Bot API transport for Dice Goblin

Talks to the Bot API over HTTPS with httpx: long-polls getUpdates for
new messages and sends replies with sendMessage.

Delivery
--------
getUpdates hands out updates until they are acknowledged, and the
acknowledgement is simply asking for the next offset. The transport
remembers the highest update_id it has seen and sends offset+1 on the
following poll, so a batch is only acknowledged once the loop comes
back for more. If the process dies mid-batch Telegram redelivers the
batch on restart: replies are at-least-once. After a graceful stop,
close() acknowledges the last batch so it is not answered twice.

Error Mapping
-------------
    TransportError
    ├── TransportTimeout        the request timed out
    ├── RateLimited             429, carries retry_after seconds
    ├── TransportUnavailable    5xx, connection refused, DNS, TLS...
    ├── MessageRejected         other 4xx: chat gone, bot blocked, bad text
    └── AuthenticationError     401/404: the token is wrong

The update loop retries the first three with backoff, drops rejected
messages, and only treats AuthenticationError as fatal at startup.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx

from goblin_commands.events import InboundEvent, OutboundMessage


DEFAULT_API_BASE = "https://api.telegram.org"


# ─── Errors ─────────────────────────────────────────────────────────

class TransportError(Exception):
    """Base class for failures talking to the chat platform."""


class TransportTimeout(TransportError):
    """The platform did not answer in time."""


class RateLimited(TransportError):
    """Too many requests. Wait at least retry_after seconds."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class TransportUnavailable(TransportError):
    """Network failure or server-side error; worth retrying."""


class MessageRejected(TransportError):
    """The platform refused this request for good; do not retry."""


class AuthenticationError(TransportError):
    """The bot token was not accepted."""


class PlatformTransport(Protocol):
    """What the update loop needs from a chat platform."""

    def fetch_updates(self) -> List[InboundEvent]:
        ...

    def send_message(self, message: OutboundMessage) -> None:
        ...

    def drain(self) -> List[InboundEvent]:
        """Hand over already-accepted updates without waiting; called once on shutdown."""
        ...

    def close(self) -> None:
        ...


# ─── Update parsing ─────────────────────────────────────────────────

def parse_update(update: Dict[str, Any]) -> Optional[InboundEvent]:
    """Turn one Bot API Update object into an InboundEvent.

    Returns None for anything the goblin should not answer: updates
    that are not new messages (edits, callbacks, joins), messages with
    no text (stickers, photos) and messages sent by bots.
    """
    message = update.get("message")
    if not isinstance(message, dict):
        return None

    text = message.get("text")
    if not text:
        return None

    sender = message.get("from") or {}
    if sender.get("is_bot"):
        return None

    chat = message.get("chat") or {}
    chat_id = chat.get("id")
    if chat_id is None:
        return None

    sender_id = sender.get("id")
    chat_type = chat.get("type")
    is_private = chat_type == "private" if chat_type else sender_id == chat_id

    return InboundEvent(
        update_id=update.get("update_id", 0),
        chat_id=chat_id,
        sender_id=sender_id,
        message_id=message.get("message_id", 0),
        text=text,
        is_private=is_private,
    )


# ─── Transport ──────────────────────────────────────────────────────

class TelegramTransport:
    """
    Bot API client over HTTP long-polling

    Args:
        token: Bot token from @BotFather
        api_base: Bot API server, for self-hosted API servers
        poll_timeout: Seconds getUpdates may hold the connection open
        request_timeout: Timeout for every other call, and the slack
            added on top of poll_timeout for getUpdates
        batch_size: Maximum updates per getUpdates call (1-100)
        client: Pre-built httpx.Client, for tests (MockTransport)
    """

    def __init__(
        self,
        token: str,
        api_base: str = DEFAULT_API_BASE,
        poll_timeout: int = 30,
        request_timeout: float = 10.0,
        batch_size: int = 100,
        client: Optional[httpx.Client] = None,
    ):
        self.poll_timeout = poll_timeout
        self.request_timeout = request_timeout
        self.batch_size = batch_size
        self.offset: Optional[int] = None
        self._acknowledged: Optional[int] = None
        self.logger = logging.getLogger(__name__)

        self._owns_client = client is None
        if client is None:
            client = httpx.Client(
                base_url=f"{api_base.rstrip('/')}/bot{token}/",
                timeout=request_timeout,
            )
        self._client = client

    def _call(self, method: str, payload: Optional[Dict[str, Any]] = None,
              timeout: Optional[float] = None) -> Any:
        """POST one Bot API method and return its ``result``."""
        kwargs = {}
        if timeout is not None:
            kwargs["timeout"] = timeout

        try:
            response = self._client.post(method, json=payload or {}, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportTimeout(f"{method} timed out") from e
        except httpx.HTTPError as e:
            # Connection, protocol, redirect and decoding failures
            raise TransportUnavailable(f"{method} failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code == 200 and body.get("ok"):
            return body.get("result")

        status = body.get("error_code") or response.status_code
        description = body.get("description") or response.reason_phrase
        message = f"{method} failed ({status}): {description}"

        if status == 429:
            retry_after = (body.get("parameters") or {}).get("retry_after")
            raise RateLimited(message, retry_after=retry_after)
        if status in (401, 404):
            raise AuthenticationError(message)
        if 400 <= status < 500:
            raise MessageRejected(message)
        raise TransportUnavailable(message)

    def get_me(self) -> Dict[str, Any]:
        """Check the token and return the bot's own User object."""
        return self._call("getMe")

    def fetch_updates(self) -> List[InboundEvent]:
        """
        Long-poll for new messages

        Returns:
            Events in update_id order; may be empty when the poll times out
            with nothing new.
        """
        payload = {
            "timeout": self.poll_timeout,
            "limit": self.batch_size,
            "allowed_updates": ["message"],
        }
        if self.offset is not None:
            payload["offset"] = self.offset

        updates = self._call(
            "getUpdates", payload, timeout=self.poll_timeout + self.request_timeout
        ) or []
        self._acknowledged = self.offset

        events = []
        for update in updates:
            update_id = update.get("update_id")
            if isinstance(update_id, int):
                self.offset = max(self.offset or 0, update_id + 1)
            event = parse_update(update)
            if event is None:
                self.logger.debug(f"Ignoring update {update_id}")
                continue
            events.append(event)
        return events

    def send_message(self, message: OutboundMessage) -> None:
        """Send a plain-text reply, threaded when reply_to_message_id is set."""
        payload: Dict[str, Any] = {
            "chat_id": message.chat_id,
            "text": message.text,
        }
        if message.reply_to_message_id is not None:
            payload["reply_parameters"] = {
                "message_id": message.reply_to_message_id,
                "allow_sending_without_reply": True,
            }
        self._call("sendMessage", payload)

    def set_webhook(self, url: str, secret_token: Optional[str] = None) -> None:
        """Ask Telegram to push updates to ``url`` instead of polling."""
        payload: Dict[str, Any] = {"url": url, "allowed_updates": ["message"]}
        if secret_token:
            payload["secret_token"] = secret_token
        self._call("setWebhook", payload)
        self.logger.info(f"Webhook registered: {url}")

    def delete_webhook(self) -> None:
        """Stop push delivery so getUpdates works again."""
        self._call("deleteWebhook")

    def drain(self) -> List[InboundEvent]:
        # Unfetched updates stay on Telegram's side until acknowledged
        return []

    def acknowledge(self) -> None:
        """
        Confirm everything fetched so far

        getUpdates only forgets a batch when asked for the next offset,
        so without this the last batch before a shutdown would be
        delivered (and answered) again on the next start.
        """
        if self.offset is None or self.offset == self._acknowledged:
            return
        try:
            self._call("getUpdates", {"offset": self.offset, "timeout": 0, "limit": 1})
        except TransportError as e:
            self.logger.warning(f"Could not acknowledge updates below {self.offset}: {e}")
            return
        self._acknowledged = self.offset
        self.logger.debug(f"Acknowledged updates below {self.offset}")

    def close(self) -> None:
        self.acknowledge()
        if self._owns_client:
            self._client.close()

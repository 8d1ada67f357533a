#!/usr/bin/env python3
"""
Webhook receiver for Dice Goblin

Instead of long-polling, Telegram can push every update to an HTTPS
endpoint. This module runs that endpoint with FastAPI + uvicorn and
presents the pushed updates to the update loop through the same
fetch_updates() / send_message() interface as TelegramTransport.

    Telegram ──POST /telegram/webhook──► FastAPI handler
                                            │ parse_update()
                                            ▼
                                      queue.Queue
                                            │
    UpdateLoop ◄──fetch_updates()───────────┘
        │
        └──send_message()──► TelegramTransport.sendMessage

uvicorn runs in a background thread so the update loop keeps the main
thread. TLS is expected to be terminated by a reverse proxy in front
of the receiver; webhook_url is the public address Telegram is given.
"""

import hmac
import logging
import queue
import threading
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException, Request
import uvicorn

from goblin_commands.events import InboundEvent, OutboundMessage
from telegram_transport import TelegramTransport, parse_update


WEBHOOK_PATH = "/telegram/webhook"


class ReceiverClosed(Exception):
    """The receiver is shutting down and takes no more updates."""


class WebhookTransport:
    """
    Transport fed by Telegram webhook pushes

    Args:
        sender: TelegramTransport used for replies and webhook registration
        secret: Expected X-Telegram-Bot-Api-Secret-Token, or None to accept all
        poll_timeout: Longest fetch_updates() waits for the first update
        batch_size: Most updates returned by one fetch_updates()
        max_queued: Updates held before the endpoint answers 503
        host, port: Where uvicorn listens
        log_level: uvicorn log level
    """

    def __init__(self, sender: TelegramTransport, secret: Optional[str] = None,
                 poll_timeout: float = 30.0, batch_size: int = 100, max_queued: int = 1000,
                 host: str = "0.0.0.0", port: int = 8443, log_level: str = "warning"):
        self.sender = sender
        self.secret = secret or None
        self.poll_timeout = poll_timeout
        self.batch_size = batch_size
        self.host = host
        self.port = port
        self.log_level = log_level
        self.updates: "queue.Queue[InboundEvent]" = queue.Queue(maxsize=max_queued)
        self.accepting = True
        self._accept_lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

        self.app = create_app(self)
        self._server = None
        self._thread = None

    # ─── Receiving ──────────────────────────────────────────────────

    def verify_secret(self, token: Optional[str]) -> bool:
        if self.secret is None:
            return True
        if token is None:
            return False
        return hmac.compare_digest(token.encode("utf-8"), self.secret.encode("utf-8"))

    def accept(self, update: Dict[str, Any]) -> bool:
        """
        Queue one pushed update

        Returns:
            True if the update was a message worth answering

        Raises:
            queue.Full: the loop has fallen too far behind
            ReceiverClosed: drain() has already run
        """
        event = parse_update(update)
        if event is None:
            self.logger.debug(f"Ignoring pushed update {update.get('update_id')}")
            return False
        with self._accept_lock:
            if not self.accepting:
                raise ReceiverClosed()
            self.updates.put_nowait(event)
        return True

    def fetch_updates(self) -> List[InboundEvent]:
        """Wait for the first queued update, then drain up to batch_size."""
        try:
            first = self.updates.get(timeout=self.poll_timeout)
        except queue.Empty:
            return []

        events = [first]
        while len(events) < self.batch_size:
            try:
                events.append(self.updates.get_nowait())
            except queue.Empty:
                break
        return events

    def drain(self) -> List[InboundEvent]:
        """
        Stop taking pushes and hand over everything already queued

        Telegram was answered 200 for each queued update and will not
        send it again, so these must be answered before shutting down.
        Later pushes get 503 and are redelivered to the next instance.
        """
        with self._accept_lock:
            self.accepting = False
        events = []
        while True:
            try:
                events.append(self.updates.get_nowait())
            except queue.Empty:
                return events

    # ─── Sending ────────────────────────────────────────────────────

    def send_message(self, message: OutboundMessage) -> None:
        self.sender.send_message(message)

    # ─── Lifecycle ──────────────────────────────────────────────────

    def register(self, url: str):
        """Point Telegram at this receiver."""
        self.sender.set_webhook(url, secret_token=self.secret)

    def start(self):
        """Start uvicorn in a background thread."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(target=self._server.run, name="webhook-server", daemon=True)
        self._thread.start()
        self.logger.info(f"🌐 Webhook receiver listening on http://{self.host}:{self.port}{WEBHOOK_PATH}")

    def close(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
        self.sender.close()


def create_app(transport: WebhookTransport) -> FastAPI:
    """FastAPI application with the webhook endpoint bound to ``transport``."""
    app = FastAPI(title="Dice Goblin Webhook", version="1.0.0")

    @app.post(WEBHOOK_PATH)
    async def telegram_webhook(
        request: Request,
        x_telegram_bot_api_secret_token: Optional[str] = Header(default=None),
    ):
        if not transport.verify_secret(x_telegram_bot_api_secret_token):
            raise HTTPException(status_code=403, detail="Bad secret token")

        try:
            update = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Body must be JSON")
        if not isinstance(update, dict):
            raise HTTPException(status_code=400, detail="Body must be a Telegram Update object")

        try:
            queued = transport.accept(update)
        except queue.Full:
            # Telegram retries non-2xx deliveries later
            transport.logger.warning("Update queue full, asking Telegram to retry")
            raise HTTPException(status_code=503, detail="Busy")
        except ReceiverClosed:
            raise HTTPException(status_code=503, detail="Shutting down")

        return {"ok": True, "queued": queued}

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok", "queued": transport.updates.qsize()}

    return app

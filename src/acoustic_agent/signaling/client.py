"""Persistent signaling connection: register, forward records, dispatch control messages.

The server address comes from ``SERVER_ADDRESS`` (host:port); the channel is
``ws://<address>/signal``. The connection is re-established one second after
any failure, forever. Records produced while disconnected are dropped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

from acoustic_agent.pipeline.outbound import LatestMailbox
from acoustic_agent.signaling.messages import LOG, REGISTER, Message, MessageError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Message], Awaitable[None]]
Connector = Callable[[str], Any]

_CONNECTION_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


def signal_url(address: str, path: str = "/signal") -> str:
    """``host:port`` -> ``ws://host:port/signal``; full ws:// URLs pass through."""
    address = address.strip().rstrip("/")
    if address.startswith(("ws://", "wss://")):
        return address if address.endswith(path) else address + path
    return f"ws://{address}{path}"


class SignalingClient:
    """Keeps one websocket to the signaling server open.

    Interface:
      client = SignalingClient("example.org:8080", device_id="dev-1", handler=calls.handle_message)
      await asyncio.gather(client.run(), client.forward_records(mailbox))
    """

    def __init__(
        self,
        address: str,
        device_id: str,
        handler: Optional[MessageHandler] = None,
        reconnect_delay: float = 1.0,
        connector: Optional[Connector] = None,
    ):
        self.url = signal_url(address)
        self.device_id = device_id
        self.handler = handler
        self.reconnect_delay = reconnect_delay
        self._connector = connector or connect
        self._ws: Optional[Any] = None
        self._send_lock = asyncio.Lock()
        self.dropped_records = 0

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def run(self) -> None:
        """Connect and handle messages, reconnecting after every failure."""
        while True:
            try:
                await self.connect_and_handle()
                logger.warning("Signaling connection closed by server")
            except _CONNECTION_ERRORS as exc:
                logger.error("Signaling error: %s", exc)
            await asyncio.sleep(self.reconnect_delay)

    async def connect_and_handle(self) -> None:
        """One connection lifetime: register, then read until the socket closes."""
        async with self._connector(self.url) as ws:
            logger.info("WS connected to %s", self.url)
            self._ws = ws
            try:
                await ws.send(Message(REGISTER, device_id=self.device_id).to_json())
                async for raw in ws:
                    await self._dispatch(raw)
            finally:
                self._ws = None

    async def _dispatch(self, raw: Any) -> None:
        try:
            message = Message.from_json(raw)
        except MessageError as exc:
            logger.error("json unmarshal err: %s", exc)
            return
        logger.debug("Received %s from client %r", message.action, message.client_id)
        if self.handler is None:
            return
        try:
            await self.handler(message)
        except Exception:
            logger.exception("Handler failed for %s", message.action)

    async def send(self, message: Message) -> bool:
        """Send when connected; returns False if the message was dropped."""
        ws = self._ws
        if ws is None:
            return False
        async with self._send_lock:
            try:
                await ws.send(message.to_json())
            except _CONNECTION_ERRORS as exc:
                logger.warning("Failed to send %s: %s", message.action, exc)
                return False
        return True

    async def forward_records(self, mailbox: LatestMailbox, poll_interval: float = 0.5) -> None:
        """Wrap each record from the mailbox in a ``log`` message and send it."""
        while True:
            record = await asyncio.to_thread(mailbox.get, poll_interval)
            if record is None:
                continue
            message = Message(LOG, device_id=self.device_id, data=record.decode("utf-8"))
            if not await self.send(message):
                self.dropped_records += 1

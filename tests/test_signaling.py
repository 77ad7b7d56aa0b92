"""Unit tests for signaling messages and the websocket client (fake socket)."""

from __future__ import annotations

import asyncio
import json
import unittest
from typing import List

from acoustic_agent.pipeline.outbound import LatestMailbox
from acoustic_agent.signaling import messages
from acoustic_agent.signaling.client import SignalingClient, signal_url
from acoustic_agent.signaling.messages import Message, MessageError


class FakeSocket:
    """Async context manager that yields queued inbound texts, then closes."""

    def __init__(self, inbound: List[str]):
        self.inbound = list(inbound)
        self.sent: List[str] = []

    async def __aenter__(self) -> "FakeSocket":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None

    async def send(self, text: str) -> None:
        self.sent.append(text)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for raw in self.inbound:
            yield raw


class FakeConnector:
    """Returns prepared sockets in order; a prepared exception is raised instead."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.urls: List[str] = []

    def __call__(self, url: str):
        self.urls.append(url)
        outcome = self.outcomes.pop(0) if self.outcomes else FakeSocket([])
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestMessage(unittest.TestCase):
    """Tests for the signaling envelope."""

    def test_wire_keys(self) -> None:
        obj = json.loads(Message(messages.LOG, device_id="dev", data="{}").to_json())
        self.assertEqual(obj, {"deviceId": "dev", "clientId": "", "data": "{}", "action": "log"})

    def test_parse(self) -> None:
        message = Message.from_json('{"action": "startCall", "clientId": "c1", "data": null}')
        self.assertEqual(message.action, messages.START_CALL)
        self.assertEqual(message.client_id, "c1")
        self.assertEqual(message.device_id, "")
        self.assertEqual(message.data, "")

    def test_parse_errors(self) -> None:
        for raw in ("not json", "[1, 2]", '{"action": 5}'):
            with self.assertRaises(MessageError):
                Message.from_json(raw)

    def test_signal_url(self) -> None:
        self.assertEqual(signal_url("example.org:8080"), "ws://example.org:8080/signal")
        self.assertEqual(signal_url("ws://example.org:8080/"), "ws://example.org:8080/signal")
        self.assertEqual(signal_url("wss://example.org/signal"), "wss://example.org/signal")


class TestSignalingClient(unittest.IsolatedAsyncioTestCase):
    """Tests for SignalingClient against a fake connector."""

    async def test_registers_first_and_dispatches(self) -> None:
        received: List[Message] = []

        async def handler(message: Message) -> None:
            received.append(message)

        socket = FakeSocket([
            Message(messages.START_CALL, client_id="c1").to_json(),
            Message(messages.END_CALL, client_id="c1").to_json(),
        ])
        client = SignalingClient("example.org:8080", "dev-1", handler=handler,
                                 connector=FakeConnector(socket))
        await client.connect_and_handle()

        register = json.loads(socket.sent[0])
        self.assertEqual(register["action"], messages.REGISTER)
        self.assertEqual(register["deviceId"], "dev-1")
        self.assertEqual([m.action for m in received], [messages.START_CALL, messages.END_CALL])
        self.assertFalse(client.connected)

    async def test_bad_input_and_handler_errors_do_not_close(self) -> None:
        received: List[str] = []

        async def handler(message: Message) -> None:
            received.append(message.action)
            if message.action == messages.START_CALL:
                raise RuntimeError("boom")

        socket = FakeSocket([
            "{broken",
            Message(messages.START_CALL).to_json(),
            Message(messages.END_CALL).to_json(),
        ])
        client = SignalingClient("h:1", "dev", handler=handler, connector=FakeConnector(socket))
        with self.assertLogs("acoustic_agent.signaling.client", level="ERROR"):
            await client.connect_and_handle()
        self.assertEqual(received, [messages.START_CALL, messages.END_CALL])

    async def test_send_when_disconnected(self) -> None:
        client = SignalingClient("h:1", "dev", connector=FakeConnector())
        self.assertFalse(await client.send(Message(messages.LOG, data="{}")))

    async def test_reconnects_after_failure(self) -> None:
        second = asyncio.Event()

        class Reconnect(FakeConnector):
            def __call__(self, url: str):
                if len(self.urls) == 1:
                    second.set()
                return super().__call__(url)

        connector = Reconnect(OSError("refused"))
        client = SignalingClient("h:1", "dev", reconnect_delay=0.01, connector=connector)
        task = asyncio.create_task(client.run())
        try:
            with self.assertLogs("acoustic_agent.signaling.client", level="ERROR"):
                await asyncio.wait_for(second.wait(), timeout=5.0)
        finally:
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await task
        self.assertGreaterEqual(len(connector.urls), 2)
        self.assertEqual(connector.urls[0], "ws://h:1/signal")

    async def test_forward_records_wraps_in_log(self) -> None:
        mailbox = LatestMailbox()
        socket = FakeSocket([])
        client = SignalingClient("h:1", "dev-9", connector=FakeConnector())
        client._ws = socket
        mailbox.put(b'{"spectrum": {}, "ts": 1}')
        task = asyncio.create_task(client.forward_records(mailbox, poll_interval=0.05))
        try:
            for _ in range(100):
                if socket.sent:
                    break
                await asyncio.sleep(0.01)
        finally:
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await task
        sent = json.loads(socket.sent[0])
        self.assertEqual(sent["action"], messages.LOG)
        self.assertEqual(sent["deviceId"], "dev-9")
        self.assertEqual(json.loads(sent["data"]), {"spectrum": {}, "ts": 1})

    async def test_forward_records_drops_while_disconnected(self) -> None:
        mailbox = LatestMailbox()
        client = SignalingClient("h:1", "dev", connector=FakeConnector())
        mailbox.put(b"{}")
        task = asyncio.create_task(client.forward_records(mailbox, poll_interval=0.05))
        try:
            for _ in range(100):
                if client.dropped_records:
                    break
                await asyncio.sleep(0.01)
        finally:
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await task
        self.assertEqual(client.dropped_records, 1)


if __name__ == "__main__":
    unittest.main(verbosity=2)

"""Unit tests for the agent lifecycle with a fake input stream."""

from __future__ import annotations

import asyncio
import io
import json
import unittest

import numpy as np

from acoustic_agent.agent import AgentSettings, TelemetryAgent, print_records
from acoustic_agent.audio.collector import CaptureError, CaptureSource
from acoustic_agent.pipeline.outbound import LatestMailbox


class FakeStream:
    def __init__(self, fail_start: bool = False, **kwargs):
        self.callback = kwargs["callback"]
        self.fail_start = fail_start
        self.active = False
        self.closed = False

    def start(self) -> None:
        if self.fail_start:
            raise OSError("device busy")
        self.active = True

    def stop(self) -> None:
        self.active = False

    def close(self) -> None:
        self.closed = True


class TestTelemetryAgent(unittest.IsolatedAsyncioTestCase):
    """Tests for TelemetryAgent.run."""

    def _capture(self, fail_start: bool = False) -> CaptureSource:
        self.streams = []

        def factory(**kwargs):
            stream = FakeStream(fail_start=fail_start, **kwargs)
            self.streams.append(stream)
            return stream

        return CaptureSource(stream_factory=factory)

    async def test_start_and_stop(self) -> None:
        agent = TelemetryAgent(AgentSettings(db_offset=0.0), capture=self._capture())
        self.assertIsNone(agent.signaling)
        task = asyncio.create_task(agent.run())
        for _ in range(100):
            if self.streams and self.streams[0].active:
                break
            await asyncio.sleep(0.01)
        self.assertTrue(self.streams[0].active)

        agent.request_stop()
        await asyncio.wait_for(task, timeout=5.0)
        self.assertFalse(self.streams[0].active)
        self.assertTrue(self.streams[0].closed)

    async def test_frames_reach_pipeline_through_worker(self) -> None:
        agent = TelemetryAgent(
            AgentSettings(db_offset=0.0, use_worker=True), capture=self._capture()
        )
        task = asyncio.create_task(agent.run())
        for _ in range(100):
            if self.streams and self.streams[0].active:
                break
            await asyncio.sleep(0.01)
        frame = np.zeros((1024, 1), dtype=np.float32)
        self.streams[0].callback(frame, 1024, None, None)
        for _ in range(100):
            if agent.pipeline.buffered == 1024:
                break
            await asyncio.sleep(0.01)
        self.assertEqual(agent.pipeline.buffered, 1024)

        agent.request_stop()
        await asyncio.wait_for(task, timeout=5.0)
        self.assertFalse(agent.worker.running)

    async def test_start_failure_raises(self) -> None:
        agent = TelemetryAgent(
            AgentSettings(db_offset=0.0, use_worker=True), capture=self._capture(fail_start=True)
        )
        with self.assertRaises(CaptureError):
            await agent.run()
        self.assertFalse(agent.worker.running)
        self.assertTrue(self.streams[0].closed)

    async def test_server_address_enables_signaling(self) -> None:
        agent = TelemetryAgent(
            AgentSettings(server_address="example.org:8080", device_id="dev", db_offset=0.0),
            capture=self._capture(),
        )
        self.assertEqual(agent.signaling.url, "ws://example.org:8080/signal")
        self.assertEqual(agent.signaling.handler, agent.calls.handle_message)


class TestPrintRecords(unittest.IsolatedAsyncioTestCase):
    async def test_prints_one_line_per_record(self) -> None:
        mailbox = LatestMailbox()
        out = io.StringIO()
        mailbox.put(b'{"spectrum": {}, "ts": 5}')
        task = asyncio.create_task(print_records(mailbox, out=out, poll_interval=0.05))
        for _ in range(100):
            if out.getvalue():
                break
            await asyncio.sleep(0.01)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(json.loads(out.getvalue().strip()), {"spectrum": {}, "ts": 5})


if __name__ == "__main__":
    unittest.main(verbosity=2)

"""Agent lifecycle: capture -> analysis -> outbound forwarding, plus call control.

Start order: open stream -> start stream -> wait for SIGINT/SIGTERM ->
stop stream -> close stream. Open/start failures raise ``CaptureError``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass
from typing import Mapping, Optional, TextIO

from acoustic_agent.audio.collector import CaptureSource
from acoustic_agent.audio.config import AudioConfig, load_db_offset
from acoustic_agent.audio.features import BandCalibration
from acoustic_agent.call.session import CallManager
from acoustic_agent.pipeline.outbound import LatestMailbox
from acoustic_agent.pipeline.streaming_loop import FrameWorker, SpectrumPipeline
from acoustic_agent.signaling.client import SignalingClient

logger = logging.getLogger(__name__)


@dataclass
class AgentSettings:
    """Runtime settings, read from the environment once at startup."""

    server_address: str = ""
    device_id: str = ""
    db_offset: float = 10.0
    input_device: Optional[str] = None
    use_worker: bool = False
    band_calibration: BandCalibration = BandCalibration.ADD

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AgentSettings":
        env = os.environ if environ is None else environ
        return cls(
            server_address=env.get("SERVER_ADDRESS", "").strip(),
            device_id=env.get("DEVICE_ID", "").strip(),
            db_offset=load_db_offset(env),
        )


async def print_records(
    mailbox: LatestMailbox,
    out: Optional[TextIO] = None,
    poll_interval: float = 0.5,
) -> None:
    """Write each record as one JSON line (used when no server is configured)."""
    while True:
        record = await asyncio.to_thread(mailbox.get, poll_interval)
        if record is not None:
            print(record.decode("utf-8"), file=out or sys.stdout, flush=True)


class TelemetryAgent:
    """Wires capture, analysis, outbound forwarding and call control together."""

    def __init__(
        self,
        settings: AgentSettings,
        audio_config: Optional[AudioConfig] = None,
        capture: Optional[CaptureSource] = None,
    ):
        self.settings = settings
        self.audio_config = audio_config or AudioConfig()
        self.capture = capture or CaptureSource(self.audio_config, device=settings.input_device)
        self.mailbox = LatestMailbox()
        self.pipeline = SpectrumPipeline(
            self.mailbox,
            audio_config=self.audio_config,
            db_offset=settings.db_offset,
            band_calibration=settings.band_calibration,
        )
        self.worker: Optional[FrameWorker] = None
        if settings.use_worker:
            self.worker = FrameWorker(self.pipeline)
            self.capture.add_listener(self.worker.submit)
        else:
            self.capture.add_listener(self.pipeline.process_frame)

        self.signaling: Optional[SignalingClient] = None
        self.calls: Optional[CallManager] = None
        if settings.server_address:
            self.signaling = SignalingClient(settings.server_address, settings.device_id)
            self.calls = CallManager(
                send=self.signaling.send,
                device_id=settings.device_id,
                capture=self.capture,
            )
            self.signaling.handler = self.calls.handle_message
        self._stop = asyncio.Event()

    def request_stop(self) -> None:
        self._stop.set()

    def _install_signal_handlers(self) -> list:
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                continue  # not on the main thread, or no support on this platform
            installed.append(sig)
        return installed

    def _start_tasks(self) -> list:
        if self.signaling is not None:
            coros = [self.signaling.run(), self.signaling.forward_records(self.mailbox)]
        else:
            coros = [print_records(self.mailbox)]
        return [asyncio.create_task(c) for c in coros]

    async def run(self) -> None:
        """Run until interrupted. Raises ``CaptureError`` if capture cannot start."""
        if self.worker is not None:
            self.worker.start()
        try:
            self.capture.start()
        except BaseException:
            if self.worker is not None:
                self.worker.stop()
            self.capture.close()
            raise
        logger.info(
            "Emitting a spectrum every %.0f ms (offset %.1f dB)",
            self.audio_config.emission_interval_sec * 1000,
            self.pipeline.db_offset,
        )
        signals = self._install_signal_handlers()
        tasks = self._start_tasks()
        try:
            await self._stop.wait()
        finally:
            logger.info("Shutting down")
            self.capture.stop()
            if self.worker is not None:
                self.worker.stop()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if self.calls is not None:
                await self.calls.close()
            self.capture.close()
            loop = asyncio.get_running_loop()
            for sig in signals:
                loop.remove_signal_handler(sig)
            logger.info(
                "Emitted %d records (%d replaced before delivery)",
                self.pipeline.emitted,
                self.mailbox.dropped,
            )

"""Streaming analysis loop: frames -> window -> Welch PSD -> bands + loudness -> JSON record.

The capture callback (or a worker fed by it) calls ``process_frame`` for every
1024-sample frame. Once half a second of audio is buffered, one record is
built, encoded and handed to the outbound channel, and the buffer is emptied.
"""

from __future__ import annotations

import json
import logging
import math
import queue
import threading
import time
from typing import Callable, Dict, Iterator, List, Optional, Union

import numpy as np

from acoustic_agent.audio.config import AudioConfig, load_db_offset
from acoustic_agent.audio.features import (
    BandCalibration,
    Loudness,
    loudness,
    reduce_bands,
    welch_psd,
)
from acoustic_agent.pipeline.outbound import Outbound

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def build_record(
    spectrum: Dict[str, float],
    level: Loudness,
    ts: int,
) -> Dict[str, object]:
    """Assemble one emission record.

    Loudness fields are left out when they are not finite (silent frame).
    """
    record: Dict[str, object] = {"spectrum": spectrum}
    if math.isfinite(level.db_avg):
        record["db_avg"] = level.db_avg
    if math.isfinite(level.db_peak):
        record["db_peak"] = level.db_peak
    record["ts"] = ts
    return record


def encode_record(record: Dict[str, object]) -> bytes:
    """JSON-encode a record as UTF-8; rejects NaN/inf values."""
    return json.dumps(record, allow_nan=False).encode("utf-8")


class SpectrumPipeline:
    """Accumulates capture frames and emits one spectral record per window.

    A single lock guards the window buffer for the whole
    accumulate -> analyse -> emit -> reset sequence, so a window is never
    drained while another frame is being appended.

    Interface:
      mailbox = LatestMailbox()
      pipeline = SpectrumPipeline(mailbox, db_offset=10.0)
      capture.add_listener(pipeline.process_frame)
      ...
      record = mailbox.get(timeout=1.0)
    """

    def __init__(
        self,
        outbound: Outbound,
        audio_config: Optional[AudioConfig] = None,
        db_offset: Optional[float] = None,
        band_calibration: Union[BandCalibration, str] = BandCalibration.ADD,
        clock: Optional[Clock] = None,
    ):
        self.audio_config = audio_config or AudioConfig()
        self.outbound = outbound
        self.db_offset = load_db_offset() if db_offset is None else float(db_offset)
        self.band_calibration = BandCalibration(band_calibration)
        self._clock = clock or time.time

        self._lock = threading.Lock()
        self._frames: List[np.ndarray] = []
        self._buffered = 0
        self._stopped = False
        self.emitted = 0
        self.failed = 0

    @property
    def buffered(self) -> int:
        """Number of samples currently waiting in the window buffer."""
        with self._lock:
            return self._buffered

    def reset(self) -> None:
        """Drop buffered samples (e.g. after a gap in the frame stream)."""
        with self._lock:
            self._clear()

    def stop(self) -> None:
        """Signal ``run`` to exit (checked each frame)."""
        self._stopped = True

    def _clear(self) -> None:
        self._frames = []
        self._buffered = 0

    def _analyze(self, window: np.ndarray, last_frame: np.ndarray) -> Dict[str, object]:
        freqs, power = welch_psd(window, self.audio_config)
        spectrum = reduce_bands(
            freqs,
            power,
            self.audio_config.band_edges,
            offset=self.db_offset,
            rule=self.band_calibration,
        )
        level = loudness(last_frame, self.db_offset, self.audio_config.p_ref)
        ts = int(self._clock() * 1000)
        return build_record(spectrum, level, ts)

    def process_frame(self, frame: np.ndarray) -> Optional[bytes]:
        """Append one frame; analyse and emit if a full window is buffered.

        Returns:
            The encoded record if one was emitted, else None.
        """
        frame = np.asarray(frame, dtype=np.float32).reshape(-1)
        if frame.size == 0:
            return None
        with self._lock:
            self._frames.append(frame)
            self._buffered += frame.size
            if self._buffered < self.audio_config.window_samples:
                return None
            try:
                window = np.concatenate(self._frames)
                record = self._analyze(window, frame)
                try:
                    payload = encode_record(record)
                except (TypeError, ValueError) as exc:
                    self.failed += 1
                    logger.error("Error converting record to JSON: %s", exc)
                    return None
                self.outbound.put(payload)
                self.emitted += 1
                return payload
            finally:
                self._clear()

    def run(self, audio_iterator: Iterator[np.ndarray]) -> int:
        """Feed frames from an iterator until it is exhausted or ``stop()``.

        Returns:
            Number of records emitted during this run.
        """
        self._stopped = False
        start = self.emitted
        for frame in audio_iterator:
            if self._stopped:
                break
            self.process_frame(frame)
        return self.emitted - start

    def run_for_n_records(self, n: int, audio_iterator: Iterator[np.ndarray]) -> List[bytes]:
        """Feed frames until n records were emitted; used for tests and replay."""
        self._stopped = False
        records: List[bytes] = []
        for frame in audio_iterator:
            if len(records) >= n:
                break
            payload = self.process_frame(frame)
            if payload is not None:
                records.append(payload)
        return records


class FrameWorker:
    """Runs the pipeline on its own thread so the audio callback never blocks.

    ``submit`` is called from the audio thread and only does a non-blocking
    queue put. When the queue is full the frame is dropped and the next
    accepted frame is tagged, which makes the worker restart the window so it
    still covers a contiguous stretch of audio.
    """

    def __init__(self, pipeline: SpectrumPipeline, max_pending: int = 64):
        self.pipeline = pipeline
        self._frames: queue.Queue = queue.Queue(maxsize=max_pending)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._gap = False
        self.overruns = 0

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="spectrum-worker", daemon=True)
        self._thread.start()

    def submit(self, frame: np.ndarray) -> None:
        """Queue a frame for analysis; never blocks."""
        try:
            self._frames.put_nowait((frame, self._gap))
            self._gap = False
        except queue.Full:
            self.overruns += 1
            self._gap = True

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the worker; pending frames are discarded.

        No record is emitted after this returns. If frames were discarded the
        pipeline buffer is reset, so a later ``start()`` begins a fresh window.
        """
        if self._thread is None:
            return
        self._stop_event.set()
        try:
            self._frames.put_nowait(None)
        except queue.Full:
            pass  # worker is busy draining and will see the event
        self._thread.join(timeout)
        self._thread = None
        discarded = 0
        while True:
            try:
                item = self._frames.get_nowait()
            except queue.Empty:
                break
            if item is not None:
                discarded += 1
        self._gap = False
        if discarded:
            logger.debug("Discarded %d pending frames on stop", discarded)
            self.pipeline.reset()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            item = self._frames.get()
            if item is None or self._stop_event.is_set():
                break
            frame, gap = item
            if gap:
                logger.warning(
                    "Analysis fell behind, dropped frames (overruns=%d); restarting window",
                    self.overruns,
                )
                self.pipeline.reset()
            try:
                self.pipeline.process_frame(frame)
            except Exception:
                logger.exception("Spectrum analysis failed")

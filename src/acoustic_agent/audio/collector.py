"""Microphone capture at mono 44.1 kHz with a non-blocking frame callback."""

import logging
import threading
from typing import Any, Callable, Optional, Tuple

import numpy as np

try:
    import sounddevice as sd
except (ImportError, OSError):  # OSError: PortAudio library missing
    sd = None  # type: ignore

from acoustic_agent.audio.config import AudioConfig

logger = logging.getLogger(__name__)

FrameListener = Callable[[np.ndarray], None]
StreamFactory = Callable[..., Any]


class CaptureError(RuntimeError):
    """The input stream could not be opened or started."""


def _capture_errors() -> Tuple[type, ...]:
    errors: Tuple[type, ...] = (OSError, ValueError, RuntimeError)
    if sd is not None:
        errors += (sd.PortAudioError,)
    return errors


def _default_stream_factory(**kwargs: Any) -> Any:
    if sd is None:
        raise ImportError("sounddevice is required for capture. pip install sounddevice")
    return sd.InputStream(**kwargs)


def list_input_devices() -> str:
    """Human-readable list of audio devices (as printed by sounddevice)."""
    if sd is None:
        raise ImportError("sounddevice is required for capture. pip install sounddevice")
    return str(sd.query_devices())


class CaptureSource:
    """Pushes fixed-size mono float32 frames from an input device to listeners.

    The callback runs on the audio driver's thread. It copies the frame and
    hands it to every listener; listener errors are logged there and never
    reach the driver.

    Interface:
      capture = CaptureSource(AudioConfig())
      capture.add_listener(pipeline.process_frame)
      capture.start()   # opens the stream if needed
      ...
      capture.stop()
      capture.close()
    """

    def __init__(
        self,
        config: Optional[AudioConfig] = None,
        device: Optional[Any] = None,
        stream_factory: Optional[StreamFactory] = None,
    ):
        self.config = config or AudioConfig()
        self.device = device
        self._stream_factory = stream_factory or _default_stream_factory
        self._listeners: Tuple[FrameListener, ...] = ()
        self._listeners_lock = threading.Lock()
        self._stream: Optional[Any] = None
        self.status_events = 0

    def add_listener(self, listener: FrameListener) -> None:
        with self._listeners_lock:
            self._listeners = self._listeners + (listener,)

    def remove_listener(self, listener: FrameListener) -> None:
        with self._listeners_lock:
            self._listeners = tuple(l for l in self._listeners if l != listener)

    @property
    def active(self) -> bool:
        return self._stream is not None and bool(getattr(self._stream, "active", False))

    def _callback(self, indata: np.ndarray, _frames: int, _time: object, status: object) -> None:
        if status:
            self.status_events += 1
        frame = indata[:, 0].copy() if indata.ndim > 1 else indata.copy()
        for listener in self._listeners:
            try:
                listener(frame)
            except Exception:
                logger.exception("Frame listener %r failed", listener)

    def open(self) -> None:
        """Open the input stream (mono, float32, fixed block size)."""
        if self._stream is not None:
            return
        try:
            self._stream = self._stream_factory(
                samplerate=self.config.sample_rate,
                channels=self.config.channels,
                dtype=self.config.dtype,
                blocksize=self.config.frame_size,
                device=self.device,
                callback=self._callback,
            )
        except _capture_errors() as exc:
            raise CaptureError(f"Failed to open audio stream: {exc}") from exc
        logger.info(
            "Opened input stream device=%s rate=%d block=%d",
            self.device if self.device is not None else "default",
            self.config.sample_rate,
            self.config.frame_size,
        )

    def start(self) -> None:
        """Start capturing; opens the stream first if needed."""
        self.open()
        try:
            self._stream.start()
        except _capture_errors() as exc:
            raise CaptureError(f"Failed to start audio stream: {exc}") from exc
        logger.info("Capturing audio...")

    def stop(self) -> None:
        """Stop the stream; returns once the in-flight callback has finished."""
        if self._stream is None:
            return
        try:
            self._stream.stop()
        except _capture_errors() as exc:
            logger.error("Failed to stop audio stream: %s", exc)

    def close(self) -> None:
        if self._stream is None:
            return
        try:
            self._stream.close()
        except _capture_errors() as exc:
            logger.error("Failed to close audio stream: %s", exc)
        finally:
            self._stream = None
        if self.status_events:
            logger.info("Input stream reported %d over/underflow events", self.status_events)

    def __enter__(self) -> "CaptureSource":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
        self.close()

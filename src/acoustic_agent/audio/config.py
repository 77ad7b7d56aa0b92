"""Centralized capture and analysis configuration.

Encoding standards:
- Audio: mono 44.1 kHz, float32 samples in [-1, 1]
- Capture: 1024-sample callback frames (~23 ms)
- Window: 22050 samples (0.5 s), one record per window
- PSD: Welch, FFT 1024, Hann window
- Bands: 60 upper edges from 20 Hz to 22050 Hz
"""

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

# Band upper edges in Hz. The string form of each edge is a spectrum key on
# the wire, so this list must not change without a protocol bump.
BAND_EDGES: Tuple[float, ...] = (
    # one-third octave
    20, 25, 31.5, 40, 50, 63, 80, 100, 125, 160, 200, 250, 315, 400, 500,
    630, 800, 1000,
    # 1/6 octave
    1120, 1250, 1400, 1600, 1800, 2000, 2240, 2500, 2800, 3150, 3550, 4000,
    4500,
    # 1/12 octave
    5000, 5300, 5600, 6000, 6300, 6700, 7100, 7500, 8000, 8500, 9000, 9500,
    10000, 10600, 11200, 11800, 12500, 13200, 14000, 15000, 16000, 17000,
    18000, 19000, 20000,
    # top of the audible range up to Nyquist
    20500, 21000, 22000, 22050,
)

# Older 32-entry list kept for receivers that still expect it.
LEGACY_BAND_EDGES: Tuple[float, ...] = (
    20, 25, 31.5, 40, 50, 63, 80, 100, 125, 160, 200, 250, 315, 400, 500,
    630, 800, 1000, 1250, 1500, 2000, 2500, 3150, 4000, 5000, 6300, 8000,
    12000, 16000, 20000, 22000, 22050,
)

DB_OFFSET_ENV = "DB_OFFSET"
DEFAULT_DB_OFFSET = 10.0


@dataclass(frozen=True)
class AudioConfig:
    """Audio capture and spectral analysis configuration."""

    # Capture
    sample_rate: int = 44_100
    channels: int = 1  # mono
    dtype: str = "float32"
    frame_size: int = 1024

    # Analysis window; the buffer is analysed once it holds this many samples
    window_samples: int = 22_050

    # Welch PSD
    fft_size: int = 1024

    # SPL reference pressure (20 uPa)
    p_ref: float = 0.00002

    band_edges: Tuple[float, ...] = BAND_EDGES

    @property
    def frame_duration_sec(self) -> float:
        """Duration of one callback frame in seconds."""
        return self.frame_size / self.sample_rate

    @property
    def frames_per_window(self) -> int:
        """Number of callback frames needed to fill a window."""
        return -(-self.window_samples // self.frame_size)

    @property
    def emission_interval_sec(self) -> float:
        """Approximate time between two emitted records."""
        return self.frames_per_window * self.frame_duration_sec


def load_db_offset(environ: Optional[Mapping[str, str]] = None) -> float:
    """Read the calibration offset from ``DB_OFFSET``.

    Falls back to ``DEFAULT_DB_OFFSET`` with a warning when the variable is
    unset or not a finite real number.
    """
    env = os.environ if environ is None else environ
    raw = env.get(DB_OFFSET_ENV)
    if raw is None or not raw.strip():
        logger.warning("%s not set, using default %.1f", DB_OFFSET_ENV, DEFAULT_DB_OFFSET)
        return DEFAULT_DB_OFFSET
    try:
        value = float(raw)
    except ValueError:
        logger.warning(
            "Invalid %s=%r, using default %.1f", DB_OFFSET_ENV, raw, DEFAULT_DB_OFFSET
        )
        return DEFAULT_DB_OFFSET
    if value != value or value in (float("inf"), float("-inf")):
        logger.warning(
            "Non-finite %s=%r, using default %.1f", DB_OFFSET_ENV, raw, DEFAULT_DB_OFFSET
        )
        return DEFAULT_DB_OFFSET
    return value

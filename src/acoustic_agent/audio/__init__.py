"""Audio capture and spectral feature modules."""

from acoustic_agent.audio.config import AudioConfig, BAND_EDGES, LEGACY_BAND_EDGES, load_db_offset
from acoustic_agent.audio.collector import CaptureError, CaptureSource
from acoustic_agent.audio.features import BandCalibration, loudness, reduce_bands, welch_psd

__all__ = [
    "AudioConfig",
    "BAND_EDGES",
    "LEGACY_BAND_EDGES",
    "load_db_offset",
    "CaptureError",
    "CaptureSource",
    "BandCalibration",
    "loudness",
    "reduce_bands",
    "welch_psd",
]

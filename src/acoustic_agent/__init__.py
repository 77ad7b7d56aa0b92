"""Acoustic telemetry agent - capture, spectral analysis, signaling, calls."""

from acoustic_agent.audio.config import AudioConfig
from acoustic_agent.pipeline import LatestMailbox, SpectrumPipeline

__version__ = "0.1.0"

__all__ = ["AudioConfig", "LatestMailbox", "SpectrumPipeline", "__version__"]

"""Streaming spectral analysis pipeline."""

from acoustic_agent.pipeline.outbound import LatestMailbox
from acoustic_agent.pipeline.streaming_loop import FrameWorker, SpectrumPipeline

__all__ = ["FrameWorker", "LatestMailbox", "SpectrumPipeline"]

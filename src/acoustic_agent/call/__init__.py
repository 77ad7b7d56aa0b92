"""WebRTC audio calls triggered over the signaling channel."""

from acoustic_agent.call.session import CallManager, CaptureTrack, parse_ice_candidate

__all__ = ["CallManager", "CaptureTrack", "parse_ice_candidate"]

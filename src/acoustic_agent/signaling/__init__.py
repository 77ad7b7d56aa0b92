"""Signaling channel to the server (record forwarding and call control)."""

from acoustic_agent.signaling.client import SignalingClient, signal_url
from acoustic_agent.signaling.messages import Message, MessageError

__all__ = ["Message", "MessageError", "SignalingClient", "signal_url"]

"""Signaling envelope exchanged with the server over the text channel."""

from __future__ import annotations

import json
from dataclasses import dataclass

# Agent -> server
REGISTER = "register"
LOG = "log"
SDP_OFFER = "sdpOffer"
# Part of the wire vocabulary; never sent here, candidates travel inside the offer SDP.
SEND_ICE_CANDIDATE = "sendIceCandidate"

# Server -> agent
START_CALL = "startCall"
END_CALL = "endCall"
SDP_ANSWER = "sdpAnswer"
RECEIVE_ICE_CANDIDATE = "receiveIceCandidate"


class MessageError(ValueError):
    """Inbound text is not a valid signaling message."""


@dataclass(frozen=True)
class Message:
    """One signaling message; ``data`` carries an action-specific string."""

    action: str
    device_id: str = ""
    client_id: str = ""
    data: str = ""

    def to_dict(self) -> dict:
        return {
            "deviceId": self.device_id,
            "clientId": self.client_id,
            "data": self.data,
            "action": self.action,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Message":
        """Parse a message; missing string fields default to empty."""
        try:
            obj = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise MessageError(f"invalid JSON: {exc}") from exc
        if not isinstance(obj, dict):
            raise MessageError(f"expected a JSON object, got {type(obj).__name__}")
        fields = {}
        for key, attr in (
            ("action", "action"),
            ("deviceId", "device_id"),
            ("clientId", "client_id"),
            ("data", "data"),
        ):
            value = obj.get(key, "")
            if value is None:
                value = ""
            if not isinstance(value, str):
                raise MessageError(f"field {key!r} must be a string")
            fields[attr] = value
        return cls(**fields)

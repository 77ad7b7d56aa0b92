"""On-demand audio calls negotiated over the signaling channel (aiortc).

The server asks for a call with ``startCall``; the agent answers with an SDP
offer carrying a send-only microphone track. The track is fed by the same
capture stream as the analysis pipeline, so the device is opened only once.
"""

from __future__ import annotations

import asyncio
import json
import logging
from fractions import Fraction
from typing import Any, Awaitable, Callable, Optional, Sequence

import av
import numpy as np
from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.mediastreams import MediaStreamError
from aiortc.sdp import candidate_from_sdp

from acoustic_agent.audio.collector import CaptureSource
from acoustic_agent.signaling.messages import (
    END_CALL,
    RECEIVE_ICE_CANDIDATE,
    SDP_ANSWER,
    SDP_OFFER,
    START_CALL,
    Message,
)

logger = logging.getLogger(__name__)

STUN_SERVER = "stun:stun.l.google.com:19302"

SendMessage = Callable[[Message], Awaitable[bool]]
PeerConnectionFactory = Callable[..., Any]

_NEGOTIATION_ERRORS = (ValueError, InvalidStateError, InvalidAccessError)


class CaptureTrack(MediaStreamTrack):
    """Audio track fed with float32 frames from the capture callback.

    ``push`` runs on the audio thread and hands the frame to the event loop;
    when the sender falls behind, frames are dropped.
    """

    kind = "audio"

    def __init__(
        self,
        sample_rate: int,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        max_pending: int = 50,
    ):
        super().__init__()
        self._sample_rate = int(sample_rate)
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._timestamp = 0
        self._time_base = Fraction(1, self._sample_rate)
        self.dropped = 0

    def push(self, frame: np.ndarray) -> None:
        if self.readyState != "live" or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._enqueue, frame)

    def _enqueue(self, frame: np.ndarray) -> None:
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            self.dropped += 1

    async def recv(self) -> av.AudioFrame:  # type: ignore[override]
        if self.readyState != "live":
            raise MediaStreamError
        samples = await self._queue.get()
        pcm = (np.clip(samples, -1.0, 1.0) * 32767).astype(np.int16).reshape(1, -1)
        frame = av.AudioFrame.from_ndarray(pcm, format="s16", layout="mono")
        frame.sample_rate = self._sample_rate
        frame.pts = self._timestamp
        frame.time_base = self._time_base
        self._timestamp += pcm.shape[1]
        return frame


def parse_ice_candidate(data: str) -> Optional[RTCIceCandidate]:
    """Parse a browser ICE candidate (``{"candidate", "sdpMid", "sdpMLineIndex"}``).

    Returns None for the empty end-of-candidates marker.
    """
    try:
        init = json.loads(data)
    except ValueError as exc:
        raise ValueError(f"Failed to unmarshal ICE candidate: {exc}") from exc
    if not isinstance(init, dict):
        raise ValueError("ICE candidate must be a JSON object")
    line = init.get("candidate") or ""
    if not line:
        return None
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = init.get("sdpMid")
    candidate.sdpMLineIndex = init.get("sdpMLineIndex")
    return candidate


class CallManager:
    """Runs at most one peer connection at a time, driven by signaling messages.

    Interface:
      calls = CallManager(send=client.send, device_id="dev-1", capture=capture)
      client.handler = calls.handle_message
      ...
      await calls.close()
    """

    def __init__(
        self,
        send: SendMessage,
        device_id: str,
        capture: Optional[CaptureSource] = None,
        ice_servers: Sequence[str] = (STUN_SERVER,),
        pc_factory: Optional[PeerConnectionFactory] = None,
    ):
        self._send = send
        self.device_id = device_id
        self.capture = capture
        self.ice_servers = list(ice_servers)
        self._pc_factory = pc_factory or RTCPeerConnection
        self._pc: Optional[Any] = None
        self._track: Optional[CaptureTrack] = None
        self.client_id = ""

    @property
    def in_call(self) -> bool:
        return self._pc is not None

    async def handle_message(self, message: Message) -> None:
        action = message.action
        if action == START_CALL:
            await self.start_call(message.client_id)
        elif action == END_CALL:
            await self.end_call()
        elif action == SDP_ANSWER:
            await self.apply_answer(message.data)
        elif action == RECEIVE_ICE_CANDIDATE:
            await self.add_ice_candidate(message.data)
        else:
            logger.debug("Ignoring signaling action %r", action)

    def _attach_track(self, pc: Any) -> None:
        if self.capture is None:
            logger.warning("No capture source, offering a call without audio")
            return
        self._track = CaptureTrack(self.capture.config.sample_rate)
        self.capture.add_listener(self._track.push)
        pc.addTransceiver(self._track, direction="sendonly")

    async def start_call(self, client_id: str) -> None:
        """Replace any running call with a new one and send the offer."""
        if self._pc is not None:
            await self.end_call()

        configuration = RTCConfiguration(
            iceServers=[RTCIceServer(urls=self.ice_servers)]
        )
        pc = self._pc_factory(configuration=configuration)
        self._pc = pc
        self.client_id = client_id

        @pc.on("iceconnectionstatechange")
        async def on_ice_state_change() -> None:
            logger.info("Connection State has changed %s", pc.iceConnectionState)

        self._attach_track(pc)

        # aiortc gathers all ICE candidates here; they travel inside the offer SDP.
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        local = pc.localDescription
        data = json.dumps({"type": local.type, "sdp": local.sdp})
        sent = await self._send(
            Message(SDP_OFFER, device_id=self.device_id, client_id=client_id, data=data)
        )
        if not sent:
            logger.error("Failed to send offer msg to client %r", client_id)
        else:
            logger.info("Sent SDP offer to client %r", client_id)

    async def apply_answer(self, sdp: str) -> None:
        if self._pc is None:
            logger.warning("SDP answer without an active call")
            return
        try:
            await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))
        except _NEGOTIATION_ERRORS as exc:
            logger.error("handle SDP answer err: %s", exc)

    async def add_ice_candidate(self, data: str) -> None:
        if self._pc is None:
            logger.warning("ICE candidate without an active call")
            return
        try:
            candidate = parse_ice_candidate(data)
        except ValueError as exc:
            logger.error("%s", exc)
            return
        if candidate is None:
            logger.debug("Remote ICE gathering complete")
            return
        try:
            await self._pc.addIceCandidate(candidate)
        except _NEGOTIATION_ERRORS as exc:
            logger.error("Failed to add ICE candidate: %s", exc)

    async def end_call(self) -> None:
        pc, self._pc = self._pc, None
        track, self._track = self._track, None
        if track is not None:
            if self.capture is not None:
                self.capture.remove_listener(track.push)
            track.stop()
        if pc is not None:
            await pc.close()
            logger.info("Call with client %r closed", self.client_id)
        self.client_id = ""

    async def close(self) -> None:
        await self.end_call()

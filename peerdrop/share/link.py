"""
Direct peer link: one ordered, reliable WebRTC data channel between host and
receiver, negotiated through the broker's opaque relay.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from peerdrop.core.interfaces import ChannelAdapter

from .errors import TransportError
from .ice import FALLBACK_ICE_SERVERS
from .messages import Answer, IceCandidate, Offer
from .room import HOST, RECEIVER
from .transfer import CHUNK_SIZE

logger = logging.getLogger(__name__)

CHANNEL_LABEL = "fileTransfer"
OPEN_TIMEOUT = 30
LOW_WATER_MARK = CHUNK_SIZE * 4

SignalSender = Callable[[Dict[str, Any]], Awaitable[None]]


def build_configuration(servers: List[Dict[str, Any]]) -> RTCConfiguration:
    return RTCConfiguration(iceServers=[
        RTCIceServer(urls=s["urls"], username=s.get("username"), credential=s.get("credential"))
        for s in servers
    ])


class RTCChannel(ChannelAdapter):
    """ChannelAdapter over an aiortc data channel, drained by ``bufferedamountlow``."""

    def __init__(self, channel, low_water_mark: int = LOW_WATER_MARK):
        self.channel = channel
        self.channel.bufferedAmountLowThreshold = low_water_mark
        self._drained = asyncio.Event()
        self.channel.on("bufferedamountlow", self._drained.set)

    def send(self, data: Union[str, bytes]) -> None:
        try:
            self.channel.send(data)
        except InvalidStateError as e:
            raise TransportError("Data channel closed during transfer") from e

    @property
    def buffered_amount(self) -> int:
        return self.channel.bufferedAmount

    @property
    def is_open(self) -> bool:
        return self.channel.readyState == "open"

    async def wait_for_drain(self, timeout: float) -> None:
        self._drained.clear()
        try:
            await asyncio.wait_for(self._drained.wait(), timeout)
        except asyncio.TimeoutError:
            pass


class PeerLink:
    """
    Brings up the data channel for one side of a room.

    The host creates the channel and offers; the receiver answers and picks
    the channel up from the ``datachannel`` event. Once ``mark_complete()``
    has been called, a failed or closed connection is ordinary teardown.
    """

    def __init__(self, role: str, room_id: str, send_signal: SignalSender,
                 ice_servers: Optional[List[Dict[str, Any]]] = None,
                 on_state: Optional[Callable[[str], None]] = None):
        if role not in (HOST, RECEIVER):
            raise ValueError(f"Unknown role: {role}")
        self.role = role
        self.room_id = room_id
        self.send_signal = send_signal
        self.on_state = on_state
        self.on_message: Optional[Callable[[Union[str, bytes]], None]] = None

        self.pc = RTCPeerConnection(configuration=build_configuration(ice_servers or FALLBACK_ICE_SERVERS))
        self.channel: Optional[RTCChannel] = None
        self.opened = asyncio.Event()
        self.failed = asyncio.Event()
        self.failure: Optional[TransportError] = None
        self.transfer_complete = False
        self._closing = False
        self._remote_set = False
        self._pending_candidates: List[Dict[str, Any]] = []

        self.pc.on("connectionstatechange", self._on_connection_state_change)
        self.pc.on("iceconnectionstatechange", self._on_ice_state_change)
        # aiortc embeds gathered candidates in the SDP, but relay any it reports
        self.pc.on("icecandidate", self._on_local_candidate)

        if role == HOST:
            self._attach(self.pc.createDataChannel(CHANNEL_LABEL, ordered=True))
        else:
            self.pc.on("datachannel", self._attach)

    # --- handshake ---

    async def create_offer(self):
        try:
            offer = await self.pc.createOffer()
            await self.pc.setLocalDescription(offer)
        except (ValueError, InvalidStateError, InvalidAccessError) as e:
            raise TransportError(f"Offer failed: {e}") from e
        await self.send_signal(Offer(room_id=self.room_id, sdp=self.pc.localDescription.sdp).to_dict())

    async def handle_offer(self, sdp: str):
        try:
            await self.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="offer"))
            self._remote_set = True
            await self._flush_candidates()
            answer = await self.pc.createAnswer()
            await self.pc.setLocalDescription(answer)
        except (ValueError, InvalidStateError, InvalidAccessError) as e:
            raise TransportError(f"Offer handling failed: {e}") from e
        await self.send_signal(Answer(room_id=self.room_id, sdp=self.pc.localDescription.sdp).to_dict())

    async def handle_answer(self, sdp: str):
        try:
            await self.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))
        except (ValueError, InvalidStateError, InvalidAccessError) as e:
            raise TransportError(f"Answer failed: {e}") from e
        self._remote_set = True
        await self._flush_candidates()

    async def add_remote_candidate(self, payload: Optional[Dict[str, Any]]):
        if not payload:
            return  # end-of-candidates
        if not self._remote_set:
            self._pending_candidates.append(payload)
            return
        line = payload.get("candidate") or ""
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        if not line:
            return
        try:
            candidate = candidate_from_sdp(line)
            candidate.sdpMid = payload.get("sdpMid")
            candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
            await self.pc.addIceCandidate(candidate)
        except (ValueError, IndexError, InvalidStateError) as e:
            logger.warning(f"Ignoring bad ICE candidate: {e}")

    async def _flush_candidates(self):
        pending, self._pending_candidates = self._pending_candidates, []
        for payload in pending:
            await self.add_remote_candidate(payload)

    async def _on_local_candidate(self, candidate):
        if candidate is None:
            return
        await self.send_signal(IceCandidate(room_id=self.room_id, candidate={
            "candidate": "candidate:" + candidate_to_sdp(candidate),
            "sdpMid": candidate.sdpMid,
            "sdpMLineIndex": candidate.sdpMLineIndex,
        }).to_dict())

    # --- channel ---

    def _attach(self, channel):
        self.channel = RTCChannel(channel)
        logger.info(f"Data channel '{channel.label}' attached ({self.role})")

        @channel.on("open")
        def on_open():
            logger.info("Data channel open")
            self.opened.set()

        @channel.on("message")
        def on_message(message):
            if self.on_message:
                self.on_message(message)

        @channel.on("close")
        def on_close():
            logger.info("Data channel closed")
            self.handle_state("closed")

        if channel.readyState == "open":
            self.opened.set()

    async def wait_open(self, timeout: float = OPEN_TIMEOUT) -> RTCChannel:
        """Wait for the data channel, raising TransportError on failure or timeout."""
        opened = asyncio.ensure_future(self.opened.wait())
        failed = asyncio.ensure_future(self.failed.wait())
        try:
            await asyncio.wait({opened, failed}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            opened.cancel()
            failed.cancel()
        if self.failure is not None:
            raise self.failure
        if not self.opened.is_set():
            raise TransportError("Timed out waiting for the data channel")
        return self.channel

    # --- state ---

    def mark_complete(self):
        self.transfer_complete = True

    def _on_connection_state_change(self):
        self.handle_state(self.pc.connectionState)

    def _on_ice_state_change(self):
        state = self.pc.iceConnectionState
        logger.debug(f"ICE state: {state}")
        if state == "checking" and self.on_state:
            self.on_state("Finding best connection path...")

    def handle_state(self, state: str):
        logger.info(f"Connection state: {state}")
        if state == "connecting":
            self._report("Establishing P2P connection...")
        elif state == "connected":
            self._report("Connected!")
        elif state in ("failed", "disconnected", "closed"):
            if self.transfer_complete or self._closing:
                logger.info("Connection closed after successful transfer")
                return
            if state == "failed":
                self._fail(TransportError("P2P connection failed. Try again on both devices."))
            else:
                self._fail(TransportError("Connection interrupted"))

    def _fail(self, error: TransportError):
        if self.failure is None:
            self.failure = error
            logger.warning(str(error))
            self._report(str(error))
        self.failed.set()

    def _report(self, text: str):
        if self.on_state:
            self.on_state(text)

    async def close(self):
        self._closing = True
        await self.pc.close()

"""Negotiation capability used by the peer connection manager.

``PeerTransport`` is the narrow surface the manager drives: offer/answer
generation, description application, candidate application and outgoing
video replacement. ``AiortcPeerTransport`` implements it on top of
``aiortc.RTCPeerConnection``. Tests substitute their own implementation.

Session descriptions and candidates cross this boundary in their wire form
(see ``meshcall.protocol.session_description``). Outgoing tracks handed to a
transport belong to it: they are stopped when replaced or when the transport
closes.
"""

import abc
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from meshcall.config import IceConfig
from meshcall.protocol import session_description

logger = logging.getLogger(__name__)

CandidateCallback = Callable[[Dict[str, Any]], Awaitable[None]]
StateCallback = Callable[[str], Awaitable[None]]
TrackCallback = Callable[[Any], None]


class PeerTransport(abc.ABC):
    """One peer connection as seen by the negotiation state machine."""

    def __init__(self):
        self._on_local_candidate: Optional[CandidateCallback] = None
        self._on_connection_state: Optional[StateCallback] = None
        self._on_remote_track: Optional[TrackCallback] = None

    def bind(
        self,
        on_local_candidate: Optional[CandidateCallback] = None,
        on_connection_state: Optional[StateCallback] = None,
        on_remote_track: Optional[TrackCallback] = None,
    ) -> None:
        """Register the manager's event callbacks."""
        self._on_local_candidate = on_local_candidate
        self._on_connection_state = on_connection_state
        self._on_remote_track = on_remote_track

    @abc.abstractmethod
    def add_track(self, track) -> None:
        """Attach an outgoing local track."""

    def add_receive_only(self) -> None:
        """Request remote media on a connection with no local tracks."""

    @abc.abstractmethod
    async def create_offer(self) -> Dict[str, str]:
        """Generate a local offer."""

    @abc.abstractmethod
    async def create_answer(self) -> Dict[str, str]:
        """Generate a local answer to the applied remote offer."""

    @abc.abstractmethod
    async def set_local_description(self, description: Dict[str, str]) -> None:
        ...

    @abc.abstractmethod
    async def set_remote_description(self, description: Dict[str, str]) -> None:
        ...

    @abc.abstractmethod
    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    async def replace_outgoing_video_track(self, track) -> bool:
        """Swap the outgoing video track without renegotiating.

        Returns:
            False if the connection has no outgoing video to replace.
        """

    @property
    @abc.abstractmethod
    def local_description(self) -> Optional[Dict[str, str]]:
        """The applied local description, as it should be sent."""

    @property
    @abc.abstractmethod
    def outgoing_video_track(self):
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        ...


def build_rtc_configuration(ice: IceConfig) -> RTCConfiguration:
    """Translate ICE settings into an aiortc configuration."""
    servers: List[RTCIceServer] = []
    if ice.stun_urls:
        servers.append(RTCIceServer(urls=list(ice.stun_urls)))
    if ice.turn_url:
        servers.append(
            RTCIceServer(
                urls=ice.turn_url,
                username=ice.turn_username,
                credential=ice.turn_credential,
            )
        )
    return RTCConfiguration(iceServers=servers)


def parse_candidate(candidate: Dict[str, Any]):
    """Build an aiortc candidate from its wire form.

    Returns None for the empty end-of-candidates marker.
    """
    candidate_str = candidate.get("candidate") or ""
    if candidate_str.startswith("candidate:"):
        candidate_str = candidate_str[len("candidate:"):]
    if not candidate_str:
        return None
    parsed = candidate_from_sdp(candidate_str)
    parsed.sdpMid = candidate.get("sdpMid")
    parsed.sdpMLineIndex = candidate.get("sdpMLineIndex")
    return parsed


class AiortcPeerTransport(PeerTransport):
    """``PeerTransport`` backed by ``aiortc.RTCPeerConnection``.

    aiortc gathers ICE candidates while applying the local description and
    embeds them in it, so ``local_description`` (not the raw offer/answer)
    is what gets sent.
    """

    def __init__(self, peer_id: str, ice: IceConfig):
        super().__init__()
        self.peer_id = peer_id
        self.pc = RTCPeerConnection(configuration=build_rtc_configuration(ice))
        self._video_sender = None

        @self.pc.on("connectionstatechange")
        async def on_connection_state_change():
            state = self.pc.connectionState
            logger.info(f"Connection state with {self.peer_id}: {state}")
            if self._on_connection_state:
                await self._on_connection_state(state)

        @self.pc.on("track")
        def on_track(track: MediaStreamTrack):
            logger.info(f"Received remote {track.kind} track from {self.peer_id}")
            if self._on_remote_track:
                self._on_remote_track(track)

    def add_track(self, track) -> None:
        sender = self.pc.addTrack(track)
        if track.kind == "video":
            self._video_sender = sender

    def add_receive_only(self) -> None:
        self.pc.addTransceiver("audio", direction="recvonly")
        self.pc.addTransceiver("video", direction="recvonly")

    async def create_offer(self) -> Dict[str, str]:
        offer = await self.pc.createOffer()
        return session_description(offer.type, offer.sdp)

    async def create_answer(self) -> Dict[str, str]:
        answer = await self.pc.createAnswer()
        return session_description(answer.type, answer.sdp)

    async def set_local_description(self, description: Dict[str, str]) -> None:
        await self.pc.setLocalDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def set_remote_description(self, description: Dict[str, str]) -> None:
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None:
        parsed = parse_candidate(candidate)
        if parsed is None:
            logger.debug(f"End of candidates from {self.peer_id}")
            return
        await self.pc.addIceCandidate(parsed)

    async def replace_outgoing_video_track(self, track) -> bool:
        if self._video_sender is None:
            logger.debug(f"No outgoing video sender for {self.peer_id}")
            return False
        previous = self._video_sender.track
        # replaceTrack is synchronous in current aiortc, awaitable in some releases
        result = self._video_sender.replaceTrack(track)
        if inspect.isawaitable(result):
            await result
        if previous is not None and previous is not track:
            previous.stop()
        return True

    @property
    def local_description(self) -> Optional[Dict[str, str]]:
        description = self.pc.localDescription
        if description is None:
            return None
        return session_description(description.type, description.sdp)

    @property
    def outgoing_video_track(self):
        if self._video_sender is None:
            return None
        return self._video_sender.track

    async def close(self) -> None:
        for sender in self.pc.getSenders():
            if sender.track is not None:
                sender.track.stop()
        await self.pc.close()


TransportFactory = Callable[[str], PeerTransport]


def aiortc_transport_factory(ice: IceConfig) -> TransportFactory:
    """Return a factory that builds an aiortc transport per peer id."""

    def factory(peer_id: str) -> PeerTransport:
        return AiortcPeerTransport(peer_id, ice)

    return factory

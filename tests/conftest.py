"""Shared fakes for meshcall tests.

Negotiation is exercised against in-memory stand-ins for the signaling
socket, the per-peer transport and the capture source, so no test touches
real ICE, devices or the network.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from websockets.exceptions import ConnectionClosedOK
from websockets.protocol import State

from meshcall.client.chat import ChatRelay
from meshcall.client.session import RoomSession
from meshcall.client.transport import SignalTransport
from meshcall.media.controller import MediaController
from meshcall.media.sources import MediaSource
from meshcall.mesh.peer_manager import PeerConnectionManager
from meshcall.mesh.rtc_backend import PeerTransport


async def settle(rounds: int = 10) -> None:
    """Let scheduled callbacks (e.g. track "ended" handlers) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeTrack(MediaStreamTrack):
    def __init__(self, kind: str, label: str = ""):
        super().__init__()
        self.kind = kind
        self.label = label
        self.enabled = True

    async def recv(self):
        raise MediaStreamError

    def __repr__(self):
        return f"FakeTrack({self.label or self.kind})"


class FakeWebSocket:
    """Stands in for a websockets client connection."""

    def __init__(self):
        self.state = State.OPEN
        self.sent: List[Dict[str, Any]] = []
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, frame: str) -> None:
        if self.state is not State.OPEN:
            raise ConnectionClosedOK(None, None)
        self.sent.append(json.loads(frame))

    def feed(self, message) -> None:
        if not isinstance(message, (str, bytes)):
            message = json.dumps(message)
        self._incoming.put_nowait(message)

    def finish(self) -> None:
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message

    async def close(self) -> None:
        self.state = State.CLOSED
        self.finish()


class RecordingSender:
    """Collects outbound envelopes in place of SignalTransport.send."""

    def __init__(self):
        self.envelopes: List[Dict[str, Any]] = []
        self.log: Optional[List[str]] = None

    async def __call__(self, envelope: Dict[str, Any]) -> bool:
        self.envelopes.append(envelope)
        if self.log is not None:
            self.log.append(f"send:{envelope['type']}")
        return True

    def of_type(self, msg_type: str) -> List[Dict[str, Any]]:
        return [e for e in self.envelopes if e["type"] == msg_type]


class FakePeerTransport(PeerTransport):
    """Records every negotiation call made by the manager."""

    def __init__(self, peer_id: str):
        super().__init__()
        self.peer_id = peer_id
        self.calls: List[tuple] = []
        self.tracks: list = []
        self.applied_candidates: List[Dict[str, Any]] = []
        self.remote_descriptions: List[Dict[str, str]] = []
        self.receive_only = False
        self.closed = False
        self.fail_replace = False
        self.fail_remote = False
        self.bad_candidates: set = set()
        self._local = None
        self._video = None

    def add_track(self, track) -> None:
        self.calls.append(("add_track", track))
        self.tracks.append(track)
        if track.kind == "video":
            self._video = track

    def add_receive_only(self) -> None:
        self.receive_only = True

    async def create_offer(self):
        self.calls.append(("create_offer",))
        return {"type": "offer", "sdp": f"offer-sdp-{self.peer_id}"}

    async def create_answer(self):
        self.calls.append(("create_answer",))
        return {"type": "answer", "sdp": f"answer-sdp-{self.peer_id}"}

    async def set_local_description(self, description) -> None:
        self.calls.append(("set_local", description["type"]))
        self._local = description

    async def set_remote_description(self, description) -> None:
        self.calls.append(("set_remote", description["type"]))
        if self.fail_remote:
            raise ValueError("bad remote description")
        self.remote_descriptions.append(description)

    async def add_ice_candidate(self, candidate) -> None:
        self.calls.append(("add_candidate", candidate["candidate"]))
        if candidate["candidate"] in self.bad_candidates:
            raise ValueError("rejected candidate")
        self.applied_candidates.append(candidate)

    async def replace_outgoing_video_track(self, track) -> bool:
        self.calls.append(("replace_video", track))
        if self.fail_replace:
            raise RuntimeError("sender gone")
        if self._video is None and not self.tracks:
            return False
        self._video = track
        return True

    @property
    def local_description(self):
        return self._local

    @property
    def outgoing_video_track(self):
        return self._video

    async def close(self) -> None:
        self.closed = True

    # Test drivers for transport-originated events

    async def emit_connection_state(self, state: str) -> None:
        await self._on_connection_state(state)

    async def emit_local_candidate(self, candidate) -> None:
        await self._on_local_candidate(candidate)

    def emit_remote_track(self, track) -> None:
        self._on_remote_track(track)


class FakeTransportFactory:
    def __init__(self):
        self.created: Dict[str, FakePeerTransport] = {}
        self.build_count = 0

    def __call__(self, peer_id: str) -> FakePeerTransport:
        self.build_count += 1
        transport = FakePeerTransport(peer_id)
        self.created[peer_id] = transport
        return transport


class FakeMediaSource(MediaSource):
    def __init__(self):
        self.camera_error: Optional[Exception] = None
        self.screen_error: Optional[Exception] = None
        self.camera_calls = 0
        self.screen_calls = 0
        self.audio = FakeTrack("audio", "microphone")
        self.video = FakeTrack("video", "camera")
        self.screens: List[FakeTrack] = []
        self.log: Optional[List[str]] = None

    async def open_camera(self):
        self.camera_calls += 1
        if self.log is not None:
            self.log.append("open_camera")
        if self.camera_error is not None:
            raise self.camera_error
        return self.audio, self.video

    async def open_screen(self):
        self.screen_calls += 1
        if self.screen_error is not None:
            raise self.screen_error
        screen = FakeTrack("video", f"screen-{len(self.screens)}")
        self.screens.append(screen)
        return screen


def candidate(n: int) -> Dict[str, Any]:
    return {"candidate": f"candidate:{n} 1 udp 1 10.0.0.{n} 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}


def offer_sdp(tag: str = "remote") -> Dict[str, str]:
    return {"type": "offer", "sdp": f"v=0 {tag}"}


def answer_sdp(tag: str = "remote") -> Dict[str, str]:
    return {"type": "answer", "sdp": f"v=0 {tag}"}


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def factory():
    return FakeTransportFactory()


@pytest.fixture
def media_source():
    return FakeMediaSource()


@pytest.fixture
def media(media_source):
    return MediaController(media_source)


@pytest.fixture
def manager(sender, factory, media):
    peers = PeerConnectionManager(send=sender, transport_factory=factory, media=media)
    media.bind_connections(peers)
    return peers


@pytest.fixture
def websocket():
    return FakeWebSocket()


@pytest.fixture
def signal_transport(websocket):
    async def connect(url):
        return websocket

    return SignalTransport("ws://relay.test/signal", connect=connect)


@pytest.fixture
def session(signal_transport, factory, media):
    """RoomSession wired to a connected-on-demand fake socket."""
    peers = PeerConnectionManager(
        send=signal_transport.send, transport_factory=factory, media=media
    )
    media.bind_connections(peers)
    chat = ChatRelay(send=signal_transport.send)
    return RoomSession(signal_transport, peers, media, chat)

"""Tests for the aiortc-backed transport and capture helpers."""

import asyncio
from fractions import Fraction
from unittest import mock

import numpy as np
import pytest
from aiortc.mediastreams import MediaStreamError
from av import VideoFrame

from conftest import FakeMediaSource, FakeTrack, RecordingSender
from meshcall.config import IceConfig, MediaConfig
from meshcall.exceptions import MediaAcquisitionFailure, ScreenShareUnsupported
from meshcall.media.controller import MediaController
from meshcall.media.sources import PlayerMediaSource, SwitchableTrack, default_devices
from meshcall.mesh.peer_manager import PeerConnectionManager
from meshcall.mesh.rtc_backend import (
    AiortcPeerTransport,
    aiortc_transport_factory,
    build_rtc_configuration,
    parse_candidate,
)


class TestBackendHelpers:
    def test_rtc_configuration_with_turn(self):
        ice = IceConfig(
            stun_urls=["stun:a"], turn_url="turn:b", turn_username="u", turn_credential="c"
        )
        configuration = build_rtc_configuration(ice)

        assert len(configuration.iceServers) == 2
        assert configuration.iceServers[0].urls == ["stun:a"]
        assert configuration.iceServers[1].username == "u"

    def test_rtc_configuration_default_stun_only(self):
        configuration = build_rtc_configuration(IceConfig())
        assert len(configuration.iceServers) == 1

    def test_parse_candidate(self):
        parsed = parse_candidate(
            {
                "candidate": "candidate:842163049 1 udp 1677729535 203.0.113.5 46154 typ srflx "
                "raddr 10.0.0.2 rport 46154",
                "sdpMid": "0",
                "sdpMLineIndex": 0,
            }
        )

        assert parsed.ip == "203.0.113.5"
        assert parsed.port == 46154
        assert parsed.type == "srflx"
        assert parsed.sdpMid == "0"
        assert parsed.sdpMLineIndex == 0

    @pytest.mark.parametrize("raw", ["", None])
    def test_end_of_candidates(self, raw):
        assert parse_candidate({"candidate": raw, "sdpMid": "0", "sdpMLineIndex": 0}) is None


class TestAiortcPeerTransport:
    @pytest.mark.asyncio
    async def test_offer_includes_local_tracks(self):
        transport = AiortcPeerTransport("p1", IceConfig(stun_urls=[]))
        transport.add_track(FakeTrack("audio"))
        transport.add_track(FakeTrack("video"))
        try:
            offer = await transport.create_offer()
            assert offer["type"] == "offer"
            assert "m=audio" in offer["sdp"]
            assert "m=video" in offer["sdp"]
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_replace_without_video_sender(self):
        transport = AiortcPeerTransport("p1", IceConfig(stun_urls=[]))
        try:
            assert await transport.replace_outgoing_video_track(FakeTrack("video")) is False
            assert transport.outgoing_video_track is None
        finally:
            await transport.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("awaitable", [False, True])
    async def test_replace_sync_or_awaitable_sender(self, awaitable):
        transport = AiortcPeerTransport("p1", IceConfig(stun_urls=[]))
        sender = mock.AsyncMock() if awaitable else mock.MagicMock()
        previous = FakeTrack("video", "previous")
        sender.track = previous
        transport._video_sender = sender
        track = FakeTrack("video")
        try:
            assert await transport.replace_outgoing_video_track(track) is True
            sender.replaceTrack.assert_called_once_with(track)
            assert previous.readyState == "ended"
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_local_description_empty_before_negotiation(self):
        transport = AiortcPeerTransport("p1", IceConfig(stun_urls=[]))
        try:
            assert transport.local_description is None
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_close_stops_outgoing_tracks(self):
        transport = AiortcPeerTransport("p1", IceConfig(stun_urls=[]))
        track = FakeTrack("video")
        transport.add_track(track)

        await transport.close()

        assert track.readyState == "ended"


class CountingTrack(FakeTrack):
    """Video source that numbers its frames through ``pts``."""

    def __init__(self):
        super().__init__("video", "counting")
        self.produced = 0

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError
        await asyncio.sleep(0.001)
        frame = VideoFrame(width=4, height=4, format="yuv420p")
        frame.pts = self.produced
        frame.time_base = Fraction(1, 30)
        self.produced += 1
        return frame


async def _read_pts(track, count):
    return [(await track.recv()).pts for _ in range(count)]


class TestMeshFanOut:
    @pytest.mark.asyncio
    async def test_every_connection_receives_every_frame(self):
        source = FakeMediaSource()
        source.video = CountingTrack()
        media = MediaController(source)
        manager = PeerConnectionManager(
            send=RecordingSender(),
            transport_factory=aiortc_transport_factory(IceConfig(stun_urls=[])),
            media=media,
        )
        media.bind_connections(manager)
        await media.acquire_local_media()
        await manager.create("a", is_initiator=False)
        await manager.create("b", is_initiator=False)

        try:
            sent_a = manager.get("a").transport.outgoing_video_track
            sent_b = manager.get("b").transport.outgoing_video_track
            assert sent_a is not sent_b

            pts_a, pts_b = await asyncio.wait_for(
                asyncio.gather(_read_pts(sent_a, 10), _read_pts(sent_b, 10)), timeout=5
            )

            assert pts_a == pts_b
            assert pts_a == list(range(pts_a[0], pts_a[0] + 10))
        finally:
            await manager.close_all()
            await media.release()
            await asyncio.sleep(0.01)

        assert sent_a.readyState == "ended"
        assert sent_b.readyState == "ended"


class TestDefaultDevices:
    def test_macos(self):
        devices = default_devices("Darwin")
        assert devices["camera"][1] == "avfoundation"
        assert devices["screen"] is not None

    def test_windows(self):
        assert default_devices("Windows")["screen"] == ("desktop", "gdigrab")

    def test_linux_without_display(self, monkeypatch):
        monkeypatch.delenv("DISPLAY", raising=False)
        devices = default_devices("Linux")
        assert devices["camera"] == ("/dev/video0", "v4l2")
        assert devices["screen"] is None

    def test_linux_with_display(self, monkeypatch):
        monkeypatch.setenv("DISPLAY", ":0")
        assert default_devices("Linux")["screen"] == (":0", "x11grab")


class FrameTrack(FakeTrack):
    def __init__(self):
        super().__init__("video", "frames")

    async def recv(self):
        frame = VideoFrame.from_ndarray(np.full((4, 6, 3), 200, dtype=np.uint8), format="bgr24")
        frame.pts = 42
        frame.time_base = Fraction(1, 90000)
        return frame


class TestSwitchableTrack:
    @pytest.mark.asyncio
    async def test_enabled_passes_frames_through(self):
        track = SwitchableTrack(FrameTrack())
        frame = await track.recv()
        assert frame.to_ndarray(format="bgr24").max() == 200

    @pytest.mark.asyncio
    async def test_disabled_sends_black_frames(self):
        track = SwitchableTrack(FrameTrack())
        track.enabled = False

        frame = await track.recv()

        assert (frame.width, frame.height) == (6, 4)
        assert frame.to_ndarray(format="bgr24").max() == 0
        assert frame.pts == 42

    @pytest.mark.asyncio
    async def test_source_end_ends_track(self):
        source = FakeTrack("video")
        track = SwitchableTrack(source)

        with pytest.raises(MediaStreamError):
            await track.recv()

        assert track.readyState == "ended"

    def test_stop_stops_source(self):
        source = FakeTrack("audio")
        track = SwitchableTrack(source)
        track.stop()
        assert source.readyState == "ended"
        assert track.kind == "audio"


class TestPlayerMediaSource:
    @pytest.mark.asyncio
    async def test_permission_error_maps_to_permission_failure(self):
        source = PlayerMediaSource(MediaConfig(camera_device="cam", camera_format="v4l2"))
        with mock.patch.object(source, "_open_player", side_effect=PermissionError("denied")):
            with pytest.raises(MediaAcquisitionFailure) as excinfo:
                await source.open_camera()
        assert excinfo.value.reason == MediaAcquisitionFailure.PERMISSION

    @pytest.mark.asyncio
    async def test_missing_device_maps_to_device_failure(self):
        source = PlayerMediaSource(MediaConfig(camera_device="cam", camera_format="v4l2"))
        with mock.patch.object(source, "_open_player", side_effect=OSError("no such device")):
            with pytest.raises(MediaAcquisitionFailure) as excinfo:
                await source.open_camera()
        assert excinfo.value.reason == MediaAcquisitionFailure.DEVICE

    @pytest.mark.asyncio
    async def test_microphone_failure_releases_camera(self):
        source = PlayerMediaSource(
            MediaConfig(
                camera_device="cam",
                camera_format="v4l2",
                microphone_device="mic",
                microphone_format="pulse",
            )
        )
        camera_player = mock.MagicMock(audio=None, video=FakeTrack("video", "camera"))
        with mock.patch.object(
            source, "_open_player", side_effect=[camera_player, OSError("no microphone")]
        ):
            with pytest.raises(MediaAcquisitionFailure) as excinfo:
                await source.open_camera()

        assert excinfo.value.reason == MediaAcquisitionFailure.DEVICE
        assert camera_player.video.readyState == "ended"

    @pytest.mark.asyncio
    async def test_tracks_are_wrapped(self):
        source = PlayerMediaSource(
            MediaConfig(
                camera_device="cam",
                camera_format="fmt",
                microphone_device="cam",
                microphone_format="fmt",
            )
        )
        player = mock.MagicMock(audio=FakeTrack("audio"), video=FakeTrack("video"))
        with mock.patch.object(source, "_open_player", return_value=player) as opener:
            audio, video = await source.open_camera()

        assert opener.call_count == 1
        assert isinstance(audio, SwitchableTrack)
        assert audio.source is player.audio
        assert video.kind == "video"

    @pytest.mark.asyncio
    async def test_screen_unsupported_without_device(self, monkeypatch):
        monkeypatch.delenv("DISPLAY", raising=False)
        with mock.patch("meshcall.media.sources.platform.system", return_value="Linux"):
            source = PlayerMediaSource(MediaConfig())
        with pytest.raises(ScreenShareUnsupported):
            await source.open_screen()

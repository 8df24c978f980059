"""Local capture sources.

``MediaSource`` is what the MediaController asks for camera/microphone and
display capture. ``PlayerMediaSource`` opens devices through FFmpeg with
``aiortc.contrib.media.MediaPlayer``. Every track handed out is wrapped in a
``SwitchableTrack`` so it can be muted in place without touching the
connections it is attached to.
"""

import abc
import asyncio
import fractions
import logging
import os
import platform
from typing import Optional, Tuple

import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame, VideoFrame

from meshcall.config import MediaConfig
from meshcall.exceptions import (
    MediaAcquisitionFailure,
    ScreenShareDenied,
    ScreenShareUnsupported,
)

logger = logging.getLogger(__name__)


class SwitchableTrack(MediaStreamTrack):
    """Relays a source track, blanking its frames while disabled.

    Attributes:
        kind: ``"audio"`` or ``"video"``, copied from the source.
        source: The wrapped track.
        enabled: When False, video frames are black and audio is silent.
    """

    def __init__(self, source: MediaStreamTrack, label: str = ""):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.label = label
        self.enabled = True

    async def recv(self):
        try:
            frame = await self.source.recv()
        except MediaStreamError:
            # Source ended (device unplugged, capture stopped by the OS)
            self.stop()
            raise
        if self.enabled:
            return frame
        return self._blank(frame)

    def _blank(self, frame):
        if self.kind == "video":
            blank = VideoFrame.from_ndarray(
                np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="bgr24"
            )
        else:
            blank = AudioFrame(
                format=frame.format.name, layout=frame.layout.name, samples=frame.samples
            )
            for plane in blank.planes:
                plane.update(bytes(plane.buffer_size))
            blank.sample_rate = frame.sample_rate
        blank.pts = frame.pts
        blank.time_base = frame.time_base or fractions.Fraction(1, 90000)
        return blank

    def stop(self):
        if self.readyState != "ended":
            super().stop()
            self.source.stop()


class MediaSource(abc.ABC):
    """Provider of local capture tracks."""

    @abc.abstractmethod
    async def open_camera(self) -> Tuple[Optional[MediaStreamTrack], Optional[MediaStreamTrack]]:
        """Start combined microphone and camera capture.

        Returns:
            ``(audio_track, video_track)``.

        Raises:
            MediaAcquisitionFailure: Permission refused or device unusable.
        """

    @abc.abstractmethod
    async def open_screen(self) -> MediaStreamTrack:
        """Start display capture.

        Raises:
            ScreenShareUnsupported: No display capture on this platform.
            ScreenShareDenied: The user refused the capture.
        """


def default_devices(system: Optional[str] = None) -> dict:
    """Per-platform FFmpeg device names and formats.

    Returns:
        Dict with ``camera``, ``microphone`` and ``screen`` entries, each a
        ``(device, format)`` tuple, or None where capture is unavailable.
    """
    system = system or platform.system()
    if system == "Darwin":
        return {
            "camera": ("default:none", "avfoundation"),
            "microphone": ("none:default", "avfoundation"),
            "screen": ("1:none", "avfoundation"),
        }
    if system == "Windows":
        return {
            "camera": ("video=Integrated Camera", "dshow"),
            "microphone": ("audio=Microphone", "dshow"),
            "screen": ("desktop", "gdigrab"),
        }
    display = os.environ.get("DISPLAY")
    return {
        "camera": ("/dev/video0", "v4l2"),
        "microphone": ("default", "pulse"),
        "screen": (display, "x11grab") if display else None,
    }


def _capture_failure(error: Exception) -> MediaAcquisitionFailure:
    if isinstance(error, PermissionError):
        return MediaAcquisitionFailure(
            f"Access to camera/microphone refused: {error}",
            reason=MediaAcquisitionFailure.PERMISSION,
        )
    return MediaAcquisitionFailure(
        f"Could not access camera/microphone: {error}",
        reason=MediaAcquisitionFailure.DEVICE,
    )


def _stop_player(player: MediaPlayer) -> None:
    for track in (player.audio, player.video):
        if track is not None:
            track.stop()


class PlayerMediaSource(MediaSource):
    """Capture through FFmpeg devices using ``MediaPlayer``.

    Opening a device blocks, so players are created in the default executor.
    """

    def __init__(self, config: MediaConfig):
        self.config = config
        self._defaults = default_devices()

    def _device(self, name: str) -> Optional[Tuple[str, str]]:
        device = getattr(self.config, f"{name}_device")
        fmt = getattr(self.config, f"{name}_format")
        default = self._defaults.get(name)
        if device is None:
            if default is None:
                return None
            device = default[0]
        if fmt is None and default is not None:
            fmt = default[1]
        return device, fmt

    async def _open_player(self, device: str, fmt: Optional[str], options: dict) -> MediaPlayer:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, lambda: MediaPlayer(device, format=fmt, options=options)
        )

    async def open_camera(self):
        video_options = {
            "framerate": str(self.config.framerate),
            "video_size": self.config.video_size,
        }
        camera = self._device("camera")
        microphone = self._device("microphone")
        try:
            video_player = await self._open_player(camera[0], camera[1], video_options)
        except Exception as e:
            raise _capture_failure(e) from e

        if microphone == camera:
            audio_player = video_player
        else:
            try:
                audio_player = await self._open_player(microphone[0], microphone[1], {})
            except Exception as e:
                _stop_player(video_player)
                raise _capture_failure(e) from e

        audio = SwitchableTrack(audio_player.audio, "microphone") if audio_player.audio else None
        video = SwitchableTrack(video_player.video, "camera") if video_player.video else None
        if audio is None and video is None:
            raise MediaAcquisitionFailure(
                "Capture devices produced no tracks", reason=MediaAcquisitionFailure.DEVICE
            )
        logger.info(
            f"Local media ready (audio: {audio is not None}, video: {video is not None})"
        )
        return audio, video

    async def open_screen(self):
        screen = self._device("screen")
        if screen is None:
            raise ScreenShareUnsupported("No display capture device on this platform")
        options = {"framerate": str(self.config.framerate)}
        try:
            player = await self._open_player(screen[0], screen[1], options)
        except PermissionError as e:
            raise ScreenShareDenied(f"Screen capture refused: {e}") from e
        except Exception as e:
            raise ScreenShareUnsupported(f"Failed to share screen: {e}") from e
        if player.video is None:
            raise ScreenShareUnsupported("Display capture produced no video track")
        return SwitchableTrack(player.video, "screen")

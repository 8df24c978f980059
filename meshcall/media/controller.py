"""Local media ownership and screen sharing.

The MediaController is the only component that starts, stops or swaps
local tracks. A connection never sends a local track directly: it sends its
own ``MediaRelay`` subscription of it, so every peer receives every frame.
Connections attach whatever ``outgoing_tracks`` returns when they are
created; screen sharing swaps the outgoing video on every live connection
through the PeerConnectionManager.
"""

import logging
import weakref
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, TYPE_CHECKING

from aiortc.contrib.media import MediaRelay

from meshcall.exceptions import (
    MediaAcquisitionFailure,
    ScreenShareDenied,
    ScreenShareUnsupported,
)

if TYPE_CHECKING:
    from meshcall.media.sources import MediaSource
    from meshcall.mesh.peer_manager import PeerConnectionManager

logger = logging.getLogger(__name__)


@dataclass
class MediaState:
    audio_enabled: bool = True
    video_enabled: bool = True
    screen_sharing: bool = False
    camera_video_track: Any = None
    camera_audio_track: Any = None
    screen_video_track: Any = None


class MediaController:
    """Owns camera, microphone and screen capture for one session.

    Attributes:
        source: Capture provider.
        state: Current MediaState.
        connections: Manager whose connections receive track replacements.
        relay: Fans each local track out to one subscription per connection.
    """

    def __init__(
        self,
        source: "MediaSource",
        connections: Optional["PeerConnectionManager"] = None,
    ):
        self.source = source
        self.connections = connections
        self.state = MediaState()
        self.relay = MediaRelay()
        self._subscribed_from = weakref.WeakKeyDictionary()
        self._preview_listeners: List[Callable[[Any], None]] = []

    def bind_connections(self, connections: "PeerConnectionManager") -> None:
        self.connections = connections

    def on_preview_change(self, callback: Callable[[Any], None]) -> None:
        """Call ``callback(track)`` when the local preview should switch."""
        self._preview_listeners.append(callback)

    @property
    def ready(self) -> bool:
        return (
            self.state.camera_audio_track is not None
            or self.state.camera_video_track is not None
        )

    @property
    def preview_track(self):
        if self.state.screen_sharing:
            return self.state.screen_video_track
        return self.state.camera_video_track

    async def acquire_local_media(self) -> Optional[MediaAcquisitionFailure]:
        """Start camera and microphone capture.

        Returns:
            None on success, otherwise the MediaAcquisitionFailure describing
            why; the session continues without local media.
        """
        if self.ready:
            return None
        try:
            audio, video = await self.source.open_camera()
        except MediaAcquisitionFailure as e:
            logger.error(f"Error accessing media devices ({e.reason}): {e}")
            return e

        self.state.camera_audio_track = audio
        self.state.camera_video_track = video
        if audio is not None:
            audio.enabled = self.state.audio_enabled
        if video is not None:
            video.enabled = self.state.video_enabled
        self._notify_preview()
        return None

    def subscribe(self, track):
        """Return a new per-connection subscription of a local ``track``.

        The subscription belongs to the connection that sends it and is
        stopped by that connection; stopping it leaves ``track`` running.
        """
        if track is None:
            return None
        subscription = self.relay.subscribe(track)
        self._subscribed_from[subscription] = track
        return subscription

    def source_of(self, track):
        """The local track a subscription was made from, else ``track``."""
        if track is None:
            return None
        return self._subscribed_from.get(track, track)

    def local_tracks(self) -> list:
        """Local tracks that new connections send: audio, then video."""
        tracks = []
        if self.state.camera_audio_track is not None:
            tracks.append(self.state.camera_audio_track)
        video = self.preview_track
        if video is not None:
            tracks.append(video)
        return tracks

    def outgoing_tracks(self) -> list:
        """Fresh subscriptions of ``local_tracks`` for one new connection."""
        return [self.subscribe(track) for track in self.local_tracks()]

    def toggle_audio(self) -> bool:
        """Mute or unmute the microphone in place. Returns the new state."""
        self.state.audio_enabled = not self.state.audio_enabled
        if self.state.camera_audio_track is not None:
            self.state.camera_audio_track.enabled = self.state.audio_enabled
        logger.info(f"Audio {'enabled' if self.state.audio_enabled else 'muted'}")
        return self.state.audio_enabled

    def toggle_video(self) -> bool:
        """Turn the camera image on or off in place. Returns the new state."""
        self.state.video_enabled = not self.state.video_enabled
        if self.state.camera_video_track is not None:
            self.state.camera_video_track.enabled = self.state.video_enabled
        logger.info(f"Video {'enabled' if self.state.video_enabled else 'disabled'}")
        return self.state.video_enabled

    async def start_screen_share(self) -> bool:
        """Send the screen instead of the camera on every connection.

        Returns:
            True if sharing, False if the user cancelled the capture.

        Raises:
            ScreenShareUnsupported: Display capture is unavailable.
        """
        if self.state.screen_sharing:
            return True

        try:
            screen_track = await self.source.open_screen()
        except ScreenShareDenied as e:
            logger.info(f"Screen share cancelled: {e}")
            return False
        except ScreenShareUnsupported as e:
            logger.error(f"Error sharing screen: {e}")
            raise

        self.state.screen_video_track = screen_track
        self.state.screen_sharing = True

        @screen_track.on("ended")
        async def on_ended():
            if self.state.screen_video_track is screen_track:
                logger.info("Screen capture ended, reverting to camera")
                await self.stop_screen_share()

        await self._replace_outgoing_video(screen_track)
        self._notify_preview()
        logger.info("Screen sharing started")
        return True

    async def stop_screen_share(self) -> None:
        """Release the screen capture and send the camera again."""
        if not self.state.screen_sharing:
            return

        screen_track = self.state.screen_video_track
        self.state.screen_sharing = False
        self.state.screen_video_track = None
        if screen_track is not None:
            screen_track.stop()

        await self._replace_outgoing_video(self.state.camera_video_track)
        self._notify_preview()
        logger.info("Screen sharing stopped")

    async def release(self) -> None:
        """Stop every local capture (session teardown)."""
        self.state.screen_sharing = False
        for name in ("screen_video_track", "camera_video_track", "camera_audio_track"):
            track = getattr(self.state, name)
            if track is not None:
                track.stop()
                setattr(self.state, name, None)
        logger.info("Local media released")

    async def _replace_outgoing_video(self, track) -> None:
        if self.connections is None:
            return
        failed = await self.connections.replace_outgoing_video(track)
        if failed:
            logger.warning(
                f"Video track replacement failed for {len(failed)} connection(s): "
                f"{', '.join(failed)}"
            )

    def _notify_preview(self) -> None:
        track = self.preview_track
        for callback in list(self._preview_listeners):
            callback(track)

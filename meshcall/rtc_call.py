"""Entry point for a terminal video call."""

import asyncio
import sys
from typing import AsyncIterator, Callable, Dict, Optional, Set

import websockets
from aiortc.contrib.media import MediaBlackhole
from loguru import logger

from meshcall.client.chat import ChatEntry, ChatRelay
from meshcall.client.session import RoomSession
from meshcall.client.transport import SignalTransport
from meshcall.config import Config, get_config
from meshcall.exceptions import MediaAcquisitionFailure, ScreenShareUnsupported
from meshcall.media.controller import MediaController
from meshcall.media.sources import MediaSource, PlayerMediaSource
from meshcall.mesh.peer_manager import PeerConnectionManager
from meshcall.mesh.rtc_backend import TransportFactory, aiortc_transport_factory

# How long to wait for the room snapshot after join_room
ROSTER_TIMEOUT = 10.0

HELP_TEXT = (
    "Type a message and press Enter to chat. Commands: "
    "/mic /cam /share /peers /leave"
)


class NullMediaSource(MediaSource):
    """Source for --no-media: every request fails as a missing device."""

    async def open_camera(self):
        raise MediaAcquisitionFailure("Local media disabled", reason=MediaAcquisitionFailure.DEVICE)

    async def open_screen(self):
        raise ScreenShareUnsupported("Local media disabled")


class CallClient:
    """Wires transport, session, media, peers and chat for one call.

    Attributes:
        transport: SignalTransport to the relay.
        media: MediaController for local capture.
        peers: PeerConnectionManager for the room.
        chat: ChatRelay holding the transcript.
        session: RoomSession driving all of the above.
    """

    def __init__(
        self,
        signaling_url: str,
        config: Optional[Config] = None,
        media_source: Optional[MediaSource] = None,
        transport_factory: Optional[TransportFactory] = None,
        connect: Callable = websockets.connect,
        echo: Callable[[str], None] = print,
    ):
        config = config or get_config()
        self.echo = echo

        self.transport = SignalTransport(signaling_url, connect=connect)
        self.media = MediaController(media_source or PlayerMediaSource(config.media))
        self.peers = PeerConnectionManager(
            send=self.transport.send,
            transport_factory=transport_factory or aiortc_transport_factory(config.ice),
            media=self.media,
        )
        self.media.bind_connections(self.peers)
        self.chat = ChatRelay(send=self.transport.send)
        self.session = RoomSession(self.transport, self.peers, self.media, self.chat)

        # Remote media is consumed but not rendered
        self._sinks: Dict[str, MediaBlackhole] = {}
        self._tasks: Set[asyncio.Future] = set()
        self.peers.on_remote_track(self._on_remote_track)
        self.peers.on_peer_removed(self._on_peer_removed)
        self.chat.on_entry(self._on_chat_entry)
        self.session.on_notice(lambda message: self.echo(f"!! {message}"))

    async def run(self, username: str, room_id: str, commands: AsyncIterator[str]) -> None:
        """Join ``room_id`` as ``username`` and process commands until leave."""
        await self.transport.connect()
        reader = asyncio.create_task(self.transport.run())
        try:
            await self.session.login(username)
            await self.session.join(room_id)
            if not await self.session.wait_for_roster(ROSTER_TIMEOUT):
                logger.warning("No room snapshot received from the server")
            self.echo(HELP_TEXT)

            lines = aiter(commands)
            while True:
                next_line = asyncio.ensure_future(anext(lines))
                await asyncio.wait({next_line, reader}, return_when=asyncio.FIRST_COMPLETED)
                if not next_line.done():
                    next_line.cancel()
                    await asyncio.gather(next_line, return_exceptions=True)
                    logger.warning("Signaling channel lost")
                    break
                try:
                    line = next_line.result()
                except StopAsyncIteration:
                    break
                if not await self.handle_command(line):
                    break
        finally:
            await self.session.leave()
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            for sink in self._sinks.values():
                await sink.stop()
            self._sinks.clear()
            if not reader.done():
                reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

    async def handle_command(self, line: str) -> bool:
        """Run one line of user input. Returns False to leave the call."""
        command = line.strip()
        if command == "/leave":
            return False
        if command == "/mic":
            enabled = self.media.toggle_audio()
            self.echo(f"Microphone {'on' if enabled else 'muted'}")
        elif command == "/cam":
            enabled = self.media.toggle_video()
            self.echo(f"Camera {'on' if enabled else 'off'}")
        elif command == "/share":
            await self._toggle_screen_share()
        elif command == "/peers":
            roster = self.session.roster
            if not roster:
                self.echo("No one else is here")
            for peer_id, name in roster.items():
                record = self.peers.get(peer_id)
                self.echo(f"{name} ({peer_id}): {record.state.name.lower()}")
        elif command.startswith("/"):
            self.echo(HELP_TEXT)
        else:
            await self.chat.send_chat(command)
        return True

    async def _toggle_screen_share(self) -> None:
        if self.media.state.screen_sharing:
            await self.media.stop_screen_share()
            self.echo("Screen sharing stopped")
            return
        try:
            if await self.media.start_screen_share():
                self.echo("Screen sharing started")
        except ScreenShareUnsupported as e:
            self.echo(f"!! Screen sharing is not supported here: {e}")

    def _on_remote_track(self, peer_id: str, track) -> None:
        sink = self._sinks.get(peer_id)
        if sink is None:
            sink = self._sinks[peer_id] = MediaBlackhole()
        sink.addTrack(track)
        self._spawn(sink.start())

    def _on_peer_removed(self, peer_id: str) -> None:
        sink = self._sinks.pop(peer_id, None)
        if sink is not None:
            self._spawn(sink.stop())

    def _spawn(self, awaitable) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Remote media sink failed: {task.exception()}")

    def _on_chat_entry(self, entry: ChatEntry) -> None:
        if entry.is_system:
            self.echo(f"* {entry.content}")
        elif entry.is_self:
            self.echo(f"[you] {entry.content}")
        else:
            self.echo(f"[{entry.sender_name}] {entry.content}")


async def stdin_lines() -> AsyncIterator[str]:
    """Yield lines from standard input without blocking the event loop."""
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            return
        yield line


def run_call(
    username: str,
    room_id: str,
    server_url: Optional[str] = None,
    no_media: bool = False,
) -> None:
    """Main entry point for a call.

    Args:
        username: Name to log in with.
        room_id: Room to join.
        server_url: Server origin (``http(s)://``) or signaling URL
            (``ws(s)://``). Defaults to the configured server.
        no_media: Join without camera or microphone.

    Returns:
        None
    """
    config = get_config()
    signaling_url = config.get_signaling_url(server_url)
    client = CallClient(
        signaling_url,
        config=config,
        media_source=NullMediaSource() if no_media else None,
    )

    logger.info(f"Joining room {room_id} as {username} via {signaling_url}")
    try:
        asyncio.run(client.run(username, room_id, stdin_lines()))
    except KeyboardInterrupt:
        logger.info("Interrupted, leaving call")
    except OSError as e:
        logger.error(f"Could not reach signaling server {signaling_url}: {e}")

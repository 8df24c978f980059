"""Room session: identity, membership and inbound dispatch.

The RoomSession is the inbound dispatcher registered on the SignalTransport.
Roster events create and remove peer connections; negotiation envelopes are
routed to the PeerConnectionManager by sender; chat goes to the ChatRelay.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from meshcall.exceptions import IdentityAlreadySet, SessionStateError
from meshcall.protocol import (
    MSG_ANSWER,
    MSG_CANDIDATE,
    MSG_CHAT,
    MSG_EXISTING_USERS,
    MSG_OFFER,
    MSG_USER_JOINED,
    MSG_USER_LEFT,
    join_room_envelope,
    login_envelope,
    parse_roster,
)

if TYPE_CHECKING:
    from meshcall.client.chat import ChatRelay
    from meshcall.client.transport import SignalTransport
    from meshcall.media.controller import MediaController
    from meshcall.mesh.peer_manager import PeerConnectionManager

logger = logging.getLogger(__name__)


class RoomSession:
    """One user's presence in one room.

    Attributes:
        username: Local identity; set once by ``login``.
        room_id: Current room, or None outside a room.
        media_error: Why local media could not be acquired, if it failed.
    """

    def __init__(
        self,
        transport: "SignalTransport",
        peers: "PeerConnectionManager",
        media: "MediaController",
        chat: "ChatRelay",
    ):
        self.transport = transport
        self.peers = peers
        self.media = media
        self.chat = chat

        self.username: Optional[str] = None
        self.room_id: Optional[str] = None
        self.media_error = None

        self._roster_received = asyncio.Event()
        self._notice_listeners: List[Callable[[str], None]] = []

        self.transport.on_message(self.dispatch)

    @property
    def roster(self) -> Dict[str, str]:
        """Room members other than us, as ``{peer_id: username}``."""
        return self.peers.roster()

    def on_notice(self, callback: Callable[[str], None]) -> None:
        """Call ``callback(message)`` for conditions the user must see."""
        self._notice_listeners.append(callback)

    async def login(self, username: str) -> None:
        """Set the local identity and announce it to the server.

        Raises:
            ValueError: If ``username`` is blank.
            IdentityAlreadySet: If a different username was already set.
        """
        username = (username or "").strip()
        if not username:
            raise ValueError("Username cannot be empty")
        if self.username is not None:
            if self.username != username:
                raise IdentityAlreadySet(f"Already logged in as {self.username}")
            return

        self.username = username
        self.chat.local_username = username
        await self.transport.send(login_envelope(username))
        logger.info(f"Logged in as {username}")

    async def join(self, room_id: str) -> None:
        """Acquire local media, then announce membership of ``room_id``.

        A media failure is reported through ``on_notice`` and the join goes
        ahead without local media.

        Raises:
            SessionStateError: If called before ``login`` or while in a room.
        """
        room_id = (room_id or "").strip()
        if not room_id:
            raise ValueError("Room id cannot be empty")
        if self.username is None:
            raise SessionStateError("login() must be called before join()")
        if self.room_id is not None:
            raise SessionStateError(f"Already in room {self.room_id}")

        self.media_error = await self.media.acquire_local_media()
        if self.media_error is not None:
            self._notify("Could not access camera/microphone.")

        self.room_id = room_id
        self._roster_received.clear()
        await self.transport.send(join_room_envelope(room_id))
        logger.info(f"Joining room {room_id}")

    async def wait_for_roster(self, timeout: Optional[float] = None) -> bool:
        """Wait for the room snapshot. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._roster_received.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def dispatch(self, envelope: Dict[str, Any]) -> None:
        """Handle one inbound envelope."""
        msg_type = envelope["type"]

        if msg_type == MSG_EXISTING_USERS:
            entries = parse_roster(envelope)
            logger.info(f"Room snapshot: {len(entries)} existing user(s)")
            for entry in entries:
                await self.peers.create(entry.peer_id, is_initiator=False, username=entry.username)
            self._roster_received.set()

        elif msg_type == MSG_USER_JOINED:
            username = envelope.get("username") or "Unknown"
            await self.peers.create(envelope["userId"], is_initiator=True, username=username)
            self.chat.add_system_notice(f"{username} joined the room.")

        elif msg_type == MSG_USER_LEFT:
            username = envelope.get("username") or "Unknown"
            await self.peers.remove(envelope["userId"])
            self.chat.add_system_notice(f"{username} left the room.")

        elif msg_type == MSG_OFFER:
            await self.peers.handle_offer(envelope["sender"], envelope["sdp"])

        elif msg_type == MSG_ANSWER:
            await self.peers.handle_answer(envelope["sender"], envelope["sdp"])

        elif msg_type == MSG_CANDIDATE:
            await self.peers.handle_candidate(envelope["sender"], envelope["candidate"])

        elif msg_type == MSG_CHAT:
            self.chat.receive(envelope.get("senderName"), envelope["content"])

        else:
            logger.warning(f"Unhandled envelope type: {msg_type}")

    async def leave(self) -> None:
        """Tear down every piece of session state."""
        logger.info(f"Leaving room {self.room_id}")
        await self.peers.close_all()
        await self.media.release()
        await self.transport.close()
        self.room_id = None
        self._roster_received.clear()

    def _notify(self, message: str) -> None:
        for callback in list(self._notice_listeners):
            callback(message)

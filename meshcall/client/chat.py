"""Room text chat over the signaling channel."""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence

from meshcall.protocol import chat_envelope

logger = logging.getLogger(__name__)

SYSTEM_SENDER = "System"


@dataclass(frozen=True)
class ChatEntry:
    sender_name: str
    content: str
    is_self: bool = False
    is_system: bool = False


class ChatRelay:
    """Sends chat messages and keeps the in-memory transcript.

    The relay attaches the sender's name to broadcast messages and echoes
    them back to the author, so outbound messages show up in the transcript
    when the echo arrives, not when they are sent.
    """

    def __init__(self, send: Callable[[dict], Awaitable[bool]]):
        self.send = send
        self.local_username: Optional[str] = None
        self._transcript: List[ChatEntry] = []
        self._listeners: List[Callable[[ChatEntry], None]] = []

    @property
    def transcript(self) -> Sequence[ChatEntry]:
        return tuple(self._transcript)

    def on_entry(self, callback: Callable[[ChatEntry], None]) -> None:
        self._listeners.append(callback)

    async def send_chat(self, text: str) -> bool:
        """Send ``text`` to the room. Blank text is ignored.

        Returns:
            True if an envelope was sent.
        """
        content = (text or "").strip()
        if not content:
            return False
        return await self.send(chat_envelope(content))

    def receive(self, sender_name: Optional[str], content: str) -> ChatEntry:
        sender_name = sender_name or "Unknown"
        entry = ChatEntry(
            sender_name=sender_name,
            content=content,
            is_self=sender_name == self.local_username,
        )
        self._append(entry)
        return entry

    def add_system_notice(self, text: str) -> ChatEntry:
        entry = ChatEntry(sender_name=SYSTEM_SENDER, content=text, is_system=True)
        self._append(entry)
        return entry

    def _append(self, entry: ChatEntry) -> None:
        self._transcript.append(entry)
        for callback in list(self._listeners):
            callback(entry)

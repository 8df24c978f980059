"""WebSocket signaling channel.

One persistent connection per session. Outbound envelopes are serialized by
``meshcall.protocol``; inbound frames are decoded and handed, one at a time
and in arrival order, to the single registered dispatcher.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, TYPE_CHECKING

import websockets
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from meshcall.exceptions import ProtocolError, TransportUnavailable
from meshcall.protocol import MSG_CANDIDATE, decode_envelope, encode_envelope

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class SignalTransport:
    """Bidirectional envelope channel to the signaling relay.

    Attributes:
        url: WebSocket URL of the relay's signaling endpoint.
        websocket: The live connection, or None before ``connect``.
    """

    def __init__(self, url: str, connect: Callable = websockets.connect):
        """Initialize the transport.

        Args:
            url: ``ws://`` or ``wss://`` signaling URL.
            connect: Coroutine factory that opens the socket. Defaults to
                ``websockets.connect``.
        """
        self.url = url
        self.websocket: Optional["ClientConnection"] = None
        self._connect = connect
        self._handler: Optional[MessageHandler] = None

    @property
    def is_open(self) -> bool:
        return self.websocket is not None and self.websocket.state is State.OPEN

    async def connect(self) -> None:
        """Open the WebSocket connection to the relay."""
        logger.info(f"Connecting to signaling server at {self.url}")
        self.websocket = await self._connect(self.url)
        logger.info("Signaling channel open")

    def on_message(self, handler: MessageHandler) -> None:
        """Register the inbound dispatcher, replacing any previous one."""
        self._handler = handler

    async def send(self, envelope: Dict[str, Any]) -> bool:
        """Serialize and transmit an envelope.

        If the channel is not open the envelope is dropped: nothing is raised
        and nothing is queued.

        Args:
            envelope: Outbound envelope dictionary.

        Returns:
            True if the frame was handed to the socket, False if dropped.
        """
        msg_type = envelope.get("type")
        if not self.is_open:
            logger.debug(
                f"Dropping {msg_type} envelope: "
                f"{TransportUnavailable('signaling channel is not open')}"
            )
            return False

        frame = encode_envelope(envelope)
        try:
            await self.websocket.send(frame)
        except ConnectionClosed as e:
            logger.debug(f"Dropping {msg_type} envelope: channel closed ({e})")
            return False

        if msg_type == MSG_CANDIDATE:
            logger.debug(f"Sent {msg_type} to {envelope.get('target')}")
        else:
            logger.info(f"Sent {msg_type}")
        return True

    async def run(self) -> None:
        """Read frames until the socket closes.

        Each decoded envelope is awaited through the dispatcher before the
        next frame is read. Undecodable frames and dispatcher errors are
        logged and skipped. There is no reconnect.
        """
        if self.websocket is None:
            raise TransportUnavailable("run() called before connect()")

        try:
            async for message in self.websocket:
                try:
                    envelope = decode_envelope(message)
                except ProtocolError as e:
                    logger.warning(f"Ignoring frame: {e}")
                    continue

                msg_type = envelope["type"]
                if msg_type == MSG_CANDIDATE:
                    logger.debug(f"Received {msg_type} from {envelope.get('sender')}")
                else:
                    logger.info(f"Received {msg_type}")

                if self._handler is None:
                    logger.warning(f"No dispatcher registered, dropping {msg_type}")
                    continue

                try:
                    await self._handler(envelope)
                except Exception:
                    logger.exception(f"Error handling {msg_type} envelope")
        except ConnectionClosed as e:
            logger.warning(f"Signaling channel closed: {e}")
        logger.info("Signaling channel finished")

    async def close(self) -> None:
        """Close the socket. Later sends are dropped."""
        if self.websocket is not None:
            await self.websocket.close()
            logger.info("Signaling channel closed")

"""Development WebSocket relay for meshcall rooms.

This is a minimal relay for trying meshcall locally. It implements the
server side of the envelope contract: login, room membership with
existing_users/user_joined/user_left, offer/answer/candidate forwarding and
chat broadcast. It is not meant for production use.

Usage:
    python signaling_server.py [--host HOST] [--port PORT]

Examples:
    python signaling_server.py
    python signaling_server.py --port 8080
    meshcall join -u alice -r demo -s ws://localhost:8080/signal
"""

import argparse
import asyncio
import itertools
import json
import logging
from typing import Any, Dict, Optional

import websockets

logging.basicConfig(level=logging.INFO)


class Relay:
    """Room bookkeeping and routing, keyed by connection id."""

    def __init__(self):
        self.sockets: Dict[str, Any] = {}
        self.usernames: Dict[str, str] = {}
        self.rooms: Dict[str, str] = {}
        self._ids = itertools.count(1)

    def register(self, websocket) -> str:
        session_id = f"s{next(self._ids)}"
        self.sockets[session_id] = websocket
        logging.info(f"Connected: {session_id} (total: {len(self.sockets)})")
        return session_id

    async def unregister(self, session_id: str) -> None:
        self.sockets.pop(session_id, None)
        username = self.usernames.pop(session_id, None)
        room_id = self.rooms.pop(session_id, None)
        if room_id is not None:
            await self.broadcast(
                room_id,
                {"type": "user_left", "userId": session_id, "username": username or "Unknown"},
            )
        logging.info(f"Disconnected: {session_id} (remaining: {len(self.sockets)})")

    async def handle(self, session_id: str, data: Dict[str, Any]) -> None:
        msg_type = data.get("type")

        if msg_type == "login":
            self.usernames[session_id] = data.get("username")
            logging.info(f"{session_id} logged in as {data.get('username')}")

        elif msg_type == "join_room":
            room_id = data.get("roomId")
            self.rooms[session_id] = room_id
            username = self.usernames.get(session_id, "Anonymous")

            await self.broadcast(
                room_id,
                {"type": "user_joined", "userId": session_id, "username": username},
                exclude=session_id,
            )

            existing = [
                {"userId": other, "username": self.usernames.get(other, "Unknown")}
                for other, other_room in self.rooms.items()
                if other_room == room_id and other != session_id
            ]
            await self.send_to(session_id, {"type": "existing_users", "users": existing})
            logging.info(f"{session_id} joined {room_id} ({len(existing)} already there)")

        elif msg_type in ("offer", "answer", "candidate"):
            target = data.pop("target", None)
            if target in self.sockets:
                data["sender"] = session_id
                await self.send_to(target, data)
                logging.info(f"Forwarded {msg_type} from {session_id} to {target}")
            else:
                logging.warning(f"Target peer not found: {target}")

        elif msg_type == "chat":
            room_id = self.rooms.get(session_id)
            if room_id is not None:
                data["senderId"] = session_id
                data["senderName"] = self.usernames.get(session_id)
                await self.broadcast(room_id, data)

        else:
            logging.warning(f"Unknown message type from {session_id}: {msg_type}")

    async def broadcast(
        self, room_id: str, message: Dict[str, Any], exclude: Optional[str] = None
    ) -> None:
        for session_id, member_room in list(self.rooms.items()):
            if member_room == room_id and session_id != exclude:
                await self.send_to(session_id, message)

    async def send_to(self, session_id: str, message: Dict[str, Any]) -> None:
        websocket = self.sockets.get(session_id)
        if websocket is None:
            return
        try:
            await websocket.send(json.dumps(message))
        except websockets.exceptions.ConnectionClosed:
            logging.debug(f"Dropping message to closed session {session_id}")


relay = Relay()


async def handler(websocket):
    """Handle a WebSocket connection."""
    session_id = relay.register(websocket)
    try:
        async for message in websocket:
            try:
                data = json.loads(message)
            except ValueError:
                logging.warning(f"Ignoring malformed frame from {session_id}")
                continue
            await relay.handle(session_id, data)
    except websockets.exceptions.ConnectionClosed:
        logging.info(f"Connection closed: {session_id}")
    finally:
        await relay.unregister(session_id)


async def main(host: str, port: int):
    """Start the relay."""
    async with websockets.serve(handler, host, port):
        logging.info(f"Signaling relay running on ws://{host}:{port}/signal")
        await asyncio.Future()  # Run forever


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Development meshcall signaling relay")
    parser.add_argument("--host", default="localhost", help="Host to bind to (default: localhost)")
    parser.add_argument("--port", type=int, default=8080, help="Port to listen on (default: 8080)")

    args = parser.parse_args()

    try:
        asyncio.run(main(args.host, args.port))
    except KeyboardInterrupt:
        logging.info("Server stopped")

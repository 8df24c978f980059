"""Signaling envelope definitions for meshcall.

This module defines the JSON envelopes exchanged between a meshcall client
and the signaling relay over the ``/signal`` WebSocket.

Envelope Overview
-----------------

Every frame is a single JSON object with a discriminating ``type`` field.
The relay routes peer-addressed envelopes by rewriting ``target`` (set by
the sending client) into ``sender`` (seen by the receiving client).

Message Types
-------------

### Session Messages (client → server)

**login**
    Purpose: Announces the local username. Sent once, before any room action.
    Example: {"type": "login", "username": "alice"}

**join_room**
    Purpose: Requests membership of a room.
    Example: {"type": "join_room", "roomId": "r1"}

### Roster Messages (server → client)

**existing_users**
    Purpose: Snapshot of the room sent to the joining client only.
    Example: {"type": "existing_users",
              "users": [{"userId": "u2", "username": "bob"}]}

**user_joined** / **user_left**
    Purpose: Incremental roster changes sent to everyone else in the room.
    Example: {"type": "user_joined", "userId": "u3", "username": "carol"}

### Negotiation Messages (both directions)

**offer** / **answer**
    client → server: {"type": "offer", "target": "u2", "sdp": {...}}
    server → client: {"type": "offer", "sender": "u1", "sdp": {...}}
    The ``sdp`` object is {"type": "offer" | "answer", "sdp": "<text>"}.

**candidate**
    client → server: {"type": "candidate", "target": "u2", "candidate": {...}}
    server → client: {"type": "candidate", "sender": "u1", "candidate": {...}}
    The ``candidate`` object is
    {"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}.

### Chat Messages

**chat**
    client → server: {"type": "chat", "content": "hi"}
    server → client: {"type": "chat", "senderName": "alice", "content": "hi"}
    The sender's identity is attached by the relay, never by the client.

Message Flow Example
--------------------

1. alice → server: login, join_room(r1)
2. server → alice: existing_users([bob])        (alice answers bob)
3. server → bob:   user_joined(alice)           (bob offers to alice)
4. bob → alice:    offer, candidate...
5. alice → bob:    answer, candidate...
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, List

from meshcall.exceptions import ProtocolError

# Session messages
MSG_LOGIN = "login"
MSG_JOIN_ROOM = "join_room"

# Roster messages
MSG_EXISTING_USERS = "existing_users"
MSG_USER_JOINED = "user_joined"
MSG_USER_LEFT = "user_left"

# Negotiation messages
MSG_OFFER = "offer"
MSG_ANSWER = "answer"
MSG_CANDIDATE = "candidate"

# Chat messages
MSG_CHAT = "chat"

# Fields an inbound (server → client) envelope must carry, by type.
INBOUND_REQUIRED_FIELDS: Dict[str, tuple] = {
    MSG_EXISTING_USERS: ("users",),
    MSG_USER_JOINED: ("userId",),
    MSG_USER_LEFT: ("userId",),
    MSG_OFFER: ("sender", "sdp"),
    MSG_ANSWER: ("sender", "sdp"),
    MSG_CANDIDATE: ("sender", "candidate"),
    MSG_CHAT: ("content",),
}

# Fields an outbound (client → server) envelope must carry, by type.
OUTBOUND_REQUIRED_FIELDS: Dict[str, tuple] = {
    MSG_LOGIN: ("username",),
    MSG_JOIN_ROOM: ("roomId",),
    MSG_OFFER: ("target", "sdp"),
    MSG_ANSWER: ("target", "sdp"),
    MSG_CANDIDATE: ("target", "candidate"),
    MSG_CHAT: ("content",),
}


@dataclass(frozen=True)
class RosterEntry:
    """A room member as reported by the relay.

    Attributes:
        peer_id: Relay-assigned identifier of the member's session.
        username: Display name the member logged in with.
    """

    peer_id: str
    username: str

    @classmethod
    def from_dict(cls, data: dict) -> "RosterEntry":
        """Build an entry from a ``{userId, username}`` object."""
        peer_id = data.get("userId")
        if not peer_id:
            raise ProtocolError(f"Roster entry missing userId: {data!r}")
        return cls(peer_id=peer_id, username=data.get("username") or "Unknown")


def encode_envelope(envelope: Dict[str, Any]) -> str:
    """Serialize an outbound envelope to wire JSON.

    Args:
        envelope: Envelope dictionary with a ``type`` field.

    Returns:
        JSON text.

    Raises:
        ProtocolError: If the type is unknown or a required field is missing.
    """
    msg_type = envelope.get("type")
    required = OUTBOUND_REQUIRED_FIELDS.get(msg_type)
    if required is None:
        raise ProtocolError(f"Unknown outbound envelope type: {msg_type!r}")
    missing = [name for name in required if envelope.get(name) is None]
    if missing:
        raise ProtocolError(f"{msg_type} envelope missing {', '.join(missing)}")
    return json.dumps(envelope)


def decode_envelope(message) -> Dict[str, Any]:
    """Parse an inbound frame into an envelope dictionary.

    Args:
        message: Raw frame (text or UTF-8 bytes).

    Returns:
        The decoded envelope. Unrecognized extra fields are kept.

    Raises:
        ProtocolError: If the frame is not a JSON object, the type is not a
            server → client type, or a required field is missing.
    """
    if isinstance(message, (bytes, bytearray)):
        message = message.decode("utf-8")
    try:
        data = json.loads(message)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Malformed frame: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Frame is not a JSON object")

    msg_type = data.get("type")
    required = INBOUND_REQUIRED_FIELDS.get(msg_type)
    if required is None:
        raise ProtocolError(f"Unknown envelope type: {msg_type!r}")
    missing = [name for name in required if data.get(name) is None]
    if missing:
        raise ProtocolError(f"{msg_type} envelope missing {', '.join(missing)}")
    return data


def parse_roster(envelope: Dict[str, Any]) -> List[RosterEntry]:
    """Extract roster entries from an ``existing_users`` envelope."""
    users = envelope.get("users") or []
    if not isinstance(users, list):
        raise ProtocolError("existing_users.users is not a list")
    return [RosterEntry.from_dict(user) for user in users]


def login_envelope(username: str) -> Dict[str, Any]:
    return {"type": MSG_LOGIN, "username": username}


def join_room_envelope(room_id: str) -> Dict[str, Any]:
    return {"type": MSG_JOIN_ROOM, "roomId": room_id}


def offer_envelope(target: str, sdp: Dict[str, str]) -> Dict[str, Any]:
    return {"type": MSG_OFFER, "target": target, "sdp": sdp}


def answer_envelope(target: str, sdp: Dict[str, str]) -> Dict[str, Any]:
    return {"type": MSG_ANSWER, "target": target, "sdp": sdp}


def candidate_envelope(target: str, candidate: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": MSG_CANDIDATE, "target": target, "candidate": candidate}


def chat_envelope(content: str) -> Dict[str, Any]:
    return {"type": MSG_CHAT, "content": content}


def session_description(sdp_type: str, sdp: str) -> Dict[str, str]:
    """Build the wire form of a session description.

    Examples:
        >>> session_description("offer", "v=0...")
        {'type': 'offer', 'sdp': 'v=0...'}
    """
    return {"type": sdp_type, "sdp": sdp}


"""Per-peer negotiation state.

Each remote participant gets one ``PeerConnectionRecord``. The record owns
its transport, its negotiation state and its queue of ICE candidates that
arrived before the remote description was applied.

State machine::

    INIT ──► OFFER_SENT ─────┐
      │                      ▼
      └──► AWAITING_OFFER ─► HAVE_REMOTE ─► STABLE ─► CONNECTED

    any state past INIT ──► FAILED   (transport failure/disconnect)
    any state           ──► CLOSED   (explicit removal, terminal)
"""

import enum
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, TYPE_CHECKING

if TYPE_CHECKING:
    from meshcall.mesh.rtc_backend import PeerTransport

logger = logging.getLogger(__name__)


class PeerState(enum.Enum):
    INIT = "init"
    OFFER_SENT = "offer_sent"
    AWAITING_OFFER = "awaiting_offer"
    HAVE_REMOTE = "have_remote"
    STABLE = "stable"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


# A renegotiating offer may arrive at any point, so HAVE_REMOTE is reachable
# from every negotiating state. FAILED is reachable from everything past INIT.
ALLOWED_TRANSITIONS: Dict[PeerState, set] = {
    PeerState.INIT: {PeerState.OFFER_SENT, PeerState.AWAITING_OFFER},
    PeerState.OFFER_SENT: {PeerState.HAVE_REMOTE, PeerState.FAILED},
    PeerState.AWAITING_OFFER: {PeerState.HAVE_REMOTE, PeerState.FAILED},
    PeerState.HAVE_REMOTE: {PeerState.HAVE_REMOTE, PeerState.STABLE, PeerState.FAILED},
    PeerState.STABLE: {PeerState.HAVE_REMOTE, PeerState.CONNECTED, PeerState.FAILED},
    PeerState.CONNECTED: {PeerState.HAVE_REMOTE, PeerState.FAILED},
    PeerState.FAILED: {PeerState.HAVE_REMOTE, PeerState.CONNECTED},
    PeerState.CLOSED: set(),
}
for _state in PeerState:
    if _state is not PeerState.CLOSED:
        ALLOWED_TRANSITIONS[_state].add(PeerState.CLOSED)


@dataclass(eq=False)
class PeerConnectionRecord:
    """Connection bookkeeping for one remote participant.

    Records compare by identity: there is exactly one per peer id.

    Attributes:
        peer_id: Relay-assigned id of the remote session.
        username: Display name of the remote participant.
        is_initiator: True if this side sends the first offer.
        transport: Negotiation capability for this connection.
        state: Current negotiation state.
        pending_candidates: Remote ICE candidates awaiting the remote
            description, in arrival order.
        remote_description_applied: Whether a remote description has been
            applied; once True, candidates are applied on arrival.
    """

    peer_id: str
    username: str
    is_initiator: bool
    transport: "PeerTransport"
    state: PeerState = PeerState.INIT
    pending_candidates: Deque[Dict[str, Any]] = field(default_factory=deque)
    remote_description_applied: bool = False
    has_local_tracks: bool = False

    def transition(self, new_state: PeerState) -> bool:
        """Move to ``new_state`` if the move is allowed.

        Disallowed moves are logged and ignored; they are expected when
        messages race and are never an error.

        Returns:
            True if the state changed.
        """
        if new_state is self.state and new_state is not PeerState.HAVE_REMOTE:
            return False
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            logger.debug(
                f"Ignoring transition {self.state.name} -> {new_state.name} "
                f"for {self.peer_id}"
            )
            return False
        logger.info(f"Peer {self.peer_id}: {self.state.name} -> {new_state.name}")
        self.state = new_state
        return True

    @property
    def is_closed(self) -> bool:
        return self.state is PeerState.CLOSED

    def queue_candidate(self, candidate: Dict[str, Any]) -> None:
        if self.remote_description_applied:
            raise RuntimeError(
                f"Candidate queued for {self.peer_id} after remote description"
            )
        self.pending_candidates.append(candidate)

    def take_pending_candidates(self) -> List[Dict[str, Any]]:
        """Drain the candidate queue in FIFO order.

        Returns the queued candidates and leaves the queue empty, so each
        candidate is handed out once.
        """
        drained = list(self.pending_candidates)
        self.pending_candidates.clear()
        return drained

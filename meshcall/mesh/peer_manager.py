"""Registry and negotiation driver for the mesh's peer connections.

The PeerConnectionManager owns one ``PeerConnectionRecord`` per remote
participant and advances each record's state machine as signaling envelopes
arrive for it.

Key responsibilities:
- Idempotent record creation (roster snapshot, join notification, or an
  offer from an unknown peer)
- Initiating negotiation for peers we are responsible for offering to
- Answering offers, applying answers
- Buffering remote ICE candidates until the remote description is applied,
  then flushing them once, in arrival order
- Replacing the outgoing video track on every connection (screen sharing)
- Tearing records down on leave or session end

Who offers:
1. A client joining a room receives the roster snapshot and creates
   non-initiator records for everyone already present
2. Everyone already present receives a join notification and creates an
   initiator record for the newcomer, sending the offer
3. So each pair negotiates exactly once, from the side that was already
   in the room, and the initial handshake cannot glare

Messages are processed one at a time on the event loop, but negotiations
with different peers interleave freely; a record's candidate queue is the
only ordering guarantee for that peer.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

from meshcall.exceptions import NegotiationRace, UnknownPeerCandidate
from meshcall.mesh.peer_state import PeerConnectionRecord, PeerState
from meshcall.protocol import answer_envelope, candidate_envelope, offer_envelope

if TYPE_CHECKING:
    from meshcall.media.controller import MediaController
    from meshcall.mesh.rtc_backend import PeerTransport, TransportFactory

logger = logging.getLogger(__name__)

SendFn = Callable[[Dict[str, Any]], Awaitable[bool]]

# Connection states reported by the transport
CONNECTED_STATES = ("connected", "completed")
FAILURE_STATES = ("failed", "disconnected")

# States in which an incoming offer is the expected next step
_OFFER_EXPECTED = (
    PeerState.INIT,
    PeerState.AWAITING_OFFER,
    PeerState.STABLE,
    PeerState.CONNECTED,
)


class PeerConnectionManager:
    """Owns the per-peer connection records of a room.

    Attributes:
        send: Coroutine that transmits an envelope to the relay.
        transport_factory: Builds a ``PeerTransport`` for a peer id.
        media: Source of the local outgoing tracks, if any.
    """

    def __init__(
        self,
        send: SendFn,
        transport_factory: "TransportFactory",
        media: Optional["MediaController"] = None,
    ):
        """Initialize the manager.

        Args:
            send: Outbound envelope sender (usually ``SignalTransport.send``).
            transport_factory: Callable returning a new transport per peer.
            media: MediaController providing outgoing tracks.
        """
        self.send = send
        self.transport_factory = transport_factory
        self.media = media

        self._peers: Dict[str, PeerConnectionRecord] = {}
        self._removed_listeners: List[Callable[[str], None]] = []
        self._track_listeners: List[Callable[[str, Any], None]] = []

    # ── registry ──────────────────────────────────────────────────────────

    def get(self, peer_id: str) -> Optional[PeerConnectionRecord]:
        return self._peers.get(peer_id)

    def peers(self) -> List[PeerConnectionRecord]:
        return list(self._peers.values())

    def roster(self) -> Dict[str, str]:
        """Map of peer id to username for every live record."""
        return {peer_id: record.username for peer_id, record in self._peers.items()}

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._peers

    def __len__(self) -> int:
        return len(self._peers)

    def on_peer_removed(self, callback: Callable[[str], None]) -> None:
        """Call ``callback(peer_id)`` after a record is removed."""
        self._removed_listeners.append(callback)

    def on_remote_track(self, callback: Callable[[str, Any], None]) -> None:
        """Call ``callback(peer_id, track)`` when a peer's media arrives."""
        self._track_listeners.append(callback)

    # ── lifecycle ─────────────────────────────────────────────────────────

    async def create(
        self, peer_id: str, is_initiator: bool, username: Optional[str] = None
    ) -> PeerConnectionRecord:
        """Get or create the record for ``peer_id``.

        A new record gets the current local tracks attached (or none, if
        local media is not ready). An initiator record immediately sends an
        offer; otherwise the record waits for one.

        Args:
            peer_id: Relay id of the remote session.
            is_initiator: Whether this side sends the first offer.
            username: Display name, if known.

        Returns:
            The record for ``peer_id``; the existing one if already present.
        """
        existing = self._peers.get(peer_id)
        if existing is not None:
            if username and existing.username == "Unknown":
                existing.username = username
            return existing

        logger.info(f"Creating peer connection for {peer_id} (initiator: {is_initiator})")
        transport = self.transport_factory(peer_id)
        record = PeerConnectionRecord(
            peer_id=peer_id,
            username=username or "Unknown",
            is_initiator=is_initiator,
            transport=transport,
        )
        self._peers[peer_id] = record
        self._bind_transport(record)
        self._attach_local_tracks(record)

        if is_initiator:
            await self._send_offer(record)
        else:
            record.transition(PeerState.AWAITING_OFFER)
        return record

    async def remove(self, peer_id: str) -> None:
        """Close and forget the connection to ``peer_id``.

        Drops any queued candidates. Unknown ids are ignored.
        """
        record = self._peers.pop(peer_id, None)
        if record is None:
            logger.debug(f"remove({peer_id}): no such peer")
            return

        record.pending_candidates.clear()
        record.transition(PeerState.CLOSED)
        try:
            await record.transport.close()
        except Exception as e:
            logger.error(f"Error closing connection to {peer_id}: {e}")

        logger.info(f"Removed peer {peer_id}")
        for callback in list(self._removed_listeners):
            callback(peer_id)

    async def close_all(self) -> None:
        """Remove every record (session teardown)."""
        for peer_id in list(self._peers):
            await self.remove(peer_id)

    # ── inbound negotiation ───────────────────────────────────────────────

    async def handle_offer(self, from_id: str, sdp: Dict[str, str]) -> None:
        """Answer an offer from ``from_id``.

        Creates a non-initiator record if none exists. An offer arriving in
        an unexpected state is logged and processed anyway.
        """
        record = await self.create(from_id, is_initiator=False)

        if record.state not in _OFFER_EXPECTED:
            logger.warning(
                str(
                    NegotiationRace(
                        f"Offer from {from_id} while {record.state.name}; proceeding"
                    )
                )
            )

        try:
            await self._apply_remote_description(record, sdp)
            if record.is_closed:
                return

            answer = await record.transport.create_answer()
            await record.transport.set_local_description(answer)
            if record.is_closed:
                return
            record.transition(PeerState.STABLE)

            await self.send(
                answer_envelope(from_id, record.transport.local_description or answer)
            )
            logger.info(f"Sent answer to {from_id}")
        except Exception as e:
            logger.error(f"Failed to handle offer from {from_id}: {e}")

    async def handle_answer(self, from_id: str, sdp: Dict[str, str]) -> None:
        """Apply ``from_id``'s answer to our offer. Unknown peers are ignored."""
        record = self._peers.get(from_id)
        if record is None:
            logger.warning(f"Answer from {from_id} with no pending connection")
            return

        try:
            await self._apply_remote_description(record, sdp)
            if not record.is_closed:
                record.transition(PeerState.STABLE)
            logger.info(f"Applied answer from {from_id}")
        except Exception as e:
            logger.error(f"Failed to handle answer from {from_id}: {e}")

    async def handle_candidate(self, from_id: str, candidate: Dict[str, Any]) -> None:
        """Apply or queue a remote ICE candidate.

        Candidates for peers without a record are discarded.
        """
        record = self._peers.get(from_id)
        if record is None:
            logger.warning(
                str(UnknownPeerCandidate(f"Discarding candidate from unknown peer {from_id}"))
            )
            return

        if not record.remote_description_applied:
            record.queue_candidate(candidate)
            logger.debug(
                f"Queued ICE candidate from {from_id} "
                f"({len(record.pending_candidates)} pending)"
            )
            return

        await self._add_candidate(record, candidate)

    # ── outgoing media ────────────────────────────────────────────────────

    async def replace_outgoing_video(self, track) -> List[str]:
        """Send ``track`` as the outgoing video on every connection.

        Each connection gets its own subscription of ``track``; connections
        already sending it are left alone. A failure on one connection is
        logged and does not stop the others; nothing is rolled back.

        Returns:
            Peer ids whose replacement failed.
        """
        failed = []
        for record in self.peers():
            if record.is_closed:
                continue
            outgoing = track
            if self.media is not None:
                current = self.media.source_of(record.transport.outgoing_video_track)
                if track is not None and current is track:
                    continue
                outgoing = self.media.subscribe(track)
            try:
                replaced = await record.transport.replace_outgoing_video_track(outgoing)
            except Exception as e:
                logger.error(f"Failed to replace video track for {record.peer_id}: {e}")
                failed.append(record.peer_id)
                replaced = False
            if not replaced and outgoing is not None and outgoing is not track:
                outgoing.stop()
        return failed

    # ── internals ─────────────────────────────────────────────────────────

    def _bind_transport(self, record: PeerConnectionRecord) -> None:
        peer_id = record.peer_id

        async def on_local_candidate(candidate: Dict[str, Any]) -> None:
            await self.send(candidate_envelope(peer_id, candidate))

        async def on_connection_state(state: str) -> None:
            await self._on_connection_state(record, state)

        def on_remote_track(track) -> None:
            for callback in list(self._track_listeners):
                callback(peer_id, track)

        record.transport.bind(
            on_local_candidate=on_local_candidate,
            on_connection_state=on_connection_state,
            on_remote_track=on_remote_track,
        )

    def _attach_local_tracks(self, record: PeerConnectionRecord) -> None:
        tracks = self.media.outgoing_tracks() if self.media is not None else []
        if not tracks:
            logger.warning(
                f"No local media available when creating connection to {record.peer_id}"
            )
            record.transport.add_receive_only()
            return
        for track in tracks:
            record.transport.add_track(track)
        record.has_local_tracks = True

    async def _send_offer(self, record: PeerConnectionRecord) -> None:
        try:
            offer = await record.transport.create_offer()
            await record.transport.set_local_description(offer)
        except Exception as e:
            logger.error(f"Failed to create offer for {record.peer_id}: {e}")
            return
        if record.is_closed:
            return
        record.transition(PeerState.OFFER_SENT)
        await self.send(
            offer_envelope(record.peer_id, record.transport.local_description or offer)
        )
        logger.info(f"Sent offer to {record.peer_id}")

    async def _apply_remote_description(
        self, record: PeerConnectionRecord, sdp: Dict[str, str]
    ) -> None:
        """Apply ``sdp`` and flush the candidate queue exactly once."""
        await record.transport.set_remote_description(sdp)
        if record.is_closed:
            return
        record.transition(PeerState.HAVE_REMOTE)
        if record.remote_description_applied:
            return

        record.remote_description_applied = True
        pending = record.take_pending_candidates()
        if pending:
            logger.info(f"Processing {len(pending)} queued candidates for {record.peer_id}")
        for candidate in pending:
            await self._add_candidate(record, candidate)

    async def _add_candidate(
        self, record: PeerConnectionRecord, candidate: Dict[str, Any]
    ) -> None:
        try:
            await record.transport.add_ice_candidate(candidate)
            logger.debug(f"Added ICE candidate from {record.peer_id}")
        except Exception as e:
            logger.error(f"Error adding ICE candidate from {record.peer_id}: {e}")

    async def _on_connection_state(self, record: PeerConnectionRecord, state: str) -> None:
        if record.is_closed:
            return
        if state in CONNECTED_STATES:
            record.transition(PeerState.CONNECTED)
        elif state in FAILURE_STATES:
            logger.warning(f"Connection with {record.peer_id} {state}")
            record.transition(PeerState.FAILED)
        else:
            logger.debug(f"Connection with {record.peer_id}: {state}")

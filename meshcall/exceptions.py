"""Exception hierarchy for meshcall.

Almost every fault in a call is handled where it happens and logged; these
types exist so callers can tell the failure modes apart. None of them is
fatal to the session.
"""


class MeshCallError(Exception):
    """Base class for all meshcall errors."""


class TransportUnavailable(MeshCallError):
    """A send was attempted while the signaling channel was not open.

    The transport drops the envelope and logs this; it is never raised to
    callers of ``send``.
    """


class ProtocolError(MeshCallError):
    """An inbound frame could not be decoded into a known envelope."""


class SessionStateError(MeshCallError):
    """A room action was attempted out of order (e.g. join before login)."""


class IdentityAlreadySet(SessionStateError):
    """The local username is immutable once set."""


class MediaAcquisitionFailure(MeshCallError):
    """Camera or microphone capture could not be started.

    Attributes:
        reason: ``"permission"`` when access was refused, ``"device"`` when
            the device is missing or failed to open.
    """

    PERMISSION = "permission"
    DEVICE = "device"

    def __init__(self, message: str, reason: str = DEVICE):
        super().__init__(message)
        self.reason = reason


class NegotiationRace(MeshCallError):
    """An offer arrived while the peer was mid-negotiation.

    Logged; negotiation proceeds optimistically.
    """


class UnknownPeerCandidate(MeshCallError):
    """An ICE candidate arrived for a peer with no connection record."""


class ScreenShareUnsupported(MeshCallError):
    """Display capture is not available on this platform or configuration."""


class ScreenShareDenied(MeshCallError):
    """The user cancelled or refused the display capture request."""

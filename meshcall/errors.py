"""Error types raised by meshcall.

Only ``MediaAccessError`` and ``ChannelDisconnected`` are meant to reach the
presentation layer. ``NegotiationError`` and ``TransportFailure`` are handled
inside the mesh coordinator by its reconnection policy.
"""


class MeshcallError(Exception):
    """Base class for all meshcall errors."""


class MediaAccessError(MeshcallError):
    """The local capture device is denied or unavailable.

    Not retryable without user action (permissions or hardware).
    """


class ChannelDisconnected(MeshcallError):
    """The signaling channel to the relay dropped or was closed.

    All in-flight signaling is lost. Recovery is a fresh join, which yields a
    new membership snapshot.
    """


class NegotiationError(MeshcallError):
    """Creating or applying a session description failed for a peer link."""

    def __init__(self, peer_id: str, step: str, cause: Exception = None):
        self.peer_id = peer_id
        self.step = step
        self.cause = cause
        message = f"Negotiation with {peer_id} failed during {step}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class TransportFailure(MeshcallError):
    """The underlying peer connection reported the ``failed`` state."""

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        super().__init__(f"Transport to {peer_id} failed")

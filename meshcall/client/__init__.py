"""Client side of a meshcall call.

This module provides:
- channel: WebSocket signaling channel to the relay
- peer_link: negotiation state machine for one remote participant
- mesh_coordinator: keeps one peer link per room member, with reconnection
- media: local capture shared across links, with camera/microphone gates
- session: join/leave lifecycle tying the above together
"""

from meshcall.client.channel import SignalingChannel
from meshcall.client.media import GatedTrack, LocalMedia
from meshcall.client.mesh_coordinator import MeshCoordinator, make_peer_connection_factory
from meshcall.client.peer_link import LinkState, PeerLink, Role, is_initiator
from meshcall.client.session import SessionClient, SessionState

__all__ = [
    # Signaling
    "SignalingChannel",
    # Mesh
    "MeshCoordinator",
    "make_peer_connection_factory",
    "PeerLink",
    "LinkState",
    "Role",
    "is_initiator",
    # Media
    "LocalMedia",
    "GatedTrack",
    # Session
    "SessionClient",
    "SessionState",
]

"""Signaling relay for meshcall.

This module provides:
- rooms: Room membership registry with per-room locking
- server: WebSocket relay routing signaling between room members
"""

from meshcall.relay.rooms import Departure, Room, RoomRegistry
from meshcall.relay.server import HEALTH_PATH, SignalingRelay

__all__ = [
    # Membership
    "Departure",
    "Room",
    "RoomRegistry",
    # Server
    "SignalingRelay",
    "HEALTH_PATH",
]

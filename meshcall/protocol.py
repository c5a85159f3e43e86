"""Signaling message protocol for meshcall.

This module defines the messages exchanged between clients and the signaling
relay over the signaling channel (a WebSocket carrying JSON text frames).

Message Protocol Overview
-------------------------

Every frame is a single JSON object with a ``type`` field. The relay owns
room membership and only routes the negotiation messages; it never looks
inside their payloads.

Message Types
-------------

**welcome**
    Sent by: Relay, once per connection
    Purpose: Tells the client the participant id the relay assigned to it
    Format: {"type": "welcome", "id": "3f2a..."}

**join_room**
    Sent by: Client
    Purpose: Leave the current room (if any) and join ``room_id``
    Format: {"type": "join_room", "room_id": "ABC123", "username": "alice"}

**room_users**
    Sent by: Relay, once per join, to the joiner only
    Purpose: Full membership snapshot of the joined room, excluding the joiner
    Format: {"type": "room_users", "users": [{"id": "p1", "username": "bob"}]}

**user_joined**
    Sent by: Relay, to every other member of the room
    Format: {"type": "user_joined", "user": {"id": "p2", "username": "alice"}}

**user_left**
    Sent by: Relay, to every remaining member of the room
    Format: {"type": "user_left", "id": "p2"}

**offer** / **answer** / **ice_candidate**
    Sent by: Client, routed by the relay to ``target``
    Purpose: WebRTC negotiation between two members of the same room
    Format: {"type": "offer", "target": "p1", "payload": {"sdp": "...", "type": "offer"}}
    Note: The relay stamps ``sender`` with the originating participant id
    before forwarding; a sender supplied by the client is overwritten.

**error**
    Sent by: Relay
    Purpose: Reports a malformed or unroutable request. The channel stays open.
    Format: {"type": "error", "reason": "Invalid JSON payload"}

Message Flow Example
--------------------

1. P1 connects → Relay: welcome {id: p1}
2. P1 → Relay: join_room ABC123 → P1 receives room_users []
3. P2 connects, joins ABC123 → P1 receives user_joined p2,
   P2 receives room_users [p1]
4. "p2" > "p1" so P2 initiates: P2 → offer(target=p1) → P1
5. P1 → answer(target=p2) → P2
6. Both sides trickle ice_candidate messages until the transport connects
"""

import json
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Union

# Relay → client
MSG_WELCOME = "welcome"
MSG_ROOM_USERS = "room_users"
MSG_USER_JOINED = "user_joined"
MSG_USER_LEFT = "user_left"
MSG_ERROR = "error"

# Client → relay
MSG_JOIN_ROOM = "join_room"

# Peer ↔ peer, routed by the relay
MSG_OFFER = "offer"
MSG_ANSWER = "answer"
MSG_ICE_CANDIDATE = "ice_candidate"

RELAYED_TYPES = frozenset({MSG_OFFER, MSG_ANSWER, MSG_ICE_CANDIDATE})


class ProtocolError(ValueError):
    """A frame could not be decoded into a known signaling message."""


def _require(data: Dict[str, Any], key: str, kind: type = str) -> Any:
    value = data.get(key)
    if not isinstance(value, kind) or (kind is str and not value):
        raise ProtocolError(f"'{data.get('type')}' message missing '{key}'")
    return value


@dataclass(frozen=True)
class Participant:
    """A member of a room as seen on the wire."""

    id: str
    username: str = ""

    def to_dict(self) -> dict:
        return {"id": self.id, "username": self.username}

    @classmethod
    def from_dict(cls, data: Any) -> "Participant":
        if not isinstance(data, dict):
            raise ProtocolError("participant entry must be an object")
        username = data.get("username") or ""
        if not isinstance(username, str):
            raise ProtocolError("participant username must be a string")
        return cls(id=_require(data, "id"), username=username)


@dataclass
class Welcome:
    type: ClassVar[str] = MSG_WELCOME
    participant_id: str

    def to_dict(self) -> dict:
        return {"type": self.type, "id": self.participant_id}

    @classmethod
    def from_dict(cls, data: dict) -> "Welcome":
        return cls(participant_id=_require(data, "id"))


@dataclass
class JoinRoom:
    type: ClassVar[str] = MSG_JOIN_ROOM
    room_id: str
    username: str = ""

    def to_dict(self) -> dict:
        return {"type": self.type, "room_id": self.room_id, "username": self.username}

    @classmethod
    def from_dict(cls, data: dict) -> "JoinRoom":
        username = data.get("username") or ""
        if not isinstance(username, str):
            raise ProtocolError("'join_room' username must be a string")
        return cls(room_id=_require(data, "room_id"), username=username)


@dataclass
class RoomMembership:
    """Membership snapshot sent to a joiner (``room_users``)."""

    type: ClassVar[str] = MSG_ROOM_USERS
    users: List[Participant] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"type": self.type, "users": [u.to_dict() for u in self.users]}

    @classmethod
    def from_dict(cls, data: dict) -> "RoomMembership":
        users = _require(data, "users", list)
        return cls(users=[Participant.from_dict(u) for u in users])


@dataclass
class ParticipantJoined:
    type: ClassVar[str] = MSG_USER_JOINED
    user: Participant

    def to_dict(self) -> dict:
        return {"type": self.type, "user": self.user.to_dict()}

    @classmethod
    def from_dict(cls, data: dict) -> "ParticipantJoined":
        return cls(user=Participant.from_dict(data.get("user")))


@dataclass
class ParticipantLeft:
    type: ClassVar[str] = MSG_USER_LEFT
    participant_id: str

    def to_dict(self) -> dict:
        return {"type": self.type, "id": self.participant_id}

    @classmethod
    def from_dict(cls, data: dict) -> "ParticipantLeft":
        return cls(participant_id=_require(data, "id"))


@dataclass
class RelayedSignal:
    """Negotiation message routed verbatim between two participants.

    Attributes:
        payload: Opaque session description or candidate object.
        target: Participant id the relay should deliver to.
        sender: Originating participant id. Filled in by the relay.
    """

    type: ClassVar[str] = ""
    payload: Any
    target: str
    sender: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"type": self.type, "payload": self.payload, "target": self.target}
        if self.sender is not None:
            data["sender"] = self.sender
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RelayedSignal":
        if "payload" not in data:
            raise ProtocolError(f"'{cls.type}' message missing 'payload'")
        sender = data.get("sender")
        if sender is not None and not isinstance(sender, str):
            raise ProtocolError(f"'{cls.type}' sender must be a string")
        return cls(payload=data["payload"], target=_require(data, "target"), sender=sender)


@dataclass
class Offer(RelayedSignal):
    type: ClassVar[str] = MSG_OFFER


@dataclass
class Answer(RelayedSignal):
    type: ClassVar[str] = MSG_ANSWER


@dataclass
class IceCandidate(RelayedSignal):
    type: ClassVar[str] = MSG_ICE_CANDIDATE


@dataclass
class ErrorMessage:
    type: ClassVar[str] = MSG_ERROR
    reason: str

    def to_dict(self) -> dict:
        return {"type": self.type, "reason": self.reason}

    @classmethod
    def from_dict(cls, data: dict) -> "ErrorMessage":
        return cls(reason=str(data.get("reason", "")))


SignalMessage = Union[
    Welcome,
    JoinRoom,
    RoomMembership,
    ParticipantJoined,
    ParticipantLeft,
    Offer,
    Answer,
    IceCandidate,
    ErrorMessage,
]

MESSAGE_CLASSES = {
    cls.type: cls
    for cls in (
        Welcome,
        JoinRoom,
        RoomMembership,
        ParticipantJoined,
        ParticipantLeft,
        Offer,
        Answer,
        IceCandidate,
        ErrorMessage,
    )
}


def format_message(message: SignalMessage) -> str:
    """Encode a message as a JSON text frame.

    Examples:
        >>> format_message(ParticipantLeft("p2"))
        '{"type": "user_left", "id": "p2"}'
    """
    return json.dumps(message.to_dict())


def parse_message(raw: Union[str, bytes]) -> SignalMessage:
    """Decode a JSON text frame into a message object.

    Args:
        raw: Frame received from the signaling channel.

    Returns:
        The message dataclass matching the frame's ``type``.

    Raises:
        ProtocolError: If the frame is not JSON, not an object, has an unknown
            type or lacks a required field.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON payload: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object")

    msg_type = data.get("type")
    if not isinstance(msg_type, str):
        raise ProtocolError(f"Message type must be a string, got {msg_type!r}")
    cls = MESSAGE_CLASSES.get(msg_type)
    if cls is None:
        raise ProtocolError(f"Unknown message type: {msg_type}")
    return cls.from_dict(data)

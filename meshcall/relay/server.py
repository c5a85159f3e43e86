"""WebSocket signaling relay for meshcall calls.

The relay assigns every connection a participant id, keeps room membership
and forwards negotiation messages (offer, answer, ice_candidate) between
members of the same room. It never looks inside negotiation payloads and
never touches media.

Usage:
    relay = SignalingRelay(RelayConfig(port=3001))
    await relay.serve_forever()
"""

import asyncio
import http
import logging
import uuid
from typing import Callable, Dict, Optional, Protocol

import websockets
from websockets.exceptions import ConnectionClosed

from meshcall.config import RelayConfig
from meshcall.protocol import (
    ErrorMessage,
    JoinRoom,
    Participant,
    ParticipantJoined,
    ParticipantLeft,
    ProtocolError,
    RelayedSignal,
    RoomMembership,
    SignalMessage,
    Welcome,
    format_message,
    parse_message,
)
from meshcall.relay.rooms import Departure, RoomRegistry

logger = logging.getLogger(__name__)

HEALTH_PATH = "/health"


class Channel(Protocol):
    """The part of a server-side WebSocket connection the relay uses."""

    async def send(self, message: str) -> None: ...


def _default_id_factory() -> str:
    return uuid.uuid4().hex


class SignalingRelay:
    """Routes signaling between participants and owns room membership.

    Attributes:
        config: Listening and keepalive settings.
        registry: Room membership state.
        channels: participant_id -> connected channel.
    """

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        id_factory: Callable[[], str] = _default_id_factory,
    ):
        """Initialize the relay.

        Args:
            config: Relay settings. Defaults to ``RelayConfig()``.
            id_factory: Produces participant ids for new connections.
        """
        self.config = config or RelayConfig()
        self.registry = RoomRegistry()
        self.channels: Dict[str, Channel] = {}
        self._id_factory = id_factory

    # ===== Membership =====

    async def register(self, channel: Channel) -> str:
        """Assign a participant id to a new channel and send it ``welcome``."""
        participant_id = self._id_factory()
        while participant_id in self.channels:
            participant_id = self._id_factory()
        self.channels[participant_id] = channel
        logger.info(f"Participant connected: {participant_id} (total: {len(self.channels)})")
        await self._send(participant_id, Welcome(participant_id))
        return participant_id

    async def join_room(self, participant_id: str, room_id: str, username: str) -> None:
        """Move a participant into ``room_id`` and announce it.

        The joiner receives the membership snapshot (other members only),
        the new room receives ``user_joined`` and the previous room, if any,
        receives ``user_left``. Both rooms stay locked until every message
        has been handed to its channel.
        """
        if participant_id not in self.channels:
            logger.warning(f"Ignoring join from unknown participant {participant_id}")
            return

        previous = self.registry.room_of(participant_id)
        async with self.registry.locked(previous, room_id):
            if participant_id not in self.channels:
                # Disconnected while waiting for the locks
                return

            participant = Participant(id=participant_id, username=username)

            if self.registry.room_of(participant_id) == room_id:
                # Rejoining the same room only refreshes the snapshot
                room = self.registry.rooms[room_id]
                room.members[participant_id] = participant
                await self._send(participant_id, RoomMembership(room.others(participant_id)))
                return

            departure = self.registry.join(participant, room_id)
            others = self.registry.rooms[room_id].others(participant_id)
            logger.info(
                f"{participant_id} ({username}) joined room {room_id} "
                f"({len(others) + 1} member(s))"
            )

            await self._send(participant_id, RoomMembership(others))
            await self._broadcast(others, ParticipantJoined(participant))
            if departure is not None:
                await self._announce_departure(participant_id, departure)

    async def disconnect(self, participant_id: str) -> None:
        """Remove a participant whose channel closed or timed out."""
        room_id = self.registry.room_of(participant_id)
        async with self.registry.locked(room_id):
            self.channels.pop(participant_id, None)
            departure = self.registry.remove(participant_id)
            if departure is not None:
                await self._announce_departure(participant_id, departure)
        logger.info(f"Participant disconnected: {participant_id} (remaining: {len(self.channels)})")

    async def _announce_departure(self, participant_id: str, departure: Departure) -> None:
        if departure.room_discarded:
            return
        logger.info(f"{participant_id} left room {departure.room_id}")
        await self._broadcast(departure.remaining, ParticipantLeft(participant_id))

    # ===== Routing =====

    async def relay_signal(self, signal: RelayedSignal, from_id: str) -> bool:
        """Forward a negotiation message to its target.

        Delivered only if the target is connected and in the sender's room.
        Anything else is a route miss: dropped without telling the sender,
        since membership events are the source of truth.

        Returns:
            True if the message was handed to the target's channel.
        """
        target = signal.target
        if target not in self.channels or not self.registry.same_room(from_id, target):
            logger.debug(f"Dropping {signal.type} from {from_id}: {target} not reachable")
            return False

        signal.sender = from_id
        delivered = await self._send(target, signal)
        if delivered:
            logger.debug(f"Forwarded {signal.type} from {from_id} to {target}")
        return delivered

    async def handle_message(self, participant_id: str, raw) -> None:
        """Dispatch one frame received from ``participant_id``."""
        try:
            message = parse_message(raw)
        except ProtocolError as e:
            preview = str(raw)[:100]
            logger.warning(f"Malformed message from {participant_id}: {e}. Preview: {preview}")
            await self._send(participant_id, ErrorMessage(str(e)))
            return

        if isinstance(message, JoinRoom):
            await self.join_room(participant_id, message.room_id, message.username)
        elif isinstance(message, RelayedSignal):
            if self.registry.room_of(participant_id) is None:
                await self._send(participant_id, ErrorMessage("Join a room before signaling"))
                return
            await self.relay_signal(message, participant_id)
        else:
            logger.warning(f"Unexpected {message.type} from {participant_id}")
            await self._send(participant_id, ErrorMessage(f"Unexpected message type: {message.type}"))

    async def _send(self, participant_id: str, message: SignalMessage) -> bool:
        channel = self.channels.get(participant_id)
        if channel is None:
            return False
        try:
            await channel.send(format_message(message))
            return True
        except ConnectionClosed:
            # The handler's finally block runs the disconnect path
            logger.debug(f"Channel to {participant_id} closed while sending {message.type}")
            return False

    async def _broadcast(self, recipients, message: SignalMessage) -> None:
        await asyncio.gather(*(self._send(p.id, message) for p in recipients))

    # ===== WebSocket server =====

    async def handler(self, websocket) -> None:
        """Serve one WebSocket connection until it closes."""
        participant_id = await self.register(websocket)
        try:
            async for raw in websocket:
                try:
                    await self.handle_message(participant_id, raw)
                except Exception as e:
                    # One bad message must not take the channel down
                    logger.exception(f"Error handling message from {participant_id}: {e}")
        except ConnectionClosed as e:
            logger.info(f"Connection closed: {participant_id} ({e})")
        finally:
            await self.disconnect(participant_id)

    def process_request(self, connection, request):
        """Answer the liveness check; let every other request upgrade."""
        if request.path == HEALTH_PATH:
            return connection.respond(http.HTTPStatus.OK, "")
        return None

    def serve(self):
        """Return the ``websockets.serve`` context manager for this relay."""
        return websockets.serve(
            self.handler,
            self.config.host,
            self.config.port,
            process_request=self.process_request,
            ping_interval=self.config.keepalive_interval,
            ping_timeout=self.config.keepalive_timeout,
            max_size=self.config.max_message_size,
        )

    async def serve_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        """Run the relay until ``stop`` is set (forever if not given)."""
        stop = stop or asyncio.Event()
        async with self.serve():
            logger.info(f"Signaling relay running on ws://{self.config.host}:{self.config.port}")
            await stop.wait()
        logger.info("Signaling relay stopped")

"""Client side of the signaling channel.

Wraps one WebSocket connection to the relay. Incoming frames are parsed and
re-emitted as events named after their message type, so any number of
consumers can subscribe:

    channel.on("user_joined", lambda msg: ...)

Events:
    welcome, room_users, user_joined, user_left, offer, answer,
    ice_candidate: the parsed message object.
    relay_error: an ErrorMessage sent by the relay.
    disconnected: a ChannelDisconnected, emitted once if the connection
    drops without ``close()`` being called.
"""

import asyncio
import logging
from typing import Any, Optional

import websockets
from pyee.asyncio import AsyncIOEventEmitter
from websockets.exceptions import ConnectionClosed

from meshcall.config import ClientConfig
from meshcall.errors import ChannelDisconnected
from meshcall.protocol import (
    Answer,
    ErrorMessage,
    IceCandidate,
    JoinRoom,
    Offer,
    ProtocolError,
    SignalMessage,
    Welcome,
    format_message,
    parse_message,
)

logger = logging.getLogger(__name__)


class SignalingChannel(AsyncIOEventEmitter):
    """Persistent, ordered connection from one client to the relay.

    Attributes:
        config: Client settings (URL, keepalive, frame size).
        participant_id: Id assigned by the relay, set by ``connect()``.
    """

    def __init__(self, config: Optional[ClientConfig] = None):
        super().__init__()
        self.config = config or ClientConfig()
        self.participant_id: Optional[str] = None
        self.websocket = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False
        self.on("error", self._on_handler_error)

    def _on_handler_error(self, error: Exception) -> None:
        logger.error(f"Signaling event handler failed: {error!r}")

    @property
    def connected(self) -> bool:
        return self.websocket is not None and not self._closing

    async def connect(self, welcome_timeout: float = 10.0) -> str:
        """Open the WebSocket and wait for the relay to assign our id.

        Returns:
            The participant id assigned by the relay.

        Raises:
            ChannelDisconnected: If the relay is unreachable or does not
                send ``welcome`` in time.
        """
        url = self.config.signaling_url
        logger.info(f"Connecting to signaling relay at {url}...")
        try:
            self.websocket = await websockets.connect(
                url,
                ping_interval=self.config.keepalive_interval,
                ping_timeout=self.config.keepalive_timeout,
                max_size=self.config.max_message_size,
            )
            raw = await asyncio.wait_for(self.websocket.recv(), welcome_timeout)
            welcome = parse_message(raw)
        except (OSError, ConnectionClosed, asyncio.TimeoutError, ProtocolError) as e:
            await self._drop_websocket()
            raise ChannelDisconnected(f"Could not connect to {url}: {e}") from e

        if not isinstance(welcome, Welcome):
            await self._drop_websocket()
            raise ChannelDisconnected(f"Expected welcome from relay, got {welcome.type}")

        self.participant_id = welcome.participant_id
        self._closing = False
        self._reader = asyncio.create_task(self._read_loop())
        logger.info(f"Connected to relay as {self.participant_id}")
        self.emit(welcome.type, welcome)
        return self.participant_id

    async def _read_loop(self) -> None:
        """Parse frames and emit them in arrival order."""
        try:
            async for raw in self.websocket:
                try:
                    message = parse_message(raw)
                except ProtocolError as e:
                    logger.warning(f"Skipping malformed frame from relay: {e}")
                    continue
                if isinstance(message, ErrorMessage):
                    # "error" is reserved by pyee for handler exceptions
                    logger.warning(f"Relay reported error: {message.reason}")
                    self.emit("relay_error", message)
                    continue
                self.emit(message.type, message)
        except ConnectionClosed as e:
            logger.info(f"Signaling channel closed: {e}")
        finally:
            if not self._closing:
                self._closing = True
                logger.warning("Signaling channel disconnected unexpectedly")
                self.emit("disconnected", ChannelDisconnected("Signaling channel dropped"))

    async def send(self, message: SignalMessage) -> None:
        """Send one message to the relay.

        Raises:
            ChannelDisconnected: If the channel is not open.
        """
        if not self.connected:
            raise ChannelDisconnected(f"Cannot send {message.type}: channel not open")
        try:
            await self.websocket.send(format_message(message))
        except ConnectionClosed as e:
            raise ChannelDisconnected(f"Channel closed while sending {message.type}") from e

    async def join_room(self, room_id: str, username: str) -> None:
        await self.send(JoinRoom(room_id=room_id, username=username))

    async def send_offer(self, payload: Any, target: str) -> None:
        await self.send(Offer(payload=payload, target=target))

    async def send_answer(self, payload: Any, target: str) -> None:
        await self.send(Answer(payload=payload, target=target))

    async def send_ice_candidate(self, payload: Any, target: str) -> None:
        await self.send(IceCandidate(payload=payload, target=target))

    async def close(self) -> None:
        """Close the connection without emitting ``disconnected``."""
        self._closing = True
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        await self._drop_websocket()
        logger.info("Signaling channel closed")

    async def _drop_websocket(self) -> None:
        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None

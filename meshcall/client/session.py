"""Session client: the join/leave lifecycle of one call participant.

Usage:
    session = SessionClient(config.client, config.media)
    session.on("remote_track", lambda peer_id, track: ...)
    await session.start("ABC123", "alice")
    ...
    await session.end_call()
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Dict, List, Optional

from aiortc import MediaStreamTrack, RTCPeerConnection
from pyee.asyncio import AsyncIOEventEmitter

from meshcall.client.channel import SignalingChannel
from meshcall.client.media import LocalMedia
from meshcall.client.mesh_coordinator import MeshCoordinator
from meshcall.config import ClientConfig, MediaConfig
from meshcall.errors import ChannelDisconnected

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    JOINING = "joining"
    IN_CALL = "in_call"
    ENDED = "ended"


class SessionClient(AsyncIOEventEmitter):
    """One participant in one call.

    Events:
        remote_track (peer_id, track)
        peer_removed (peer_id)
        connection_state (peer_id, state)
        active_peers (count)
        peer_failed (peer_id, error)
        ended (error): None after ``end_call()``, ChannelDisconnected when the
            relay connection dropped.

    Attributes:
        room_id: Room joined by ``start()``.
        participant_id: Id assigned by the relay.
        remote_tracks: peer id -> tracks received from that peer.
        finished: Set once teardown completed.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        media_config: Optional[MediaConfig] = None,
        channel: Optional[SignalingChannel] = None,
        pc_factory: Optional[Callable[[], RTCPeerConnection]] = None,
        media_opener: Callable[[MediaConfig], LocalMedia] = LocalMedia.open,
    ):
        super().__init__()
        self.config = config or ClientConfig()
        self.media_config = media_config or MediaConfig()
        self.channel = channel or SignalingChannel(self.config)
        self.pc_factory = pc_factory
        self._media_opener = media_opener

        self.state = SessionState.IDLE
        self.room_id: Optional[str] = None
        self.media: Optional[LocalMedia] = None
        self.coordinator: Optional[MeshCoordinator] = None
        self.remote_tracks: Dict[str, List[MediaStreamTrack]] = {}
        self.finished = asyncio.Event()
        self._teardown: Optional[asyncio.Task] = None

    @property
    def participant_id(self) -> Optional[str]:
        return self.channel.participant_id

    @property
    def active_peers(self) -> int:
        return self.coordinator.active_peers if self.coordinator else 0

    async def start(self, room_id: str, username: str) -> None:
        """Acquire local media, connect to the relay and join ``room_id``.

        Raises:
            MediaAccessError: If the capture source cannot be opened.
            ChannelDisconnected: If the relay cannot be reached.
        """
        if self.state is not SessionState.IDLE:
            raise RuntimeError(f"Session already {self.state.value}")
        self.state = SessionState.JOINING

        try:
            self.media = self._media_opener(self.media_config)
        except Exception:
            self.state = SessionState.IDLE
            raise

        try:
            await self.channel.connect()
        except ChannelDisconnected:
            self.media.stop()
            self.media = None
            self.state = SessionState.IDLE
            raise

        self.coordinator = MeshCoordinator(
            self.channel,
            local_tracks=self.media.tracks_for_link,
            pc_factory=self.pc_factory,
            config=self.config,
        )
        self.coordinator.on("remote_track", self._on_remote_track)
        self.coordinator.on("peer_removed", self._on_peer_removed)
        for event in ("connection_state", "active_peers", "peer_failed"):
            self.coordinator.on(event, self._forwarder(event))
        self.channel.on("disconnected", self._on_channel_disconnected)

        self.room_id = room_id
        try:
            await self.channel.join_room(room_id, username)
        except ChannelDisconnected as e:
            await self._shutdown(e)
            raise
        self.state = SessionState.IN_CALL
        logger.info(f"Joined room {room_id} as {username} ({self.participant_id})")

    def _forwarder(self, event: str):
        return lambda *args: self.emit(event, *args)

    def _on_remote_track(self, peer_id: str, track: MediaStreamTrack) -> None:
        self.remote_tracks.setdefault(peer_id, []).append(track)
        self.emit("remote_track", peer_id, track)

    def _on_peer_removed(self, peer_id: str) -> None:
        self.remote_tracks.pop(peer_id, None)
        self.emit("peer_removed", peer_id)

    # ===== Local media controls =====

    def toggle_camera(self, enabled: bool) -> bool:
        """Enable or disable the outgoing video on every link."""
        if self.media is None:
            return False
        return self.media.set_enabled("video", enabled)

    def toggle_microphone(self, enabled: bool) -> bool:
        """Enable or disable the outgoing audio on every link."""
        if self.media is None:
            return False
        return self.media.set_enabled("audio", enabled)

    def is_video_enabled(self) -> bool:
        return self.media is not None and self.media.is_enabled("video")

    def is_audio_enabled(self) -> bool:
        return self.media is not None and self.media.is_enabled("audio")

    # ===== Teardown =====

    def _on_channel_disconnected(self, error: ChannelDisconnected) -> None:
        logger.error(f"Lost connection to the relay: {error}")
        if self._teardown is None:
            self._teardown = asyncio.ensure_future(self._shutdown(error))

    async def end_call(self) -> None:
        """Leave the call: close every link, release media, close the channel."""
        if self._teardown is None:
            self._teardown = asyncio.ensure_future(self._shutdown(None))
        await asyncio.shield(self._teardown)

    async def _shutdown(self, error: Optional[Exception]) -> None:
        if self.state is SessionState.ENDED:
            return
        self.state = SessionState.ENDED
        if self.coordinator is not None:
            await self.coordinator.close()
        if self.media is not None:
            self.media.stop()
        await self.channel.close()
        self.remote_tracks.clear()
        logger.info(f"Call ended{f': {error}' if error else ''}")
        self.finished.set()
        self.emit("ended", error)

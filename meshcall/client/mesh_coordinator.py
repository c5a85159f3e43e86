"""Mesh coordinator for participant-to-participant peer links.

This module keeps the local participant connected to every other member of
its room, one PeerLink per remote participant.

Key responsibilities:
- Membership tracking from room_users / user_joined / user_left
- PeerLink creation (idempotent) and teardown
- Routing offer / answer / ice_candidate messages to the right link
- Initiator tie-break (delegated to ``peer_link.is_initiator``)
- Reconnection policy: one delayed retry per failure streak

Architecture:
1. Local participant joins, relay sends room_users
2. Coordinator creates a PeerLink per listed member
3. For each pair, the side with the greater id sends the offer
4. Later arrivals are announced with user_joined and handled the same way
5. A link whose transport fails is released and retried once after
   ``reconnect_delay``; user_left or leave cancels the retry

Event handlers subscribed on the channel are synchronous: they only update
bookkeeping and hand work to the link's own tasks, so messages are dispatched
in the order the channel delivered them.
"""

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional, Set

from aiortc import MediaStreamTrack, RTCConfiguration, RTCIceServer, RTCPeerConnection
from pyee.asyncio import AsyncIOEventEmitter

from meshcall.client.peer_link import LinkState, PeerLink, Role
from meshcall.config import ClientConfig
from meshcall.protocol import (
    MSG_ANSWER,
    MSG_ICE_CANDIDATE,
    MSG_OFFER,
    MSG_ROOM_USERS,
    MSG_USER_JOINED,
    MSG_USER_LEFT,
    Answer,
    IceCandidate,
    Offer,
    Participant,
    ParticipantJoined,
    ParticipantLeft,
    RoomMembership,
)

logger = logging.getLogger(__name__)


def make_peer_connection_factory(ice_servers: Iterable[str]) -> Callable[[], RTCPeerConnection]:
    """Return a factory creating RTCPeerConnections configured with ``ice_servers``."""
    servers = [RTCIceServer(urls=url) for url in ice_servers]

    def factory() -> RTCPeerConnection:
        if servers:
            return RTCPeerConnection(RTCConfiguration(iceServers=servers))
        return RTCPeerConnection()

    return factory


class MeshCoordinator(AsyncIOEventEmitter):
    """Coordinates the full mesh of peer links for one session.

    Events (for the presentation layer):
        remote_track (peer_id, track)
        peer_removed (peer_id)
        connection_state (peer_id, state)
        active_peers (count)
        peer_failed (peer_id, error): retries exhausted, link removed

    Attributes:
        channel: SignalingChannel (or anything with the same events/sends).
        links: remote participant id -> PeerLink, at most one per peer.
        members: remote participant id -> Participant, from membership events.
        reconnect_delay: Seconds between a failure and its retry.
        max_reconnect_attempts: Retries allowed before giving up on a peer.
    """

    def __init__(
        self,
        channel,
        local_tracks: Callable[[], List[MediaStreamTrack]] = list,
        pc_factory: Optional[Callable[[], RTCPeerConnection]] = None,
        config: Optional[ClientConfig] = None,
    ):
        """Initialize MeshCoordinator and subscribe to the channel.

        Args:
            channel: Connected SignalingChannel; ``participant_id`` must be set.
            local_tracks: Returns the local tracks to send on a new link.
            pc_factory: Creates the transport for a new link.
            config: Client settings (ICE servers, reconnect policy).
        """
        super().__init__()
        config = config or ClientConfig()
        self.channel = channel
        self.local_tracks = local_tracks
        self.pc_factory = pc_factory or make_peer_connection_factory(config.ice_servers)
        self.reconnect_delay = config.reconnect_delay
        self.max_reconnect_attempts = config.max_reconnect_attempts

        self.links: Dict[str, PeerLink] = {}
        self.members: Dict[str, Participant] = {}
        self._attempts: Dict[str, int] = {}
        self._releases: Set[asyncio.Task] = set()
        self._closed = False

        self._subscriptions = {
            MSG_ROOM_USERS: self._on_room_users,
            MSG_USER_JOINED: self._on_user_joined,
            MSG_USER_LEFT: self._on_user_left,
            MSG_OFFER: self._on_offer,
            MSG_ANSWER: self._on_answer,
            MSG_ICE_CANDIDATE: self._on_ice_candidate,
        }
        for event, handler in self._subscriptions.items():
            self.channel.on(event, handler)

    @property
    def local_id(self) -> str:
        return self.channel.participant_id

    @property
    def active_peers(self) -> int:
        """Number of links whose transport is connected."""
        return sum(1 for link in self.links.values() if link.state is LinkState.CONNECTED)

    # ===== Membership events =====

    def _on_room_users(self, message: RoomMembership) -> None:
        logger.info(f"Received membership snapshot: {len(message.users)} other member(s)")
        for user in message.users:
            if user.id == self.local_id:
                continue
            self.members[user.id] = user
            self.ensure_link(user)

    def _on_user_joined(self, message: ParticipantJoined) -> None:
        user = message.user
        if user.id == self.local_id:
            return
        logger.info(f"Participant joined: {user.id} ({user.username})")
        self.members[user.id] = user
        self.ensure_link(user)

    def _on_user_left(self, message: ParticipantLeft) -> None:
        peer_id = message.participant_id
        logger.info(f"Participant left: {peer_id}")
        self.members.pop(peer_id, None)
        self._attempts.pop(peer_id, None)
        self.remove_link(peer_id)

    # ===== Negotiation routing =====

    def _on_offer(self, message: Offer) -> None:
        sender = message.sender
        if sender not in self.members:
            logger.warning(f"Ignoring offer from non-member {sender}")
            return

        link = self.links.get(sender)
        if link is not None and link.role is Role.INITIATOR:
            logger.warning(f"Ignoring offer from {sender}: we initiate this pair")
            return
        if link is None or link.state is LinkState.RECONNECTING or link.remote_description_applied:
            # Peer (re)started negotiation: answer on a fresh link right away
            link = self._replace_link(self.members[sender], start=False)

        link.schedule(link.accept_offer(message.payload))

    def _on_answer(self, message: Answer) -> None:
        link = self.links.get(message.sender)
        if link is None:
            logger.debug(f"Ignoring answer from {message.sender}: no link")
            return
        link.schedule(link.accept_answer(message.payload))

    def _on_ice_candidate(self, message: IceCandidate) -> None:
        link = self.links.get(message.sender)
        if link is None or link.state is LinkState.RECONNECTING:
            logger.debug(f"Ignoring candidate from {message.sender}: no live link")
            return
        link.schedule(link.add_remote_candidate(message.payload))

    # ===== Link lifecycle =====

    def ensure_link(self, participant: Participant) -> PeerLink:
        """Return the link to ``participant``, creating it if missing."""
        link = self.links.get(participant.id)
        if link is not None:
            logger.debug(f"Link to {participant.id} already exists ({link.state.value})")
            return link
        return self._create_link(participant)

    def _create_link(self, participant: Participant, start: bool = True) -> PeerLink:
        if self._closed:
            raise RuntimeError("MeshCoordinator is closed")

        link = PeerLink(
            local_id=self.local_id,
            remote=participant,
            pc=self.pc_factory(),
            channel=self.channel,
            tracks=self.local_tracks(),
        )
        peer_id = participant.id
        link.on("connected", lambda: self._on_link_connected(link))
        link.on("failed", lambda error: self._on_link_failed(link, error))
        link.on("track", lambda track: self._emit_if_current(link, "remote_track", peer_id, track))
        link.on(
            "connection_state",
            lambda state: self._emit_if_current(link, "connection_state", peer_id, state),
        )
        self.links[peer_id] = link
        logger.info(f"Created link to {peer_id} as {link.role.value}")

        if start and link.role is Role.INITIATOR:
            link.schedule(link.negotiate())
        return link

    def _replace_link(self, participant: Participant, start: bool = True) -> PeerLink:
        old = self.links.pop(participant.id, None)
        if old is not None:
            self._discard(old)
        return self._create_link(participant, start=start)

    def remove_link(self, peer_id: str) -> None:
        """Tear down the link to ``peer_id`` and tell the presentation layer."""
        link = self.links.pop(peer_id, None)
        if link is None:
            return
        was_connected = link.state is LinkState.CONNECTED
        self._discard(link)
        self.emit("peer_removed", peer_id)
        if was_connected:
            self.emit("active_peers", self.active_peers)
        logger.info(f"Removed link to {peer_id}")

    def _discard(self, link: PeerLink) -> None:
        """Cancel a link's pending work now; close its transport in the background."""
        link.abort()
        link._set_state(LinkState.CLOSED)
        self._release_later(link)

    def _release_later(self, link: PeerLink) -> None:
        task = asyncio.ensure_future(link.release())
        self._releases.add(task)
        task.add_done_callback(self._releases.discard)

    def _emit_if_current(self, link: PeerLink, event: str, *args) -> None:
        if self.links.get(link.remote_id) is link:
            self.emit(event, *args)

    def _on_link_connected(self, link: PeerLink) -> None:
        if self.links.get(link.remote_id) is not link:
            return
        self._attempts.pop(link.remote_id, None)
        logger.info(f"Connected to {link.remote_id} ({self.active_peers} active peer(s))")
        self.emit("active_peers", self.active_peers)

    def _on_link_failed(self, link: PeerLink, error: Exception) -> None:
        """Release a failed link and arm its single reconnection timer."""
        peer_id = link.remote_id
        if self.links.get(peer_id) is not link:
            return

        link.abort()
        self._release_later(link)
        attempts = self._attempts.get(peer_id, 0)

        if self._closed or attempts >= self.max_reconnect_attempts:
            logger.error(f"Giving up on {peer_id} after {attempts} reconnection attempt(s): {error}")
            self.links.pop(peer_id, None)
            link._set_state(LinkState.CLOSED)
            self._attempts.pop(peer_id, None)
            self.emit("peer_failed", peer_id, error)
            self.emit("peer_removed", peer_id)
            self.emit("active_peers", self.active_peers)
            return

        self._attempts[peer_id] = attempts + 1
        link._set_state(LinkState.RECONNECTING)
        loop = asyncio.get_running_loop()
        link.retry_handle = loop.call_later(self.reconnect_delay, self._on_retry_due, link)
        logger.info(
            f"Reconnecting to {peer_id} in {self.reconnect_delay}s "
            f"(attempt {attempts + 1}/{self.max_reconnect_attempts})"
        )
        self.emit("active_peers", self.active_peers)

    def _on_retry_due(self, link: PeerLink) -> None:
        peer_id = link.remote_id
        link.retry_handle = None
        if self._closed or self.links.get(peer_id) is not link:
            return
        participant = self.members.get(peer_id)
        if participant is None:
            self.remove_link(peer_id)
            return
        logger.info(f"Retrying connection to {peer_id}")
        self._replace_link(participant)

    # ===== Teardown =====

    async def close(self) -> None:
        """Cancel every pending step and timer, then close every transport."""
        self._closed = True
        for event, handler in self._subscriptions.items():
            self.channel.remove_listener(event, handler)

        links = list(self.links.values())
        self.links.clear()
        self.members.clear()
        self._attempts.clear()
        for link in links:
            link.abort()
            link._set_state(LinkState.CLOSED)

        await asyncio.gather(*(link.release() for link in links), *list(self._releases))
        for link in links:
            self.emit("peer_removed", link.remote_id)
        logger.info(f"Mesh closed ({len(links)} link(s) torn down)")

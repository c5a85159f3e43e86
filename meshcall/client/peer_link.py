"""One media connection between the local participant and one remote peer.

A PeerLink owns an RTCPeerConnection and walks it through offer/answer
negotiation over the signaling channel:

    Idle → Negotiating → Connected
    Negotiating | Connected → Failed → (Closed | Reconnecting)
    Reconnecting → a fresh PeerLink in Idle

Which side sends the offer is decided by ``is_initiator`` on the two
participant ids, so both ends agree without exchanging a message.

Negotiation steps (offer, answer, description application, candidate
application) run one at a time behind a per-link lock, as tasks owned by the
link so that ``abort()`` can cancel them.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Set

from aiortc import MediaStreamTrack, RTCIceCandidate, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp
from pyee.asyncio import AsyncIOEventEmitter

from meshcall.errors import ChannelDisconnected, NegotiationError, TransportFailure
from meshcall.protocol import Participant

logger = logging.getLogger(__name__)


class Role(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class LinkState(str, Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    FAILED = "failed"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


# States in which the transport has been released
INACTIVE_STATES = frozenset({LinkState.FAILED, LinkState.RECONNECTING, LinkState.CLOSED})

MEDIA_KINDS = ("audio", "video")


def is_initiator(local_id: str, remote_id: str) -> bool:
    """Decide whether the local side sends the offer for this pair.

    The side with the lexicographically greater participant id initiates.
    This is a pure function of the two ids, so both sides independently
    compute complementary answers.

    Raises:
        ValueError: If both ids are equal.
    """
    if local_id == remote_id:
        raise ValueError(f"Cannot negotiate with self: {local_id}")
    return local_id > remote_id


def negotiation_role(local_id: str, remote_id: str) -> Role:
    return Role.INITIATOR if is_initiator(local_id, remote_id) else Role.RESPONDER


def description_to_dict(description: RTCSessionDescription) -> dict:
    return {"sdp": description.sdp, "type": description.type}


def description_from_dict(payload: Any, expected_type: str) -> RTCSessionDescription:
    """Build a session description from a relayed payload.

    Raises:
        ValueError: If the payload is not a description of ``expected_type``.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("sdp"), str):
        raise ValueError(f"Malformed {expected_type} payload")
    if payload.get("type") != expected_type:
        raise ValueError(f"Expected {expected_type} description, got {payload.get('type')}")
    return RTCSessionDescription(sdp=payload["sdp"], type=expected_type)


def candidate_to_dict(candidate: RTCIceCandidate) -> dict:
    """Encode a local candidate in the browser's RTCIceCandidateInit shape."""
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(payload: Any) -> Optional[RTCIceCandidate]:
    """Decode a relayed candidate.

    Returns:
        The candidate, or None for an end-of-candidates marker.

    Raises:
        ValueError: If the candidate line cannot be parsed.
    """
    if not isinstance(payload, dict):
        raise ValueError("Malformed ice_candidate payload")
    line = payload.get("candidate") or ""
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    if not line.strip():
        return None
    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, IndexError, ValueError) as e:
        # aiortc asserts on the field count
        raise ValueError(f"Unparseable candidate {line!r}: {e}") from e
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


class PeerLink(AsyncIOEventEmitter):
    """Negotiation state machine for one remote participant.

    Events:
        state (LinkState): every state change.
        connected (): the transport reached ``connected``.
        failed (Exception): NegotiationError or TransportFailure.
        connection_state (str): raw transport state, for the presentation layer.
        track (MediaStreamTrack): a remote track arrived.

    Attributes:
        local_id: Our participant id.
        remote: The remote participant.
        role: INITIATOR or RESPONDER, fixed at creation.
        state: Current LinkState.
        pc: The underlying RTCPeerConnection.
        pending_candidates: Remote candidates waiting for a remote description.
        tracks: Local tracks sent on this link; stopped when the link is released.
        retry_handle: Reconnection timer armed by the coordinator, if any.
    """

    def __init__(
        self,
        local_id: str,
        remote: Participant,
        pc: RTCPeerConnection,
        channel,
        tracks: Iterable[MediaStreamTrack] = (),
    ):
        super().__init__()
        self.local_id = local_id
        self.remote = remote
        self.role = negotiation_role(local_id, remote.id)
        self.state = LinkState.IDLE
        self.pc = pc
        self.channel = channel
        self.pending_candidates: List[RTCIceCandidate] = []
        self.offer_sent = False
        self.remote_description_applied = False
        self.retry_handle: Optional[asyncio.TimerHandle] = None
        self.tracks: List[MediaStreamTrack] = list(tracks)
        self._step_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

        kinds = set()
        for track in self.tracks:
            self.pc.addTrack(track)
            kinds.add(track.kind)
        if self.role is Role.INITIATOR:
            # Ask for remote media even when we send none of that kind
            for kind in MEDIA_KINDS:
                if kind not in kinds:
                    self.pc.addTransceiver(kind, direction="recvonly")

        self.pc.on("connectionstatechange", self._on_connectionstatechange)
        self.pc.on("icecandidate", self._on_icecandidate)
        self.pc.on("track", self._on_track)

    @property
    def remote_id(self) -> str:
        return self.remote.id

    def __repr__(self) -> str:
        return f"<PeerLink {self.local_id}->{self.remote_id} {self.role.value} {self.state.value}>"

    def _set_state(self, state: LinkState) -> None:
        if state is self.state:
            return
        logger.debug(f"Link {self.remote_id}: {self.state.value} -> {state.value}")
        self.state = state
        self.emit("state", state)

    # ===== Task ownership =====

    def schedule(self, coro: Awaitable) -> asyncio.Task:
        """Run a negotiation step as a task owned by this link."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _step(self, name: str, body: Callable[[], Awaitable[None]]) -> None:
        """Run one negotiation step under the link lock.

        Any failure other than a lost signaling channel fails the link.
        """
        async with self._step_lock:
            if self.state in INACTIVE_STATES:
                logger.debug(f"Skipping {name} for {self.remote_id}: link is {self.state.value}")
                return
            try:
                await body()
            except ChannelDisconnected as e:
                # The session tears everything down on channel loss
                logger.warning(f"Could not send {name} to {self.remote_id}: {e}")
            except Exception as e:
                logger.error(f"Negotiation step {name} failed for {self.remote_id}: {e}")
                self.fail(NegotiationError(self.remote_id, name, e))

    # ===== Negotiation =====

    async def negotiate(self) -> None:
        """Initiator: create and apply an offer, then send it."""

        async def body():
            if self.role is not Role.INITIATOR or self.offer_sent:
                return
            offer = await self.pc.createOffer()
            await self.pc.setLocalDescription(offer)
            self.offer_sent = True
            self._set_state(LinkState.NEGOTIATING)
            await self.channel.send_offer(description_to_dict(self.pc.localDescription), self.remote_id)
            logger.info(f"Sent offer to {self.remote_id}")

        await self._step("offer", body)

    async def accept_offer(self, payload: Any) -> None:
        """Responder: apply a remote offer, answer it and send the answer."""

        async def body():
            if self.role is not Role.RESPONDER:
                logger.warning(f"Ignoring offer from {self.remote_id}: we are the initiator")
                return
            if self.remote_description_applied:
                logger.debug(f"Ignoring duplicate offer from {self.remote_id}")
                return
            await self.pc.setRemoteDescription(description_from_dict(payload, "offer"))
            self.remote_description_applied = True
            await self._flush_candidates()
            answer = await self.pc.createAnswer()
            await self.pc.setLocalDescription(answer)
            if self.state is LinkState.IDLE:
                self._set_state(LinkState.NEGOTIATING)
            await self.channel.send_answer(description_to_dict(self.pc.localDescription), self.remote_id)
            logger.info(f"Sent answer to {self.remote_id}")

        await self._step("answer", body)

    async def accept_answer(self, payload: Any) -> bool:
        """Initiator: apply the remote answer.

        Stale, duplicate or premature answers are ignored without changing
        state.

        Returns:
            True if the answer was applied.
        """
        applied = False

        async def body():
            nonlocal applied
            if (
                self.role is not Role.INITIATOR
                or self.state is not LinkState.NEGOTIATING
                or not self.offer_sent
                or self.remote_description_applied
            ):
                logger.debug(f"Ignoring answer from {self.remote_id} in state {self.state.value}")
                return
            await self.pc.setRemoteDescription(description_from_dict(payload, "answer"))
            self.remote_description_applied = True
            applied = True
            logger.info(f"Applied answer from {self.remote_id}")
            await self._flush_candidates()

        await self._step("remote-answer", body)
        return applied

    async def add_remote_candidate(self, payload: Any) -> None:
        """Apply a remote candidate, or buffer it until a remote description lands."""
        try:
            candidate = candidate_from_dict(payload)
        except ValueError as e:
            logger.warning(f"Dropping bad candidate from {self.remote_id}: {e}")
            return
        if candidate is None:
            logger.debug(f"End of candidates from {self.remote_id}")
            return

        async with self._step_lock:
            if self.state in INACTIVE_STATES:
                return
            if not self.remote_description_applied:
                self.pending_candidates.append(candidate)
                logger.debug(
                    f"Buffered candidate from {self.remote_id} ({len(self.pending_candidates)} pending)"
                )
                return
            await self._apply_candidate(candidate)

    async def _flush_candidates(self) -> None:
        pending, self.pending_candidates = self.pending_candidates, []
        if pending:
            logger.debug(f"Applying {len(pending)} buffered candidate(s) from {self.remote_id}")
        for candidate in pending:
            await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: RTCIceCandidate) -> None:
        try:
            await self.pc.addIceCandidate(candidate)
        except Exception as e:
            logger.warning(f"Failed to add ICE candidate from {self.remote_id}: {e}")

    # ===== Transport events =====

    def _on_icecandidate(self, candidate: Optional[RTCIceCandidate]) -> None:
        if candidate is None or self.state in INACTIVE_STATES:
            return
        self.schedule(self._send_candidate(candidate))

    async def _send_candidate(self, candidate: RTCIceCandidate) -> None:
        try:
            await self.channel.send_ice_candidate(candidate_to_dict(candidate), self.remote_id)
        except ChannelDisconnected as e:
            logger.warning(f"Could not send ICE candidate to {self.remote_id}: {e}")

    def _on_track(self, track: MediaStreamTrack) -> None:
        logger.info(f"Received {track.kind} track from {self.remote_id}")
        self.emit("track", track)

    def _on_connectionstatechange(self) -> None:
        transport_state = self.pc.connectionState
        logger.info(f"Connection state with {self.remote_id}: {transport_state}")
        if self.state in INACTIVE_STATES:
            return
        self.emit("connection_state", transport_state)

        if transport_state == "connected" and self.state is not LinkState.CONNECTED:
            self._set_state(LinkState.CONNECTED)
            self.emit("connected")
        elif transport_state == "failed":
            self.fail(TransportFailure(self.remote_id))

    def fail(self, error: Exception) -> None:
        """Move to Failed and report ``error`` to the coordinator (once)."""
        if self.state in INACTIVE_STATES:
            return
        logger.warning(f"Link to {self.remote_id} failed: {error}")
        self._set_state(LinkState.FAILED)
        self.emit("failed", error)

    # ===== Teardown =====

    def abort(self) -> None:
        """Cancel pending negotiation steps and the reconnection timer."""
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        self._tasks.clear()
        if self.retry_handle is not None:
            self.retry_handle.cancel()
            self.retry_handle = None

    async def release(self) -> None:
        """Close the transport and stop the local tracks. Safe to call more than once."""
        await self.pc.close()
        for track in self.tracks:
            track.stop()

    async def close(self) -> None:
        self.abort()
        self._set_state(LinkState.CLOSED)
        await self.release()

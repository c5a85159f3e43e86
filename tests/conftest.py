"""Shared fakes for meshcall tests.

FakePeerConnection stands in for aiortc's RTCPeerConnection: it records what
the peer link does to it and lets a test drive the transport state. It emits
one host candidate whenever a local description is set and, with
``auto_connect``, reports ``connected`` once it has both descriptions and at
least one remote candidate.
"""

import asyncio
import itertools

import pytest
from aiortc import RTCIceCandidate, RTCSessionDescription
from pyee.asyncio import AsyncIOEventEmitter

_ports = itertools.count(50000)


async def settle(rounds: int = 20):
    """Let scheduled tasks and callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_candidate(port: int = None, sdp_mid: str = "0") -> RTCIceCandidate:
    return RTCIceCandidate(
        component=1,
        foundation="1",
        ip="192.0.2.1",
        port=port or next(_ports),
        priority=2130706431,
        protocol="udp",
        type="host",
        sdpMid=sdp_mid,
        sdpMLineIndex=0,
    )


def candidate_payload(port: int = None) -> dict:
    return {
        "candidate": f"candidate:1 1 udp 2130706431 192.0.2.1 {port or next(_ports)} typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }


def offer_payload(sdp: str = "v=0 remote-offer") -> dict:
    return {"sdp": sdp, "type": "offer"}


def answer_payload(sdp: str = "v=0 remote-answer") -> dict:
    return {"sdp": sdp, "type": "answer"}


class FakePeerConnection(AsyncIOEventEmitter):
    instances = []

    def __init__(self, auto_connect: bool = False, emit_candidates: bool = True):
        super().__init__()
        self.auto_connect = auto_connect
        self.emit_candidates = emit_candidates
        self.connectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.tracks = []
        self.transceivers = []
        self.candidates = []
        self.closed = False
        self.fail_remote_description = False
        FakePeerConnection.instances.append(self)

    def addTrack(self, track):
        self.tracks.append(track)

    def addTransceiver(self, kind, direction="sendrecv"):
        self.transceivers.append((kind, direction))

    async def createOffer(self):
        return RTCSessionDescription(sdp=f"v=0 offer {id(self)}", type="offer")

    async def createAnswer(self):
        if self.remoteDescription is None:
            raise RuntimeError("Cannot create answer without remote offer")
        return RTCSessionDescription(sdp=f"v=0 answer {id(self)}", type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description
        if self.emit_candidates:
            self.emit("icecandidate", make_candidate())
        self._maybe_connect()

    async def setRemoteDescription(self, description):
        if self.fail_remote_description:
            raise ValueError("Invalid remote description")
        self.remoteDescription = description
        self._maybe_connect()

    async def addIceCandidate(self, candidate):
        self.candidates.append(candidate)
        self._maybe_connect()

    async def close(self):
        self.closed = True
        self.connectionState = "closed"

    def set_connection_state(self, state: str):
        self.connectionState = state
        self.emit("connectionstatechange")

    def _maybe_connect(self):
        if (
            self.auto_connect
            and self.connectionState == "new"
            and self.localDescription is not None
            and self.remoteDescription is not None
            and self.candidates
        ):
            self.set_connection_state("connected")


class FakeChannel(AsyncIOEventEmitter):
    """Records outgoing signaling instead of sending it."""

    def __init__(self, participant_id: str = "p2"):
        super().__init__()
        self.participant_id = participant_id
        self.sent = []
        self.closed = False
        self.fail_sends = False

    def _record(self, kind, payload, target):
        if self.fail_sends:
            from meshcall.errors import ChannelDisconnected

            raise ChannelDisconnected("fake channel closed")
        self.sent.append((kind, payload, target))

    async def connect(self):
        return self.participant_id

    async def join_room(self, room_id, username):
        self._record("join_room", {"room_id": room_id, "username": username}, None)

    async def send_offer(self, payload, target):
        self._record("offer", payload, target)

    async def send_answer(self, payload, target):
        self._record("answer", payload, target)

    async def send_ice_candidate(self, payload, target):
        self._record("ice_candidate", payload, target)

    async def close(self):
        self.closed = True

    def sent_of(self, kind, target=None):
        return [s for s in self.sent if s[0] == kind and (target is None or s[2] == target)]


@pytest.fixture
def fake_pcs():
    """Reset and return the list of FakePeerConnections created by a test."""
    FakePeerConnection.instances = []
    yield FakePeerConnection.instances
    FakePeerConnection.instances = []


@pytest.fixture
def channel():
    return FakeChannel("p2")

"""Two participants negotiating through a real in-process relay.

Transports are FakePeerConnections, so the test covers everything except
media: WebSocket signaling, membership, the tie-break, description exchange,
candidate trickling and teardown.
"""

import asyncio

import pytest

from conftest import FakePeerConnection
from meshcall.client.media import LocalMedia
from meshcall.client.session import SessionClient
from meshcall.config import ClientConfig, RelayConfig
from meshcall.relay.server import SignalingRelay


class RecordingRelay(SignalingRelay):
    """Relay that remembers every routing decision."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.routed = []

    async def relay_signal(self, signal, from_id):
        delivered = await super().relay_signal(signal, from_id)
        self.routed.append((signal.type, from_id, signal.target, delivered))
        return delivered


class FakeSource:
    def __init__(self, kind):
        self.kind = kind

    def stop(self):
        pass


def fake_media(config):
    return LocalMedia(audio=FakeSource("audio"), video=FakeSource("video"))


async def wait_until(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def make_session(url):
    return SessionClient(
        ClientConfig(signaling_url=url, ice_servers=[]),
        pc_factory=lambda: FakePeerConnection(auto_connect=True),
        media_opener=fake_media,
    )


@pytest.mark.asyncio
async def test_two_participants_connect_in_room_abc123(fake_pcs):
    ids = iter(["p1", "p2"])
    relay = RecordingRelay(RelayConfig(host="127.0.0.1", port=0), id_factory=lambda: next(ids))

    async with relay.serve() as server:
        port = server.sockets[0].getsockname()[1]
        url = f"ws://127.0.0.1:{port}"
        first, second = make_session(url), make_session(url)

        await first.start("ABC123", "bob")
        await wait_until(lambda: relay.registry.room_of("p1") == "ABC123")
        await second.start("ABC123", "alice")

        await wait_until(lambda: first.active_peers == 1 and second.active_peers == 1)

        assert first.participant_id == "p1"
        assert second.participant_id == "p2"
        routed = relay.routed
        # "p2" > "p1": only p2 offers
        assert ("offer", "p2", "p1", True) in routed
        assert not [r for r in routed if r[0] == "offer" and r[1] == "p1"]
        assert ("answer", "p1", "p2", True) in routed
        assert any(r[:3] == ("ice_candidate", "p1", "p2") for r in routed)
        assert any(r[:3] == ("ice_candidate", "p2", "p1") for r in routed)
        assert [pc.connectionState for pc in fake_pcs] == ["connected", "connected"]

        removed = []
        first.on("peer_removed", removed.append)
        await second.end_call()
        await wait_until(lambda: removed == ["p2"])

        assert first.coordinator.links == {}
        assert first.active_peers == 0
        await wait_until(lambda: relay.registry.members("ABC123") and len(relay.channels) == 1)

        await first.end_call()
        await wait_until(lambda: not relay.channels)
        assert relay.registry.rooms == {}
        assert all(pc.closed for pc in fake_pcs)

"""Tests for the mesh coordinator: membership, routing and reconnection."""

import asyncio
from unittest.mock import MagicMock

import pytest

from conftest import FakePeerConnection, answer_payload, candidate_payload, offer_payload, settle
from meshcall.client.media import LocalMedia
from meshcall.client.mesh_coordinator import MeshCoordinator
from meshcall.client.peer_link import LinkState, Role
from meshcall.config import ClientConfig
from meshcall.errors import TransportFailure
from meshcall.protocol import (
    Answer,
    IceCandidate,
    Offer,
    Participant,
    ParticipantJoined,
    ParticipantLeft,
    RoomMembership,
)

P1 = Participant("p1", "bob")
P3 = Participant("p3", "carol")

RETRY_DELAY = 0.02


@pytest.fixture
def coordinator(channel, fake_pcs):
    config = ClientConfig(reconnect_delay=RETRY_DELAY, ice_servers=[])
    return MeshCoordinator(channel, pc_factory=FakePeerConnection, config=config)


@pytest.fixture
def events(coordinator):
    recorded = []
    for name in ("remote_track", "peer_removed", "connection_state", "active_peers", "peer_failed"):
        coordinator.on(name, lambda *args, name=name: recorded.append((name, *args)))
    return recorded


def room_users(channel, *users):
    channel.emit("room_users", RoomMembership(list(users)))


async def wait_for_retry():
    await asyncio.sleep(RETRY_DELAY * 3)
    await settle()


class TestMembership:
    @pytest.mark.asyncio
    async def test_snapshot_creates_one_link_per_member(self, coordinator, channel):
        room_users(channel, P1, P3, Participant("p2", "me"))
        await settle()

        assert set(coordinator.links) == {"p1", "p3"}
        assert coordinator.links["p1"].role is Role.INITIATOR
        assert coordinator.links["p3"].role is Role.RESPONDER
        # Only the pair we initiate gets an offer from us
        assert [s[2] for s in channel.sent_of("offer")] == ["p1"]

    @pytest.mark.asyncio
    async def test_user_joined_is_idempotent(self, coordinator, channel, fake_pcs):
        channel.emit("user_joined", ParticipantJoined(P1))
        channel.emit("user_joined", ParticipantJoined(P1))
        room_users(channel, P1)
        await settle()

        assert len(coordinator.links) == 1
        assert len(fake_pcs) == 1
        assert len(channel.sent_of("offer")) == 1

    @pytest.mark.asyncio
    async def test_user_left_tears_down_link(self, coordinator, channel, events, fake_pcs):
        channel.emit("user_joined", ParticipantJoined(P1))
        await settle()
        channel.emit("user_left", ParticipantLeft("p1"))
        await settle()

        assert coordinator.links == {}
        assert "p1" not in coordinator.members
        assert fake_pcs[0].closed
        assert ("peer_removed", "p1") in events

    @pytest.mark.asyncio
    async def test_user_left_for_unknown_peer_is_noop(self, coordinator, channel, events):
        channel.emit("user_left", ParticipantLeft("ghost"))
        await settle()
        assert events == []


class TestNegotiationRouting:
    @pytest.mark.asyncio
    async def test_offer_answered_by_responder(self, coordinator, channel):
        channel.emit("user_joined", ParticipantJoined(P3))
        channel.emit("offer", Offer(payload=offer_payload(), target="p2", sender="p3"))
        await settle()

        assert len(channel.sent_of("answer", "p3")) == 1
        assert coordinator.links["p3"].state is LinkState.NEGOTIATING

    @pytest.mark.asyncio
    async def test_offer_from_unknown_sender_ignored(self, coordinator, channel):
        channel.emit("offer", Offer(payload=offer_payload(), target="p2", sender="p9"))
        await settle()
        assert coordinator.links == {}
        assert channel.sent_of("answer") == []

    @pytest.mark.asyncio
    async def test_offer_to_initiator_side_ignored(self, coordinator, channel):
        channel.emit("user_joined", ParticipantJoined(P1))
        await settle()
        link = coordinator.links["p1"]
        channel.emit("offer", Offer(payload=offer_payload(), target="p2", sender="p1"))
        await settle()

        assert coordinator.links["p1"] is link
        assert channel.sent_of("answer") == []

    @pytest.mark.asyncio
    async def test_stale_answer_ignored(self, coordinator, channel):
        channel.emit("user_joined", ParticipantJoined(P1))
        await settle()
        link = coordinator.links["p1"]
        channel.emit("answer", Answer(payload=answer_payload("one"), target="p2", sender="p1"))
        channel.emit("answer", Answer(payload=answer_payload("two"), target="p2", sender="p1"))
        await settle()

        assert link.pc.remoteDescription.sdp == "one"
        assert link.state is LinkState.NEGOTIATING

    @pytest.mark.asyncio
    async def test_answer_from_peer_without_link_ignored(self, coordinator, channel):
        channel.emit("answer", Answer(payload=answer_payload(), target="p2", sender="p1"))
        await settle()
        assert coordinator.links == {}

    @pytest.mark.asyncio
    async def test_candidates_before_offer_are_buffered(self, coordinator, channel):
        channel.emit("user_joined", ParticipantJoined(P3))
        channel.emit("ice_candidate", IceCandidate(payload=candidate_payload(7001), target="p2", sender="p3"))
        channel.emit("ice_candidate", IceCandidate(payload=candidate_payload(7002), target="p2", sender="p3"))
        await settle()
        link = coordinator.links["p3"]
        assert len(link.pending_candidates) == 2

        channel.emit("offer", Offer(payload=offer_payload(), target="p2", sender="p3"))
        await settle()
        assert [c.port for c in link.pc.candidates] == [7001, 7002]

    @pytest.mark.asyncio
    async def test_restarted_offer_replaces_responder_link(self, coordinator, channel, fake_pcs):
        channel.emit("user_joined", ParticipantJoined(P3))
        channel.emit("offer", Offer(payload=offer_payload("first"), target="p2", sender="p3"))
        await settle()
        first = coordinator.links["p3"]

        channel.emit("offer", Offer(payload=offer_payload("second"), target="p2", sender="p3"))
        await settle()
        second = coordinator.links["p3"]

        assert second is not first
        assert first.pc.closed
        assert second.pc.remoteDescription.sdp == "second"
        assert len(channel.sent_of("answer", "p3")) == 2


class TestConnectionEvents:
    @pytest.mark.asyncio
    async def test_connected_updates_active_peers(self, coordinator, channel, events):
        channel.emit("user_joined", ParticipantJoined(P1))
        await settle()
        coordinator.links["p1"].pc.set_connection_state("connected")

        assert coordinator.active_peers == 1
        assert ("connection_state", "p1", "connected") in events
        assert ("active_peers", 1) in events

    @pytest.mark.asyncio
    async def test_remote_track_tagged_with_peer(self, coordinator, channel, events):
        channel.emit("user_joined", ParticipantJoined(P1))
        track = MagicMock(kind="video")
        coordinator.links["p1"].pc.emit("track", track)
        assert ("remote_track", "p1", track) in events


class TestReconnection:
    @pytest.mark.asyncio
    async def test_failure_retries_once_after_delay(self, coordinator, channel, fake_pcs):
        channel.emit("user_joined", ParticipantJoined(P1))
        await settle()
        failed = coordinator.links["p1"]
        failed.pc.set_connection_state("failed")
        await settle()

        assert failed.state is LinkState.RECONNECTING
        assert failed.retry_handle is not None
        assert failed.pc.closed
        assert len(fake_pcs) == 1

        await wait_for_retry()
        fresh = coordinator.links["p1"]
        assert fresh is not failed
        assert len(fake_pcs) == 2
        assert len(channel.sent_of("offer", "p1")) == 2

    @pytest.mark.asyncio
    async def test_user_left_cancels_pending_retry(self, coordinator, channel, fake_pcs, events):
        channel.emit("user_joined", ParticipantJoined(P1))
        await settle()
        failed = coordinator.links["p1"]
        failed.pc.set_connection_state("failed")
        handle = failed.retry_handle

        channel.emit("user_left", ParticipantLeft("p1"))
        await wait_for_retry()

        assert handle.cancelled()
        assert coordinator.links == {}
        assert len(fake_pcs) == 1
        assert ("peer_removed", "p1") in events

    @pytest.mark.asyncio
    async def test_retry_for_departed_member_removes_link(self, coordinator, channel, fake_pcs, events):
        channel.emit("user_joined", ParticipantJoined(P1))
        await settle()
        coordinator.links["p1"].pc.set_connection_state("failed")
        coordinator.members.pop("p1")
        await wait_for_retry()

        assert coordinator.links == {}
        assert len(fake_pcs) == 1
        assert ("peer_removed", "p1") in events

    @pytest.mark.asyncio
    async def test_exhausted_retries_give_up(self, coordinator, channel, events):
        channel.emit("user_joined", ParticipantJoined(P1))
        await settle()
        coordinator.links["p1"].pc.set_connection_state("failed")
        await wait_for_retry()
        coordinator.links["p1"].pc.set_connection_state("failed")
        await settle()

        assert coordinator.links == {}
        failures = [e for e in events if e[0] == "peer_failed"]
        assert len(failures) == 1
        assert failures[0][1] == "p1"
        assert isinstance(failures[0][2], TransportFailure)

    @pytest.mark.asyncio
    async def test_connecting_resets_retry_budget(self, coordinator, channel, events):
        channel.emit("user_joined", ParticipantJoined(P1))
        await settle()
        coordinator.links["p1"].pc.set_connection_state("failed")
        await wait_for_retry()
        coordinator.links["p1"].pc.set_connection_state("connected")
        coordinator.links["p1"].pc.set_connection_state("failed")
        await settle()

        assert coordinator.links["p1"].state is LinkState.RECONNECTING
        assert not [e for e in events if e[0] == "peer_failed"]

    @pytest.mark.asyncio
    async def test_offer_during_reconnect_replaces_link_now(self, coordinator, channel, fake_pcs):
        channel.emit("user_joined", ParticipantJoined(P3))
        channel.emit("offer", Offer(payload=offer_payload(), target="p2", sender="p3"))
        await settle()
        failed = coordinator.links["p3"]
        failed.pc.set_connection_state("failed")
        handle = failed.retry_handle

        channel.emit("offer", Offer(payload=offer_payload("again"), target="p2", sender="p3"))
        await settle()

        assert handle.cancelled()
        fresh = coordinator.links["p3"]
        assert fresh is not failed
        assert fresh.pc.remoteDescription.sdp == "again"

        await wait_for_retry()
        assert coordinator.links["p3"] is fresh
        assert len(fake_pcs) == 2

    @pytest.mark.asyncio
    async def test_negotiation_error_takes_failed_path(self, coordinator, channel):
        channel.emit("user_joined", ParticipantJoined(P3))
        await settle()
        link = coordinator.links["p3"]
        link.pc.fail_remote_description = True
        channel.emit("offer", Offer(payload=offer_payload(), target="p2", sender="p3"))
        await settle()
        assert link.state is LinkState.RECONNECTING


class FakeSource:
    def __init__(self, kind):
        self.kind = kind
        self.readyState = "live"

    def stop(self):
        self.readyState = "ended"


class TestLocalTracks:
    @pytest.fixture
    def media(self):
        media = LocalMedia(audio=FakeSource("audio"), video=FakeSource("video"))
        yield media
        media.stop()

    @pytest.fixture
    def coordinator(self, channel, fake_pcs, media):
        config = ClientConfig(reconnect_delay=RETRY_DELAY, ice_servers=[])
        return MeshCoordinator(
            channel, local_tracks=media.tracks_for_link, pc_factory=FakePeerConnection, config=config
        )

    @pytest.mark.asyncio
    async def test_removed_link_stops_its_tracks(self, coordinator, channel, media):
        channel.emit("user_joined", ParticipantJoined(P1))
        channel.emit("user_joined", ParticipantJoined(P3))
        await settle()
        removed = coordinator.links["p1"].tracks
        kept = coordinator.links["p3"].tracks

        channel.emit("user_left", ParticipantLeft("p1"))
        await settle()

        assert [t.kind for t in removed] == ["audio", "video"]
        assert all(t.readyState == "ended" for t in removed)
        assert all(t.source.readyState == "ended" for t in removed)
        assert all(t.readyState == "live" for t in kept)
        assert media._gates == kept
        assert all(s.readyState == "live" for s in media.sources.values())

    @pytest.mark.asyncio
    async def test_retry_sends_fresh_tracks(self, coordinator, channel, media):
        channel.emit("user_joined", ParticipantJoined(P1))
        await settle()
        failed = coordinator.links["p1"]
        failed.pc.set_connection_state("failed")
        await wait_for_retry()
        fresh = coordinator.links["p1"]

        assert all(t.readyState == "ended" for t in failed.tracks)
        assert all(t.readyState == "live" for t in fresh.tracks)
        assert media._gates == fresh.tracks


class TestClose:
    @pytest.mark.asyncio
    async def test_close_releases_everything(self, coordinator, channel, fake_pcs):
        room_users(channel, P1, P3)
        await settle()
        coordinator.links["p1"].pc.set_connection_state("failed")
        handle = coordinator.links["p1"].retry_handle

        await coordinator.close()

        assert coordinator.links == {}
        assert handle.cancelled()
        assert all(pc.closed for pc in fake_pcs)

        # No longer listening
        channel.emit("user_joined", ParticipantJoined(Participant("p0", "late")))
        await wait_for_retry()
        assert coordinator.links == {}
        assert len(fake_pcs) == 2

"""Entry point for a headless meshcall participant.

Sends the configured local media to every member of the room and sinks the
received tracks into MediaBlackhole, which keeps the transports flowing
without rendering anything.
"""

import asyncio
import logging
from typing import List, Optional

from aiortc.contrib.media import MediaBlackhole

from meshcall.client.session import SessionClient
from meshcall.config import get_config


async def run_session_async(session: SessionClient, room_id: str, username: str) -> Optional[Exception]:
    """Join ``room_id`` and stay in the call until it ends.

    Returns:
        The error that ended the call, or None after a clean leave.
    """
    sinks: List[MediaBlackhole] = []
    outcome = {}

    async def sink(peer_id, track):
        logging.info(f"Sinking {track.kind} track from {peer_id}")
        blackhole = MediaBlackhole()
        blackhole.addTrack(track)
        sinks.append(blackhole)
        await blackhole.start()

    session.on("remote_track", sink)
    session.on("active_peers", lambda count: logging.info(f"Active peers: {count}"))
    session.on("peer_failed", lambda peer_id, error: logging.warning(f"Gave up on {peer_id}: {error}"))
    session.on("ended", lambda error: outcome.setdefault("error", error))

    await session.start(room_id, username)
    logging.info(f"In room {room_id} as {session.participant_id}. Press Ctrl+C to leave.")
    try:
        await session.finished.wait()
    finally:
        await session.end_call()
        for blackhole in sinks:
            await blackhole.stop()
    return outcome.get("error")


def run_session(room_id: str, username: str, signaling_url=None, play_from=None):
    """Create a SessionClient and run it until the call ends.

    Args:
        room_id: Room to join.
        username: Display name shown to the other members.
        signaling_url: Relay URL. CLI option overrides config file.
        play_from: Media file or URL to send instead of capture devices.
    """
    config = get_config()
    config.override("client", signaling_url=signaling_url)
    config.override("media", play_from=play_from)

    session = SessionClient(config.client, config.media)
    try:
        error = asyncio.run(run_session_async(session, room_id, username))
        if error is not None:
            logging.error(f"Call ended: {error}")
    except KeyboardInterrupt:
        logging.info("Session interrupted by user. Leaving...")
    finally:
        logging.info("Session exiting...")

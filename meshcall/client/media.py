"""Local media capture shared by every peer link of a session.

One capture source (a file/URL or capture devices, opened with aiortc's
MediaPlayer) is fanned out with a MediaRelay. Each peer link gets its own
subscription wrapped in a ``GatedTrack`` which reads the session-wide
enablement flag on every frame, so toggling the camera or microphone takes
effect on all links at once without renegotiation.
"""

import logging
from typing import Dict, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay
from av import AudioFrame, VideoFrame
from av.error import FFmpegError

from meshcall.config import MediaConfig
from meshcall.errors import MediaAccessError

logger = logging.getLogger(__name__)


def blank_video_frame(like: VideoFrame) -> VideoFrame:
    """Return a black frame with the size and timing of ``like``."""
    frame = VideoFrame(width=like.width, height=like.height, format="yuv420p")
    luma, *chroma = frame.planes
    luma.update(bytes(luma.buffer_size))
    for plane in chroma:
        plane.update(b"\x80" * plane.buffer_size)
    frame.pts = like.pts
    frame.time_base = like.time_base
    return frame


def silent_audio_frame(like: AudioFrame) -> AudioFrame:
    """Return a silent frame with the layout and timing of ``like``."""
    frame = AudioFrame(format=like.format.name, layout=like.layout.name, samples=like.samples)
    for plane in frame.planes:
        plane.update(bytes(plane.buffer_size))
    frame.sample_rate = like.sample_rate
    frame.pts = like.pts
    frame.time_base = like.time_base
    return frame


class GatedTrack(MediaStreamTrack):
    """Forwards frames from ``source``, blanked while the gate is closed."""

    def __init__(self, source: MediaStreamTrack, media: "LocalMedia"):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.media = media

    async def recv(self):
        frame = await self.source.recv()
        if self.media.is_enabled(self.kind):
            return frame
        if self.kind == "video":
            return blank_video_frame(frame)
        return silent_audio_frame(frame)

    def stop(self):
        super().stop()
        # Unregisters the proxy from the relay
        self.source.stop()
        self.media.forget(self)


class LocalMedia:
    """The local capture handle.

    Attributes:
        sources: kind -> captured track (None when that kind is absent).
        relay: Fans each source out to one subscription per link.
    """

    def __init__(
        self,
        audio: Optional[MediaStreamTrack] = None,
        video: Optional[MediaStreamTrack] = None,
    ):
        self.sources: Dict[str, Optional[MediaStreamTrack]] = {"audio": audio, "video": video}
        self.relay = MediaRelay()
        self._enabled = {kind: track is not None for kind, track in self.sources.items()}
        self._gates: List[GatedTrack] = []
        self.stopped = False

    @classmethod
    def open(cls, config: Optional[MediaConfig] = None) -> "LocalMedia":
        """Open the configured capture source.

        Raises:
            MediaAccessError: If no source is configured or it cannot be opened.
        """
        config = config or MediaConfig()
        try:
            if config.play_from:
                logger.info(f"Playing local media from {config.play_from}")
                player = MediaPlayer(config.play_from, loop=True)
                audio, video = player.audio, player.video
            else:
                audio = video = None
                if config.video_device:
                    logger.info(f"Opening video device {config.video_device} ({config.video_format})")
                    video = MediaPlayer(
                        config.video_device,
                        format=config.video_format,
                        options={"video_size": config.video_size},
                    ).video
                if config.audio_device:
                    logger.info(f"Opening audio device {config.audio_device} ({config.audio_format})")
                    audio = MediaPlayer(config.audio_device, format=config.audio_format).audio
        except (FFmpegError, OSError, ValueError) as e:
            raise MediaAccessError(f"Could not open local media: {e}") from e

        if audio is None and video is None:
            raise MediaAccessError("No audio or video source available")
        return cls(audio=audio, video=video)

    def tracks_for_link(self) -> List[MediaStreamTrack]:
        """Return fresh gated subscriptions, one per available kind."""
        if self.stopped:
            return []
        tracks = []
        for source in self.sources.values():
            if source is None:
                continue
            gate = GatedTrack(self.relay.subscribe(source), self)
            self._gates.append(gate)
            tracks.append(gate)
        return tracks

    def forget(self, gate: GatedTrack) -> None:
        if gate in self._gates:
            self._gates.remove(gate)

    def is_enabled(self, kind: str) -> bool:
        return self._enabled.get(kind, False)

    def set_enabled(self, kind: str, enabled: bool) -> bool:
        """Open or close the gate for ``kind``.

        Returns:
            The resulting flag; always False without a track of that kind.
        """
        if self.sources.get(kind) is None:
            logger.debug(f"No local {kind} track to toggle")
            return False
        self._enabled[kind] = enabled
        logger.info(f"Local {kind} {'enabled' if enabled else 'disabled'}")
        return enabled

    def stop(self) -> None:
        """Release the capture source. Safe to call more than once."""
        if self.stopped:
            return
        self.stopped = True
        for gate in list(self._gates):
            gate.stop()
        for source in self.sources.values():
            if source is not None:
                source.stop()
        logger.info("Local media released")

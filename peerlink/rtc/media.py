"""
Local media capture for call attempts.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Union

from aiortc import AudioStreamTrack, MediaStreamTrack, VideoStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame, VideoFrame

LOG = logging.getLogger(__name__)

Frame = Union[AudioFrame, VideoFrame]


class MediaAccessError(RuntimeError):
    """Raised when the camera or microphone cannot be acquired."""


def blank_frame(frame: Frame) -> Frame:
    """Return silence or a black picture with the timing of ``frame``."""

    if isinstance(frame, AudioFrame):
        blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        for plane in blank.planes:
            plane.update(bytes(plane.buffer_size))
        blank.sample_rate = frame.sample_rate
    else:
        blank = VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
        luma, *chroma = blank.planes
        luma.update(b"\x10" * luma.buffer_size)
        for plane in chroma:
            plane.update(b"\x80" * plane.buffer_size)
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class SwitchableTrack(MediaStreamTrack):
    """
    Relay a captured track and blank it out while ``enabled`` is false.

    A disabled microphone sends silence and a disabled camera sends black
    frames; aiortc tracks have no browser-style ``enabled`` flag.
    """

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self) -> Frame:
        if self.readyState != "live":
            raise MediaStreamError
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return blank_frame(frame)

    def stop(self) -> None:
        super().stop()
        self.source.stop()


@dataclass
class MediaHandle:
    """
    Tracks captured for one call attempt.

    Stopping is idempotent; the tracks are stopped exactly once.
    """

    tracks: List[MediaStreamTrack] = field(default_factory=list)
    label: str = "none"
    _stopped: bool = field(default=False, repr=False)

    @classmethod
    def switchable(cls, tracks: List[MediaStreamTrack], label: str) -> "MediaHandle":
        return cls(tracks=[SwitchableTrack(track) for track in tracks], label=label)

    @property
    def stopped(self) -> bool:
        return self._stopped

    def kinds(self) -> List[str]:
        return [track.kind for track in self.tracks]

    def set_enabled(self, kind: str, enabled: bool) -> bool:
        """Enable or blank every ``kind`` track; ``False`` when none can be switched."""

        switched = False
        for track in self.tracks:
            if track.kind == kind and hasattr(track, "enabled"):
                track.enabled = bool(enabled)
                switched = True
        if switched:
            LOG.info("Local %s %s", kind, "enabled" if enabled else "disabled")
        return switched

    def is_enabled(self, kind: str) -> bool:
        return all(getattr(track, "enabled", True) for track in self.tracks if track.kind == kind)

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        for track in self.tracks:
            try:
                track.stop()
            except Exception:  # pragma: no cover - track teardown is best-effort
                LOG.debug("Failed to stop %s track", track.kind, exc_info=True)
        LOG.debug("Released media %s (%d track(s))", self.label, len(self.tracks))


class MediaProvider(Protocol):
    async def acquire(self) -> MediaHandle:
        """Capture local media or raise :class:`MediaAccessError`."""


class NullMediaProvider:
    """Receive-only endpoint: no local tracks."""

    async def acquire(self) -> MediaHandle:
        return MediaHandle(label="none")


class SyntheticMediaProvider:
    """Silent audio and a flat test video frame; useful without a camera."""

    async def acquire(self) -> MediaHandle:
        return MediaHandle.switchable([AudioStreamTrack(), VideoStreamTrack()], label="synthetic")


class PlayerMediaProvider:
    """
    Capture from a device or file through :class:`aiortc.contrib.media.MediaPlayer`.

    ``source`` is anything FFmpeg can open, e.g. ``/dev/video0`` with
    ``format="v4l2"`` or a local media file.
    """

    def __init__(self, source: str, *, format: Optional[str] = None, options: Optional[Dict[str, str]] = None) -> None:
        self.source = source
        self.format = format
        self.options = dict(options or {})

    async def acquire(self) -> MediaHandle:
        def _open() -> MediaPlayer:
            return MediaPlayer(self.source, format=self.format, options=self.options or None)

        try:
            player = await asyncio.to_thread(_open)
        except Exception as exc:
            raise MediaAccessError(f"Cannot open media source {self.source!r}: {exc}") from exc

        tracks = [track for track in (player.audio, player.video) if track is not None]
        if not tracks:
            raise MediaAccessError(f"Media source {self.source!r} has no audio or video")
        return MediaHandle.switchable(tracks, label=self.source)


def media_provider_for(source: str, *, format: Optional[str] = None) -> MediaProvider:
    """Resolve a ``--media`` command line value."""

    value = (source or "none").strip()
    if value == "none":
        return NullMediaProvider()
    if value == "synthetic":
        return SyntheticMediaProvider()
    return PlayerMediaProvider(value, format=format)


__all__ = [
    "MediaAccessError",
    "MediaHandle",
    "MediaProvider",
    "NullMediaProvider",
    "PlayerMediaProvider",
    "SwitchableTrack",
    "SyntheticMediaProvider",
    "blank_frame",
    "media_provider_for",
]

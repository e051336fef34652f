"""
Local media capture and the handles the negotiation session owns.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av import AudioFrame, VideoFrame

from ..config import MediaConstraints
from ..errors import MediaAccessError

LOG = logging.getLogger(__name__)

# ffmpeg input formats whose capture options are set from the constraints.
VIDEO_DEVICE_FORMATS = frozenset({"v4l2", "avfoundation", "dshow", "x11grab", "gdigrab"})
AUDIO_DEVICE_FORMATS = frozenset({"pulse", "alsa", "oss", "dshow"})


class MediaKind(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"


def _blank_like(frame):
    if isinstance(frame, AudioFrame):
        blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        blank.sample_rate = frame.sample_rate
    elif isinstance(frame, VideoFrame):
        blank = VideoFrame(width=frame.width, height=frame.height)
    else:
        return frame
    for plane in blank.planes:
        plane.update(bytes(plane.buffer_size))
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class ToggleableTrack(MediaStreamTrack):
    """
    Forward frames from a capture track, blanking them while disabled.

    Disabling keeps the track negotiated and flowing, the same way a browser
    ``MediaStreamTrack.enabled = false`` sends silence or black frames.
    """

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return _blank_like(frame)

    def stop(self) -> None:
        super().stop()
        self.source.stop()


class MediaHandle:
    """
    A set of media tracks owned by exactly one negotiation session.

    Tracks only need ``kind``, ``enabled``, ``readyState`` and ``stop()``.
    """

    def __init__(self, tracks: Iterable[Any], *, on_stop: Optional[Callable[[], None]] = None) -> None:
        self._tracks: List[Any] = list(tracks)
        self._on_stop = on_stop
        self._stopped = False

    @property
    def tracks(self) -> List[Any]:
        return list(self._tracks)

    def track(self, kind: MediaKind) -> Optional[Any]:
        for track in self._tracks:
            if track.kind == MediaKind(kind).value:
                return track
        return None

    def add(self, track: Any) -> None:
        if track not in self._tracks:
            self._tracks.append(track)

    def remove(self, track: Any) -> bool:
        """Detach ``track`` from the handle; the caller decides whether to stop it."""

        if track not in self._tracks:
            return False
        self._tracks.remove(track)
        return True

    @property
    def active_track_count(self) -> int:
        return sum(1 for track in self._tracks if track.readyState == "live")

    def is_enabled(self, kind: MediaKind) -> Optional[bool]:
        track = self.track(kind)
        if track is None:
            return None
        return bool(getattr(track, "enabled", True))

    def set_enabled(self, kind: MediaKind, enabled: bool) -> Optional[bool]:
        track = self.track(kind)
        if track is None:
            return None
        track.enabled = bool(enabled)
        return track.enabled

    def toggle(self, kind: MediaKind) -> Optional[bool]:
        current = self.is_enabled(kind)
        if current is None:
            return None
        return self.set_enabled(kind, not current)

    def stop(self) -> None:
        for track in self._tracks:
            try:
                track.stop()
            except Exception:  # pragma: no cover - one bad track must not keep the rest alive
                LOG.exception("Failed to stop %s track", track.kind)
        if not self._stopped and self._on_stop is not None:
            self._on_stop()
        self._stopped = True


class MediaCaptureProvider(Protocol):
    async def acquire(self, constraints: MediaConstraints) -> MediaHandle:
        """Return a live handle or raise :class:`MediaAccessError`."""


class PlayerMediaProvider:
    """
    Capture through :class:`aiortc.contrib.media.MediaPlayer`.

    ``source`` is anything ffmpeg can open: a device such as ``/dev/video0``
    with ``format="v4l2"``, ``default`` with ``format="pulse"``, or a file.
    """

    def __init__(
        self,
        source: str,
        *,
        format: Optional[str] = None,
        options: Optional[Dict[str, str]] = None,
        loop: bool = False,
        player_factory: Callable[..., Any] = MediaPlayer,
    ) -> None:
        self.source = source
        self.format = format
        self.options = dict(options or {})
        self.loop = loop
        self._player_factory = player_factory

    def player_options(self, constraints: MediaConstraints) -> Dict[str, str]:
        options: Dict[str, str] = {}
        if constraints.video and self.format in VIDEO_DEVICE_FORMATS:
            options["video_size"] = constraints.video_size
            if constraints.frame_rate:
                options["framerate"] = str(constraints.frame_rate)
        if constraints.audio and self.format in AUDIO_DEVICE_FORMATS:
            options["sample_rate"] = str(constraints.sample_rate)
        options.update(self.options)
        return options

    async def acquire(self, constraints: MediaConstraints) -> MediaHandle:
        options = self.player_options(constraints)
        try:
            player = await asyncio.to_thread(
                self._player_factory,
                self.source,
                format=self.format,
                options=options,
                loop=self.loop,
            )
        except Exception as exc:  # ffmpeg reports missing devices and denied access alike
            raise MediaAccessError(f"Could not open capture source '{self.source}': {exc}") from exc

        tracks = []
        if constraints.audio and player.audio is not None:
            tracks.append(ToggleableTrack(player.audio))
        if constraints.video and player.video is not None:
            tracks.append(ToggleableTrack(player.video))
        if not tracks:
            for source in (player.audio, player.video):
                if source is not None:
                    source.stop()
            raise MediaAccessError(f"Capture source '{self.source}' has no usable audio or video")

        LOG.info(
            "Acquired local media from %s (%s)",
            self.source,
            ", ".join(track.kind for track in tracks),
        )
        return MediaHandle(tracks)


__all__ = [
    "MediaCaptureProvider",
    "MediaHandle",
    "MediaKind",
    "PlayerMediaProvider",
    "ToggleableTrack",
]

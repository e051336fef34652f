"""Tests covering media handles, the player-backed provider and frame blanking."""

from __future__ import annotations

import asyncio
from fractions import Fraction

import pytest
from av import VideoFrame

from duet.config import MediaConstraints
from duet.errors import MediaAccessError
from duet.rtc.media import MediaHandle, MediaKind, PlayerMediaProvider, ToggleableTrack


class FakeTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.enabled = True
        self.readyState = "live"
        self.stops = 0

    def stop(self) -> None:
        self.stops += 1
        self.readyState = "ended"


class FakeSource:
    """Minimal capture track a :class:`ToggleableTrack` can wrap."""

    def __init__(self, kind: str, frame=None) -> None:
        self.kind = kind
        self.frame = frame
        self.stopped = False

    async def recv(self):
        return self.frame

    def stop(self) -> None:
        self.stopped = True


class FakePlayer:
    def __init__(self, audio=None, video=None) -> None:
        self.audio = audio
        self.video = video


def test_handle_toggle_flips_and_restores() -> None:
    handle = MediaHandle([FakeTrack("audio"), FakeTrack("video")])

    assert handle.toggle(MediaKind.AUDIO) is False
    assert handle.is_enabled(MediaKind.AUDIO) is False
    assert handle.is_enabled(MediaKind.VIDEO) is True
    assert handle.toggle("audio") is True
    assert handle.set_enabled(MediaKind.VIDEO, False) is False
    assert handle.track(MediaKind.VIDEO).enabled is False


def test_handle_without_track_kind_returns_none() -> None:
    handle = MediaHandle([FakeTrack("audio")])

    assert handle.track(MediaKind.VIDEO) is None
    assert handle.is_enabled(MediaKind.VIDEO) is None
    assert handle.toggle(MediaKind.VIDEO) is None


def test_handle_stop_ends_every_track_and_calls_hook_once() -> None:
    calls = []
    tracks = [FakeTrack("audio"), FakeTrack("video")]
    handle = MediaHandle(tracks, on_stop=lambda: calls.append("stopped"))
    assert handle.active_track_count == 2

    handle.stop()
    handle.stop()

    assert handle.active_track_count == 0
    assert calls == ["stopped"]


def test_player_options_only_apply_to_device_formats() -> None:
    constraints = MediaConstraints(width=640, height=480, frame_rate=15)

    device = PlayerMediaProvider("/dev/video0", format="v4l2")
    assert device.player_options(constraints) == {"video_size": "640x480", "framerate": "15"}

    media_file = PlayerMediaProvider("clip.mp4")
    assert media_file.player_options(constraints) == {}

    custom = PlayerMediaProvider("/dev/video0", format="v4l2", options={"video_size": "320x240"})
    assert custom.player_options(constraints)["video_size"] == "320x240"


def test_player_options_set_sample_rate_for_audio_devices() -> None:
    constraints = MediaConstraints(sample_rate=48000)

    assert PlayerMediaProvider("default", format="pulse").player_options(constraints) == {"sample_rate": "48000"}
    assert "sample_rate" not in PlayerMediaProvider("/dev/video0", format="v4l2").player_options(constraints)
    assert PlayerMediaProvider("default", format="alsa").player_options(MediaConstraints(audio=False)) == {}


def test_acquire_wraps_player_tracks() -> None:
    recorded = {}

    def factory(source, **kwargs):
        recorded["source"] = source
        recorded.update(kwargs)
        return FakePlayer(audio=FakeSource("audio"), video=FakeSource("video"))

    provider = PlayerMediaProvider("clip.mp4", loop=True, player_factory=factory)
    handle = asyncio.run(provider.acquire(MediaConstraints()))

    assert recorded["source"] == "clip.mp4"
    assert recorded["loop"] is True
    assert [track.kind for track in handle.tracks] == ["audio", "video"]
    assert all(isinstance(track, ToggleableTrack) for track in handle.tracks)
    assert handle.active_track_count == 2

    handle.stop()
    assert handle.active_track_count == 0
    assert all(track.source.stopped for track in handle.tracks)


def test_acquire_respects_disabled_kinds() -> None:
    provider = PlayerMediaProvider(
        "clip.mp4",
        player_factory=lambda source, **kwargs: FakePlayer(audio=FakeSource("audio"), video=FakeSource("video")),
    )

    handle = asyncio.run(provider.acquire(MediaConstraints(video=False)))

    assert [track.kind for track in handle.tracks] == ["audio"]


def test_acquire_failure_is_reported_as_media_access_error() -> None:
    def factory(source, **kwargs):
        raise OSError("No such device")

    provider = PlayerMediaProvider("/dev/video9", format="v4l2", player_factory=factory)

    with pytest.raises(MediaAccessError, match="/dev/video9"):
        asyncio.run(provider.acquire(MediaConstraints()))


def test_acquire_without_usable_tracks_fails() -> None:
    provider = PlayerMediaProvider("silence.txt", player_factory=lambda source, **kwargs: FakePlayer())

    with pytest.raises(MediaAccessError):
        asyncio.run(provider.acquire(MediaConstraints()))


def test_unused_player_tracks_are_stopped_when_acquire_fails() -> None:
    video = FakeSource("video")
    provider = PlayerMediaProvider("clip.mp4", player_factory=lambda source, **kwargs: FakePlayer(video=video))

    with pytest.raises(MediaAccessError):
        asyncio.run(provider.acquire(MediaConstraints(video=False)))

    assert video.stopped is True


def test_handle_add_and_remove_tracks() -> None:
    audio = FakeTrack("audio")
    extra = FakeTrack("video")
    handle = MediaHandle([audio])

    handle.add(extra)
    handle.add(extra)
    assert handle.tracks == [audio, extra]

    assert handle.remove(extra) is True
    assert handle.remove(extra) is False
    assert extra.stops == 0
    handle.stop()
    assert extra.stops == 0
    assert audio.readyState == "ended"


def test_disabled_video_track_emits_black_frames() -> None:
    frame = VideoFrame(width=16, height=16)
    for plane in frame.planes:
        plane.update(b"\x7f" * plane.buffer_size)
    frame.pts = 42
    frame.time_base = Fraction(1, 90000)
    track = ToggleableTrack(FakeSource("video", frame))

    assert asyncio.run(track.recv()) is frame

    track.enabled = False
    blank = asyncio.run(track.recv())

    assert blank is not frame
    assert (blank.width, blank.height) == (16, 16)
    assert blank.pts == 42
    assert blank.time_base == Fraction(1, 90000)
    assert not any(bytes(blank.planes[0]))

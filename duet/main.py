"""
Command line entrypoint.

``duet serve`` runs the signaling relay, ``duet call ROOM`` joins a room as a
headless participant, and ``duet room-id`` prints a fresh room id.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from aiortc.contrib.media import MediaBlackhole, MediaRecorder

from . import protocol
from .api.server import create_app
from .config import ClientConfig, ConfigError, DuetConfig, load_config
from .errors import DuetError, NegotiationFailure
from .rtc.channel import SignalingChannel
from .rtc.media import PlayerMediaProvider
from .rtc.negotiation import CallSnapshot, NegotiationSession
from .rtc.peer import aiortc_peer_factory
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app) -> AsyncIterator[None]:
    LOG.info("Relay lifespan starting")
    try:
        yield
    finally:
        LOG.info("Relay lifespan shutting down")


async def serve(
    config: DuetConfig,
    host: Optional[str] = None,
    port: Optional[int] = None,
    log_level: str = "info",
) -> None:
    """
    Run the signaling relay inside an asyncio loop.

    Parameters
    ----------
    config:
        Resolved configuration; only the ``relay`` section is used.
    host, port:
        Override the bind address from the configuration.
    """

    import uvicorn

    relay_config = config.relay
    app = create_app(config=relay_config, lifespan=lifespan)
    server_config = uvicorn.Config(
        app=app,
        host=host or relay_config.host,
        port=port if port is not None else relay_config.port,
        log_config=None,
        log_level=log_level,
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down server...", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    LOG.info("Signaling server running on %s:%s", server_config.host, server_config.port)
    await server.serve()


class RemoteSink:
    """Consume remote tracks while the call is connected, recording them if asked."""

    def __init__(self, record_path: Optional[str] = None) -> None:
        self.record_path = record_path
        self._sink = None
        self._track_ids: frozenset = frozenset()
        self._lock = asyncio.Lock()

    async def update(self, session: NegotiationSession) -> None:
        async with self._lock:
            remote = session.remote_media
            tracks = remote.tracks if remote is not None else []
            track_ids = frozenset(id(track) for track in tracks)
            if track_ids == self._track_ids:
                return
            await self._stop_locked()
            if not tracks:
                return
            # A recorder's container layout is fixed at start, so restart it per track set.
            sink = MediaRecorder(self.record_path) if self.record_path else MediaBlackhole()
            for track in tracks:
                sink.addTrack(track)
            await sink.start()
            self._sink = sink
            self._track_ids = track_ids

    async def stop(self) -> None:
        async with self._lock:
            await self._stop_locked()

    async def _stop_locked(self) -> None:
        sink, self._sink = self._sink, None
        self._track_ids = frozenset()
        if sink is not None:
            await sink.stop()


async def call(
    room_id: str,
    config: ClientConfig,
    *,
    media_source: str,
    media_format: Optional[str] = None,
    record_path: Optional[str] = None,
    duration: Optional[float] = None,
) -> int:
    """Join ``room_id`` and stay in the call until interrupted or closed."""

    session = NegotiationSession(
        room_id,
        channel=SignalingChannel(config.server_url, open_timeout=config.open_timeout),
        media_provider=PlayerMediaProvider(media_source, format=media_format),
        peer_factory=aiortc_peer_factory(config.ice_servers),
        constraints=config.media,
        negotiation_timeout=config.negotiation_timeout,
    )
    sink = RemoteSink(record_path)
    sink_tasks: set = set()

    def on_snapshot(snapshot: CallSnapshot) -> None:
        LOG.info("Call %s", snapshot.to_dict())
        task = asyncio.create_task(sink.update(session))
        sink_tasks.add(task)
        task.add_done_callback(sink_tasks.discard)

    session.subscribe(on_snapshot)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signame in ("SIGINT", "SIGTERM"):
        loop.add_signal_handler(getattr(signal, signame), stop_event.set)

    try:
        await session.join()
        waiters = {
            asyncio.create_task(session.wait_closed()),
            asyncio.create_task(stop_event.wait()),
        }
        _, pending = await asyncio.wait(waiters, timeout=duration, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
    except DuetError as exc:
        LOG.error("Call failed: %s", exc)
        return 1
    finally:
        await session.leave()
        await sink.stop()
        for signame in ("SIGINT", "SIGTERM"):
            loop.remove_signal_handler(getattr(signal, signame))

    error = session.last_error
    if error is not None and not isinstance(error, NegotiationFailure):
        LOG.error("Call ended: %s", error)
        return 1
    return 0


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Two-party WebRTC signaling relay and client")
    parser.add_argument("--config", default=None, help="YAML file overriding the packaged defaults")
    parser.add_argument("--log-level", default="info", help="logging level (debug, info, ...)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="run the signaling relay")
    serve_parser.add_argument("--host", default=None, help="bind host for the relay")
    serve_parser.add_argument("--port", type=int, default=None, help="bind port for the relay")

    call_parser = subparsers.add_parser("call", help="join a room as a headless participant")
    call_parser.add_argument("room", help="room id (case-insensitive)")
    call_parser.add_argument("--server", default=None, help="relay WebSocket URL")
    call_parser.add_argument(
        "--media",
        required=True,
        help="capture source for ffmpeg, e.g. /dev/video0 or a media file",
    )
    call_parser.add_argument("--media-format", default=None, help="ffmpeg input format, e.g. v4l2")
    call_parser.add_argument("--record", default=None, help="record the remote media to this file")
    call_parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="leave after this many seconds; default is to stay until interrupted",
    )

    subparsers.add_parser("room-id", help="print a random room id")
    return parser.parse_args(argv)


def run(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)

    if args.command == "room-id":
        print(protocol.generate_room_id())
        return 0

    configure_logging(args.log_level)
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        LOG.error("%s", exc)
        return 2

    if args.command == "serve":
        try:
            asyncio.run(serve(config, host=args.host, port=args.port, log_level=args.log_level))
        except KeyboardInterrupt:
            LOG.info("Relay interrupted by user.")
        return 0

    client_config = config.client
    if args.server:
        client_config.server_url = args.server
    try:
        room_id = protocol.normalise_room_id(args.room)
    except ValueError as exc:
        LOG.error("%s", exc)
        return 2
    return asyncio.run(
        call(
            room_id,
            client_config,
            media_source=args.media,
            media_format=args.media_format,
            record_path=args.record,
            duration=args.duration,
        )
    )


if __name__ == "__main__":
    raise SystemExit(run())

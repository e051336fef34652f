"""
Client-side negotiation state machine.

One :class:`NegotiationSession` drives one call attempt in one room:

``IDLE -> ACQUIRING_MEDIA -> AWAITING_PEER -> NEGOTIATING -> CONNECTED``
with ``DISCONNECTED`` when the path to the peer is lost and the terminal
``CLOSED`` state after a local leave or a fatal error.

Relay messages, peer connection events and timeouts are queued and handled
one at a time by a single worker task, so the peer connection is never
mutated by two handlers at once.  ``leave()`` bypasses the queue: it marks
the session closed immediately, and every handler re-checks that after each
suspension point so late results are discarded instead of applied.

Only the occupant that observes ``user-joined`` creates the initial offer;
the one that observes ``other-user`` waits for it.  That tie-break is only
sound because rooms hold two participants.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from .. import protocol
from ..config import MediaConstraints
from ..errors import (
    DuetError,
    InvalidTransition,
    MediaAccessError,
    NegotiationFailure,
    RelayUnreachable,
    RoomFull,
)
from .media import MediaCaptureProvider, MediaHandle, MediaKind
from .peer import PeerConnection

LOG = logging.getLogger(__name__)


class ConnectionStatus(str, Enum):
    IDLE = "idle"
    ACQUIRING_MEDIA = "acquiring-media"
    AWAITING_PEER = "awaiting-peer"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


_TRANSITIONS = {
    ConnectionStatus.IDLE: {ConnectionStatus.ACQUIRING_MEDIA, ConnectionStatus.CLOSED},
    ConnectionStatus.ACQUIRING_MEDIA: {ConnectionStatus.AWAITING_PEER, ConnectionStatus.CLOSED},
    ConnectionStatus.AWAITING_PEER: {ConnectionStatus.NEGOTIATING, ConnectionStatus.CLOSED},
    ConnectionStatus.NEGOTIATING: {
        ConnectionStatus.CONNECTED,
        ConnectionStatus.DISCONNECTED,
        ConnectionStatus.CLOSED,
    },
    ConnectionStatus.CONNECTED: {ConnectionStatus.DISCONNECTED, ConnectionStatus.CLOSED},
    # CONNECTED again when the same peer connection recovers its path.
    ConnectionStatus.DISCONNECTED: {
        ConnectionStatus.NEGOTIATING,
        ConnectionStatus.CONNECTED,
        ConnectionStatus.CLOSED,
    },
    ConnectionStatus.CLOSED: set(),
}

_LOST_PATH_STATES = {"disconnected", "failed", "closed"}


class SignalingTransport(Protocol):
    async def open(self) -> None: ...

    async def send(self, message: Dict[str, Any]) -> None: ...

    def __aiter__(self): ...

    async def close(self) -> None: ...


@dataclass(frozen=True, slots=True)
class CallSnapshot:
    """Immutable view of a negotiation session handed to observers."""

    status: ConnectionStatus
    room_id: str
    session_id: Optional[str]
    peer_id: Optional[str]
    audio_enabled: bool
    video_enabled: bool
    has_local_media: bool
    has_remote_media: bool
    error: Optional[str]

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "roomId": self.room_id,
            "sessionId": self.session_id,
            "peerId": self.peer_id,
            "audioEnabled": self.audio_enabled,
            "videoEnabled": self.video_enabled,
            "hasLocalMedia": self.has_local_media,
            "hasRemoteMedia": self.has_remote_media,
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class _Event:
    kind: str
    payload: Any = None
    epoch: Optional[int] = None


class NegotiationSession:
    """Negotiate and maintain a direct media connection with the other room occupant."""

    def __init__(
        self,
        room_id: str,
        *,
        channel: SignalingTransport,
        media_provider: MediaCaptureProvider,
        peer_factory: Callable[[], PeerConnection],
        constraints: Optional[MediaConstraints] = None,
        negotiation_timeout: Optional[float] = None,
    ) -> None:
        self.room_id = protocol.normalise_room_id(room_id)
        self.status = ConnectionStatus.IDLE
        self.session_id: Optional[str] = None
        self.peer_id: Optional[str] = None
        self.local_media: Optional[MediaHandle] = None
        self.remote_media: Optional[MediaHandle] = None
        self.audio_enabled = True
        self.video_enabled = True
        self.last_error: Optional[DuetError] = None

        self._channel = channel
        self._media_provider = media_provider
        self._peer_factory = peer_factory
        self._constraints = constraints or MediaConstraints()
        self._negotiation_timeout = negotiation_timeout

        self._pc: Optional[PeerConnection] = None
        self._pc_epoch = 0
        self._pending_candidates: List[Any] = []
        self._remote_tracks: List[Any] = []
        self._pc_tracks: List[Any] = []
        self._exchange_complete = False
        self._timeout_handle: Optional[asyncio.TimerHandle] = None

        self._events: asyncio.Queue[_Event] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._reader: Optional[asyncio.Task] = None
        self._channel_opened = False
        self._closing = False
        self._closed_event = asyncio.Event()

        self._observer_counter = 0
        self._observers: Dict[int, Callable[[CallSnapshot], None]] = {}
        self.logger = LOG.getChild(self.room_id)

    # ------------------------------------------------------------------ observers

    @property
    def closed(self) -> bool:
        return self._closing or self.status is ConnectionStatus.CLOSED

    @property
    def pending_candidate_count(self) -> int:
        return len(self._pending_candidates)

    def snapshot(self) -> CallSnapshot:
        return CallSnapshot(
            status=self.status,
            room_id=self.room_id,
            session_id=self.session_id,
            peer_id=self.peer_id,
            audio_enabled=self.audio_enabled,
            video_enabled=self.video_enabled,
            has_local_media=self.local_media is not None,
            has_remote_media=self.remote_media is not None,
            error=str(self.last_error) if self.last_error is not None else None,
        )

    def subscribe(self, callback: Callable[[CallSnapshot], None]) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        self._observer_counter += 1
        token = self._observer_counter
        self._observers[token] = callback
        try:
            callback(self.snapshot())
        except Exception:  # pragma: no cover
            LOG.exception("Call observer %s failed during initial snapshot.", token)
        return token

    def unsubscribe(self, token: int) -> None:
        self._observers.pop(token, None)

    def _notify(self) -> None:
        if not self._observers:
            return
        snapshot = self.snapshot()
        for token, callback in list(self._observers.items()):
            try:
                callback(snapshot)
            except Exception:  # pragma: no cover - observer failures should not kill the call
                LOG.exception("Call observer %s failed.", token)

    def _transition(self, status: ConnectionStatus) -> None:
        if status is self.status:
            return
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransition(f"{self.status.value} -> {status.value}")
        self.logger.info("Connection status: %s -> %s", self.status.value, status.value)
        self.status = status
        self._notify()

    def _record_error(self, error: DuetError) -> None:
        self.last_error = error
        self._notify()

    # ------------------------------------------------------------------ public API

    async def join(self) -> None:
        """
        Acquire local media, open the signaling channel and join the room.

        Raises :class:`MediaAccessError` or :class:`RelayUnreachable`; the
        session is ``CLOSED`` with every resource released in both cases.
        """

        if self.status is not ConnectionStatus.IDLE:
            raise InvalidTransition(f"join() requires idle session, status is {self.status.value}")

        self._transition(ConnectionStatus.ACQUIRING_MEDIA)
        try:
            media = await self._media_provider.acquire(self._constraints)
        except Exception as exc:
            if self.closed:
                # leave() already closed the session; nobody is waiting for this error.
                self.logger.debug("Media acquisition failed after leave: %s", exc)
                return
            if isinstance(exc, MediaAccessError):
                self.logger.error("Error accessing media devices: %s", exc)
                self.last_error = exc
            await self._shutdown(send_leave=False)
            raise
        except BaseException:
            await self._shutdown(send_leave=False)
            raise

        if self.closed:
            # leave() won the race while the capture prompt was pending.
            media.stop()
            return

        self.local_media = media
        self.audio_enabled = media.is_enabled(MediaKind.AUDIO) is not False
        self.video_enabled = media.is_enabled(MediaKind.VIDEO) is not False

        try:
            await self._channel.open()
        except BaseException as exc:
            if isinstance(exc, RelayUnreachable):
                self.logger.error("Failed to connect to signaling server: %s", exc)
                self.last_error = exc
            await self._shutdown(send_leave=False)
            raise

        self._channel_opened = True
        if self.closed:
            await self._close_channel()
            return

        self._worker = asyncio.create_task(self._process_events())
        self._reader = asyncio.create_task(self._read_channel())
        self._transition(ConnectionStatus.AWAITING_PEER)
        try:
            await self._channel.send(protocol.join(self.room_id))
        except RelayUnreachable as exc:
            self.last_error = exc
            await self._shutdown(send_leave=False)
            raise

    async def leave(self) -> None:
        """Close the session from any state, releasing media and the peer connection."""

        if self.closed:
            # Another path is already tearing down; wait for it to finish.
            await self._closed_event.wait()
            return
        self.logger.info("Leaving room %s", self.room_id)
        await self._shutdown(send_leave=True)

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    def toggle_audio(self) -> Optional[bool]:
        return self._toggle(MediaKind.AUDIO)

    def toggle_video(self) -> Optional[bool]:
        return self._toggle(MediaKind.VIDEO)

    def add_track(self, track: Any) -> None:
        """
        Send an extra local track to the peer.

        The session owns the track from here on and stops it on ``leave()``.
        An active call renegotiates once the change reaches the peer
        connection.
        """

        if self.closed or self.local_media is None:
            raise InvalidTransition(f"add_track() requires local media, status is {self.status.value}")
        self.local_media.add(track)
        self._enqueue("local-track-added", track)

    def remove_track(self, track: Any) -> bool:
        """Stop sending ``track`` and stop it; returns ``False`` if it was not ours."""

        if self.local_media is None or not self.local_media.remove(track):
            return False
        track.stop()
        self._enqueue("local-track-removed", track)
        return True

    def _toggle(self, kind: MediaKind) -> Optional[bool]:
        if self.local_media is None:
            return None
        enabled = self.local_media.toggle(kind)
        if enabled is None:
            return None
        if kind is MediaKind.AUDIO:
            self.audio_enabled = enabled
        else:
            self.video_enabled = enabled
        self._notify()
        return enabled

    # ------------------------------------------------------------------ event plumbing

    def _enqueue(self, kind: str, payload: Any = None, epoch: Optional[int] = None) -> None:
        if self.closed:
            return
        self._events.put_nowait(_Event(kind, payload, epoch))

    async def _read_channel(self) -> None:
        try:
            async for message in self._channel:
                self._enqueue("message", message)
        except asyncio.CancelledError:
            raise
        except RelayUnreachable as exc:
            self._enqueue("channel-lost", exc)
        else:
            self._enqueue("channel-lost", RelayUnreachable("signaling channel closed"))

    async def _process_events(self) -> None:
        while not self.closed:
            event = await self._events.get()
            if self.closed:
                break
            if event.epoch is not None and event.epoch != self._pc_epoch:
                self.logger.debug("Discarding %s from a replaced peer connection", event.kind)
                continue
            try:
                await self._dispatch(event)
            except asyncio.CancelledError:
                raise
            except RelayUnreachable as exc:
                await self._fail(exc)
            except Exception:
                self.logger.exception("Failed to handle %s event", event.kind)

    async def _dispatch(self, event: _Event) -> None:
        if event.kind == "message":
            await self._handle_message(event.payload)
        elif event.kind == "channel-lost":
            self.logger.error("Disconnected from signaling server: %s", event.payload)
            await self._fail(event.payload)
        elif event.kind == "connection-state":
            await self._handle_connection_state(event.payload)
        elif event.kind == "track":
            self._handle_remote_track(event.payload)
        elif event.kind == "negotiation-needed":
            await self._handle_negotiation_needed()
        elif event.kind == "local-candidate":
            await self._handle_local_candidate(event.payload)
        elif event.kind == "negotiation-timeout":
            await self._handle_negotiation_timeout()
        elif event.kind == "local-track-added":
            if self._pc is not None:
                self._attach_track(self._pc, event.payload)
        elif event.kind == "local-track-removed":
            self._detach_track(event.payload)

    async def _handle_message(self, message: Dict[str, Any]) -> None:
        message_type = message.get("type")

        if message_type == protocol.WELCOME:
            self.session_id = message.get("sessionId")
        elif message_type == protocol.JOINED:
            self.logger.info("Joined room: %s", message.get("roomId"))
        elif message_type == protocol.ROOM_FULL:
            self.logger.warning("Room is full: %s", message.get("roomId"))
            await self._fail(RoomFull(str(message.get("roomId") or self.room_id)))
        elif message_type == protocol.OTHER_USER:
            self._handle_other_user(message.get("peerId"))
        elif message_type == protocol.USER_JOINED:
            await self._handle_user_joined(message.get("peerId"))
        elif message_type == protocol.OFFER:
            await self._handle_offer(message.get("sender"), message.get("sdp"))
        elif message_type == protocol.ANSWER:
            await self._handle_answer(message.get("sender"), message.get("sdp"))
        elif message_type == protocol.ICE_CANDIDATE:
            await self._handle_remote_candidate(message.get("sender"), message.get("candidate"))
        elif message_type == protocol.USER_LEFT:
            await self._handle_user_left(message.get("peerId"))
        elif message_type == protocol.ERROR:
            payload = message.get("payload") or {}
            self.logger.warning("Relay error %s: %s", payload.get("code"), payload.get("message"))
            self._record_error(DuetError(str(payload.get("message") or payload.get("code"))))
        elif message_type == protocol.PING:
            await self._channel.send(protocol.pong())

    # ------------------------------------------------------------------ peer connection

    def _stale(self, epoch: int) -> bool:
        return self.closed or epoch != self._pc_epoch

    def _arm_timeout(self) -> None:
        self._cancel_timeout()
        if self._negotiation_timeout is None:
            return
        loop = asyncio.get_running_loop()
        self._timeout_handle = loop.call_later(
            self._negotiation_timeout,
            self._enqueue,
            "negotiation-timeout",
            None,
            self._pc_epoch,
        )

    def _cancel_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    async def _ensure_peer_connection(self) -> PeerConnection:
        pc = self._pc
        if pc is not None and pc.connection_state not in {"closed", "failed"}:
            return pc
        if pc is not None:
            await self._release_peer_connection()

        pc = self._peer_factory()
        self._pc_epoch += 1
        epoch = self._pc_epoch
        pc.on("connectionstatechange", lambda state: self._enqueue("connection-state", state, epoch))
        pc.on("track", lambda track: self._enqueue("track", track, epoch))
        pc.on("negotiationneeded", lambda: self._enqueue("negotiation-needed", None, epoch))
        pc.on("icecandidate", lambda candidate: self._enqueue("local-candidate", candidate, epoch))
        self._pc = pc
        self._pc_tracks = []
        if self.local_media is not None:
            for track in self.local_media.tracks:
                self._attach_track(pc, track)
        return pc

    def _attach_track(self, pc: PeerConnection, track: Any) -> None:
        if any(attached is track for attached in self._pc_tracks):
            return
        self._pc_tracks.append(track)
        pc.add_track(track)

    def _detach_track(self, track: Any) -> None:
        pc = self._pc
        if pc is None or not any(attached is track for attached in self._pc_tracks):
            return
        self._pc_tracks = [attached for attached in self._pc_tracks if attached is not track]
        pc.remove_track(track)

    async def _release_peer_connection(self) -> None:
        """Close the peer connection and forget everything tied to it."""

        self._cancel_timeout()
        pc, self._pc = self._pc, None
        self._pc_epoch += 1
        self._pending_candidates.clear()
        self._pc_tracks = []
        self._remote_tracks.clear()
        self.remote_media = None
        self._exchange_complete = False
        if pc is not None:
            try:
                await pc.close()
            except Exception:
                self.logger.exception("Failed to close peer connection")

    async def _send_description(self, message_type: str, target: str, pc: PeerConnection, fallback):
        description = pc.local_description or fallback
        await self._channel.send(protocol.addressed(message_type, target, description))

    async def _flush_candidates(self, pc: PeerConnection, epoch: int) -> None:
        pending, self._pending_candidates = self._pending_candidates, []
        if pending:
            self.logger.debug("Applying %d buffered ICE candidate(s)", len(pending))
        for candidate in pending:
            if self._stale(epoch):
                return
            try:
                await pc.add_ice_candidate(candidate)
            except Exception:
                self.logger.warning("Error adding buffered ICE candidate", exc_info=True)

    async def _negotiation_failed(self, failure: NegotiationFailure) -> None:
        self.logger.warning("Negotiation failed: %s", failure)
        self.last_error = failure
        await self._release_peer_connection()
        if self.status in {ConnectionStatus.NEGOTIATING, ConnectionStatus.CONNECTED}:
            self._transition(ConnectionStatus.DISCONNECTED)
        else:
            self._notify()

    # ------------------------------------------------------------------ handlers

    def _handle_other_user(self, peer_id: Optional[str]) -> None:
        if not peer_id:
            return
        self.logger.info("Other user already in room: %s", peer_id)
        self.peer_id = peer_id
        self._notify()

    async def _handle_user_joined(self, peer_id: Optional[str]) -> None:
        if not peer_id:
            return
        if self.status not in {ConnectionStatus.AWAITING_PEER, ConnectionStatus.DISCONNECTED}:
            self.logger.warning("Ignoring user-joined(%s) while %s", peer_id, self.status.value)
            return

        self.logger.info("User joined room: %s", peer_id)
        await self._release_peer_connection()
        self.peer_id = peer_id
        pc = await self._ensure_peer_connection()
        epoch = self._pc_epoch
        self._transition(ConnectionStatus.NEGOTIATING)
        self._arm_timeout()
        try:
            offer = await pc.create_offer()
            if self._stale(epoch):
                return
            await pc.set_local_description(offer)
            if self._stale(epoch):
                return
        except Exception as exc:
            await self._negotiation_failed(
                NegotiationFailure(f"Error creating offer: {exc}", peer_id=peer_id)
            )
            return
        await self._send_description(protocol.OFFER, peer_id, pc, offer)

    async def _handle_offer(self, sender: Optional[str], sdp: Any) -> None:
        if not sender:
            return
        if self.status in {ConnectionStatus.NEGOTIATING, ConnectionStatus.CONNECTED}:
            if sender != self.peer_id:
                self.logger.warning("Ignoring offer from %s; paired with %s", sender, self.peer_id)
                return
        elif self.status not in {ConnectionStatus.AWAITING_PEER, ConnectionStatus.DISCONNECTED}:
            return

        self.logger.info("Received offer from: %s", sender)
        if self.peer_id is not None and self.peer_id != sender:
            await self._release_peer_connection()
        self.peer_id = sender
        pc = await self._ensure_peer_connection()
        epoch = self._pc_epoch
        if self.status is not ConnectionStatus.CONNECTED:
            self._transition(ConnectionStatus.NEGOTIATING)
            self._arm_timeout()

        try:
            await pc.set_remote_description(sdp)
            if self._stale(epoch):
                return
            await self._flush_candidates(pc, epoch)
            answer = await pc.create_answer()
            if self._stale(epoch):
                return
            await pc.set_local_description(answer)
            if self._stale(epoch):
                return
        except Exception as exc:
            await self._negotiation_failed(
                NegotiationFailure(f"Error handling offer: {exc}", peer_id=sender)
            )
            return
        await self._send_description(protocol.ANSWER, sender, pc, answer)
        self._exchange_complete = True

    async def _handle_answer(self, sender: Optional[str], sdp: Any) -> None:
        pc = self._pc
        if pc is None or sender != self.peer_id:
            self.logger.debug("Ignoring answer from %s", sender)
            return
        self.logger.info("Received answer from: %s", sender)
        epoch = self._pc_epoch
        if self.status is ConnectionStatus.DISCONNECTED:
            self._transition(ConnectionStatus.NEGOTIATING)
            self._arm_timeout()
        try:
            await pc.set_remote_description(sdp)
        except Exception as exc:
            await self._negotiation_failed(
                NegotiationFailure(f"Error handling answer: {exc}", peer_id=sender)
            )
            return
        if self._stale(epoch):
            return
        await self._flush_candidates(pc, epoch)
        self._exchange_complete = True

    async def _handle_remote_candidate(self, sender: Optional[str], candidate: Any) -> None:
        if sender is None or sender != self.peer_id:
            self.logger.debug("Discarding stale ICE candidate from %s", sender)
            return
        pc = self._pc
        if pc is None or not pc.has_remote_description:
            self._pending_candidates.append(candidate)
            return
        try:
            await pc.add_ice_candidate(candidate)
        except Exception:
            self.logger.warning("Error adding ICE candidate", exc_info=True)

    async def _handle_local_candidate(self, candidate: Any) -> None:
        if not candidate or self.peer_id is None:
            return
        await self._channel.send(
            protocol.addressed(protocol.ICE_CANDIDATE, self.peer_id, candidate)
        )

    def _handle_remote_track(self, track: Any) -> None:
        self._remote_tracks.append(track)
        if self.status is ConnectionStatus.CONNECTED:
            self.remote_media = MediaHandle(self._remote_tracks)
            self._notify()

    async def _handle_connection_state(self, state: str) -> None:
        self.logger.info("Peer connection state: %s", state)
        if state == "connected":
            if self.status in {ConnectionStatus.NEGOTIATING, ConnectionStatus.DISCONNECTED}:
                self._cancel_timeout()
                self.remote_media = MediaHandle(self._remote_tracks)
                self._transition(ConnectionStatus.CONNECTED)
            return

        if state not in _LOST_PATH_STATES:
            return
        if self.status not in {ConnectionStatus.NEGOTIATING, ConnectionStatus.CONNECTED}:
            return

        failure = NegotiationFailure(f"peer connection {state}", peer_id=self.peer_id)
        if state == "disconnected":
            # The same connection may still recover its path.
            self.last_error = failure
            self.remote_media = None
            self._transition(ConnectionStatus.DISCONNECTED)
            return
        await self._negotiation_failed(failure)

    async def _handle_negotiation_needed(self) -> None:
        pc = self._pc
        if (
            pc is None
            or self.peer_id is None
            or not self._exchange_complete
            or self.status not in {ConnectionStatus.NEGOTIATING, ConnectionStatus.CONNECTED}
        ):
            self.logger.debug("Ignoring negotiationneeded while an exchange is in flight")
            return

        self.logger.info("Renegotiating with %s", self.peer_id)
        self._exchange_complete = False
        epoch = self._pc_epoch
        try:
            offer = await pc.create_offer()
            if self._stale(epoch):
                return
            await pc.set_local_description(offer)
            if self._stale(epoch):
                return
        except Exception:
            self.logger.exception("Error during negotiation")
            self._exchange_complete = True
            return
        await self._send_description(protocol.OFFER, self.peer_id, pc, offer)

    async def _handle_negotiation_timeout(self) -> None:
        if self.status is not ConnectionStatus.NEGOTIATING:
            return
        await self._negotiation_failed(
            NegotiationFailure(
                f"no connection after {self._negotiation_timeout}s", peer_id=self.peer_id
            )
        )

    async def _handle_user_left(self, peer_id: Optional[str]) -> None:
        if peer_id is None or peer_id != self.peer_id:
            self.logger.debug("Ignoring user-left for %s", peer_id)
            return
        self.logger.info("User left: %s", peer_id)
        await self._release_peer_connection()
        self.peer_id = None
        if self.status in {ConnectionStatus.NEGOTIATING, ConnectionStatus.CONNECTED}:
            self._transition(ConnectionStatus.DISCONNECTED)
        else:
            self._notify()

    # ------------------------------------------------------------------ teardown

    async def _fail(self, error: DuetError) -> None:
        self.last_error = error
        await self._shutdown(send_leave=False)

    async def _close_channel(self) -> None:
        try:
            await self._channel.close()
        except Exception:
            self.logger.warning("Failed to close signaling channel", exc_info=True)

    async def _shutdown(self, *, send_leave: bool) -> None:
        if self.status is ConnectionStatus.CLOSED:
            return
        self._closing = True
        self._cancel_timeout()

        current = asyncio.current_task()
        tasks = [task for task in (self._worker, self._reader) if task is not None and task is not current]
        for task in tasks:
            task.cancel()

        media, self.local_media = self.local_media, None
        if media is not None:
            media.stop()
        pc, self._pc = self._pc, None
        self._pc_epoch += 1
        self._pending_candidates.clear()
        self._pc_tracks = []
        self._remote_tracks.clear()
        self.remote_media = None
        self.status = ConnectionStatus.CLOSED
        self.logger.info("Connection status: closed")
        self._notify()

        try:
            if pc is not None:
                try:
                    await pc.close()
                except Exception:
                    self.logger.exception("Failed to close peer connection")
            if send_leave and self._channel_opened:
                try:
                    await self._channel.send(protocol.leave())
                except Exception:
                    self.logger.warning("Failed to send leave; releasing anyway", exc_info=True)
            await self._close_channel()
            for task in tasks:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        finally:
            self._closed_event.set()


__all__ = [
    "CallSnapshot",
    "ConnectionStatus",
    "NegotiationSession",
    "SignalingTransport",
]

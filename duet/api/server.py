"""
FastAPI signaling relay.

Each WebSocket connection becomes a :class:`RelaySession` with its own
receive, send and keepalive loops.  The :class:`RelayManager` owns the
session/room :class:`~duet.registry.Registry` and routes negotiation messages
between the two members of a room without looking at their payloads.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from .. import protocol
from ..config import RelayConfig
from ..registry import JoinOutcome, Registry
from . import schemas

LOG = logging.getLogger(__name__)

WEBSOCKET_PATH = "/ws"

_RELAY_SCHEMAS = {
    protocol.OFFER: schemas.DescriptionRelayRequest,
    protocol.ANSWER: schemas.DescriptionRelayRequest,
    protocol.ICE_CANDIDATE: schemas.CandidateRelayRequest,
}


class RelaySession:
    """Track per-connection state and orchestrate send/receive loops."""

    def __init__(self, manager: "RelayManager", websocket: WebSocket, *, queue_size: int) -> None:
        self.manager = manager
        self.websocket = websocket
        self.session_id = ""
        self.send_queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self.last_pong = time.monotonic()
        self._stop_event = asyncio.Event()
        self._closing = False
        self.logger = LOG.getChild("ws")

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover
            self.logger.exception("Failed to accept WebSocket connection")
            return

        self.session_id = self.manager.register(self)
        self.logger = LOG.getChild(f"ws.{self.session_id[:8]}")
        self.send(protocol.welcome(self.session_id))

        try:
            async with asyncio.TaskGroup() as task_group:
                task_group.create_task(self._recv_loop())
                task_group.create_task(self._send_loop())
                task_group.create_task(self._keepalive_loop())
        except asyncio.CancelledError:
            raise
        except Exception:  # pragma: no cover
            self.logger.exception("Relay session crashed")
        finally:
            await self.manager.finalise_session(self)
            await self.close(code=1000)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        self._stop_event.set()
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)

    def send(self, payload: Dict[str, Any]) -> bool:
        """Queue ``payload`` for delivery without waiting for it to be written."""

        if self.is_stopped:
            return False
        try:
            self.send_queue.put_nowait(dict(payload))
        except asyncio.QueueFull:
            self.logger.warning("Dropping %s message due to backpressure", payload.get("type"))
            return False
        return True

    async def _receive_message(self) -> Optional[Dict[str, Any]]:
        frame = await self.websocket.receive()
        if frame.get("type") == "websocket.disconnect":
            raise WebSocketDisconnect(code=frame.get("code", 1000))
        raw = frame.get("text")
        if raw is None:
            data = frame.get("bytes") or b""
            raw = data.decode("utf-8", errors="replace")
        try:
            message = json.loads(raw)
        except ValueError:
            self.logger.debug("Dropping non-JSON frame")
            return None
        return message if isinstance(message, dict) else None

    async def _recv_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    message = await self._receive_message()
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except Exception:  # pragma: no cover - safety net
                    self.logger.exception("Failed to receive message")
                    break

                if message is None:
                    continue

                msg_type = str(message.get("type") or "").lower()
                if msg_type == protocol.PONG:
                    self.last_pong = time.monotonic()
                    continue
                if msg_type == protocol.PING:
                    self.send(protocol.pong())
                    continue

                try:
                    await self.manager.handle_message(self, message)
                except asyncio.CancelledError:
                    raise
                except Exception:  # pragma: no cover - guard rails
                    self.logger.exception("Unhandled error while processing %s", msg_type)
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    outbound = await asyncio.wait_for(self.send_queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue

                try:
                    await self.websocket.send_json(outbound)
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except RuntimeError as exc:
                    message = str(exc)
                    if "close message has been sent" in message:
                        self.logger.debug("Send after close ignored: %s", message)
                    else:
                        self.logger.exception("Failed to send message", exc_info=exc)
                    break
                except Exception:  # pragma: no cover
                    self.logger.exception("Failed to send message")
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()

    async def _keepalive_loop(self) -> None:
        interval = self.manager.ping_interval
        if interval <= 0:
            return
        try:
            while not self.is_stopped:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                if self.is_stopped:
                    break
                self.send(protocol.ping())
                if (time.monotonic() - self.last_pong) > self.manager.pong_timeout:
                    self.logger.warning("Ping timeout; closing relay session")
                    await self.close(code=1011, reason="ping timeout")
                    break
        finally:
            self._stop_event.set()


class RelayManager:
    """Route signaling messages between sessions paired in the same room."""

    def __init__(
        self,
        registry: Optional[Registry] = None,
        *,
        queue_size: int = 256,
        ping_interval: float = 30.0,
        pong_timeout: float = 60.0,
    ) -> None:
        self.registry = registry or Registry()
        self.queue_size = max(1, int(queue_size))
        self.ping_interval = max(0.0, float(ping_interval))
        self.pong_timeout = max(self.ping_interval, float(pong_timeout))
        self._sessions: Dict[str, RelaySession] = {}

    @classmethod
    def from_config(cls, config: RelayConfig, registry: Optional[Registry] = None) -> "RelayManager":
        return cls(
            registry,
            queue_size=config.queue_size,
            ping_interval=config.ping_interval,
            pong_timeout=config.pong_timeout,
        )

    async def run(self, websocket: WebSocket) -> None:
        session = RelaySession(self, websocket, queue_size=self.queue_size)
        await session.run()

    def register(self, session: RelaySession) -> str:
        session_id = self.registry.connect()
        self._sessions[session_id] = session
        LOG.info("User connected: %s", session_id)
        return session_id

    async def finalise_session(self, session: RelaySession) -> None:
        session_id = session.session_id
        result = await self.registry.disconnect(session_id)
        self._sessions.pop(session_id, None)
        if result is not None and result.peer_id:
            self.deliver(result.peer_id, protocol.user_left(session_id))
        LOG.info("User disconnected: %s", session_id)

    def deliver(self, session_id: str, message: Dict[str, Any]) -> bool:
        target = self._sessions.get(session_id)
        if target is None:
            LOG.debug("Dropping %s for disconnected session %s", message.get("type"), session_id)
            return False
        return target.send(message)

    async def handle_message(self, session: RelaySession, message: Dict[str, Any]) -> None:
        message_type = message.get("type")
        if not isinstance(message_type, str):
            return

        if message_type == protocol.JOIN:
            await self._handle_join(session, message)
            return

        if message_type == protocol.LEAVE:
            await self._handle_leave(session)
            return

        if message_type in _RELAY_SCHEMAS:
            self._relay(session, message_type, message)
            return

        session.logger.debug("Ignoring unsupported message type %s", message_type)

    async def _handle_join(self, session: RelaySession, message: Dict[str, Any]) -> None:
        try:
            request = schemas.JoinRequest.model_validate(message)
        except ValidationError:
            session.send(
                protocol.error(protocol.E_INVALID_PAYLOAD, "join requires a non-empty roomId")
            )
            return

        room_id = request.room_id
        session.logger.info("User %s attempting to join room: %s", session.session_id, room_id)
        result = await self.registry.join(session.session_id, room_id)

        if result.outcome is JoinOutcome.ROOM_FULL:
            session.send(protocol.room_full(room_id))
            session.logger.info("Room %s is full, rejected user %s", room_id, session.session_id)
            return

        if result.outcome is JoinOutcome.ALREADY_IN_ROOM:
            current = self.registry.room_of(session.session_id)
            session.send(
                protocol.error(
                    protocol.E_ALREADY_IN_ROOM,
                    f"leave room '{current}' before joining another",
                    room_id=room_id,
                )
            )
            return

        session.send(protocol.joined(room_id))
        if result.peer_id is None:
            return
        if not result.rejoined:
            self.deliver(result.peer_id, protocol.user_joined(session.session_id))
        session.send(protocol.other_user(result.peer_id))

    async def _handle_leave(self, session: RelaySession) -> None:
        result = await self.registry.leave(session.session_id)
        if result is None:
            return
        session.logger.info("User %s left room %s", session.session_id, result.room_id)
        if result.peer_id:
            self.deliver(result.peer_id, protocol.user_left(session.session_id))

    def _relay(self, session: RelaySession, message_type: str, message: Dict[str, Any]) -> None:
        try:
            request = _RELAY_SCHEMAS[message_type].model_validate(message)
        except ValidationError:
            session.logger.debug("Dropping malformed %s message", message_type)
            return

        field = protocol.RELAYED_PAYLOAD_FIELDS[message_type]
        session.logger.debug(
            "Relaying %s from %s to %s", message_type, session.session_id, request.target
        )
        self.deliver(
            request.target,
            protocol.relayed(message_type, session.session_id, message[field]),
        )


def create_app(
    *,
    config: Optional[RelayConfig] = None,
    manager: Optional[RelayManager] = None,
    lifespan: Optional[Callable[..., object]] = None,
) -> FastAPI:
    relay_config = config or RelayConfig()
    relay = manager or RelayManager.from_config(relay_config)

    app = FastAPI(title="Duet Signaling Relay", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(relay_config.cors_origins),
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.state.relay = relay

    @app.websocket(WEBSOCKET_PATH)
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await relay.run(websocket)

    @app.get("/healthz", response_model=schemas.HealthResponse)
    async def healthz() -> schemas.HealthResponse:
        return schemas.HealthResponse(
            status="ok",
            rooms=relay.registry.rooms(),
            sessions=relay.registry.session_count,
        )

    @app.get("/rooms/{room_id}", response_model=schemas.RoomMembersResponse)
    async def room_members(room_id: str) -> schemas.RoomMembersResponse:
        members = relay.registry.members(room_id)
        if not members:
            raise HTTPException(status_code=404, detail=f"Room '{room_id}' not found")
        return schemas.RoomMembersResponse(room_id=room_id, members=sorted(members))

    return app

"""
Session and room registry for the signaling relay.

The registry is an explicitly owned store: the relay manager holds one
instance and every mutation of a room is serialised through a per-room
``asyncio.Lock``.  Operations on different rooms never wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Dict, FrozenSet, List, Optional, Set

from .errors import DuetError

LOG = logging.getLogger(__name__)

ROOM_CAPACITY = 2


class UnknownSession(DuetError):
    """Raised when an operation references a session that is not connected."""


class JoinOutcome(str, Enum):
    JOINED = "joined"
    ROOM_FULL = "room-full"
    ALREADY_IN_ROOM = "already-in-room"


@dataclass(frozen=True, slots=True)
class JoinResult:
    """
    Result of :meth:`Registry.join`.

    ``peer_id`` is the other occupant of the room when the join succeeded and
    somebody was already there.  ``rejoined`` marks a repeated join of a room
    the session already occupies; nothing changed in that case.
    """

    outcome: JoinOutcome
    room_id: str
    peer_id: Optional[str] = None
    rejoined: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome is JoinOutcome.JOINED


@dataclass(frozen=True, slots=True)
class LeaveResult:
    room_id: str
    peer_id: Optional[str]
    room_closed: bool


class Registry:
    """Track connected sessions and the rooms (at most two members) they occupy."""

    def __init__(
        self,
        *,
        capacity: int = ROOM_CAPACITY,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.capacity = max(1, int(capacity))
        self._id_factory: Callable[[], str] = id_factory or (lambda: uuid.uuid4().hex)
        self._sessions: Dict[str, Optional[str]] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._room_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    # ------------------------------------------------------------------ helpers

    @asynccontextmanager
    async def _room_guard(self, room_id: str) -> AsyncIterator[None]:
        lock = self._room_locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._room_locks[room_id] = lock
        self._lock_users[room_id] = self._lock_users.get(room_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[room_id] - 1
            if remaining:
                self._lock_users[room_id] = remaining
            else:
                self._lock_users.pop(room_id, None)
                self._room_locks.pop(room_id, None)

    @staticmethod
    def _other_member(members: Set[str], session_id: str) -> Optional[str]:
        for member in members:
            if member != session_id:
                return member
        return None

    def _remove_locked(self, session_id: str, room_id: str) -> LeaveResult:
        members = self._rooms.get(room_id, set())
        members.discard(session_id)
        self._sessions[session_id] = None
        peer_id = self._other_member(members, session_id)
        room_closed = not members
        if room_closed:
            self._rooms.pop(room_id, None)
            LOG.info("Room %s deleted (empty)", room_id)
        else:
            LOG.info("Room %s now has %d participant(s)", room_id, len(members))
        return LeaveResult(room_id=room_id, peer_id=peer_id, room_closed=room_closed)

    # ------------------------------------------------------------------ public API

    def connect(self) -> str:
        session_id = self._id_factory()
        while session_id in self._sessions:
            session_id = self._id_factory()
        self._sessions[session_id] = None
        return session_id

    async def disconnect(self, session_id: str) -> Optional[LeaveResult]:
        """Leave the current room (if any) and forget the session."""

        result: Optional[LeaveResult] = None
        while session_id in self._sessions:
            outcome = await self.leave(session_id)
            if outcome is not None:
                result = outcome
            if self._sessions.get(session_id) is None:
                self._sessions.pop(session_id, None)
        return result

    async def join(self, session_id: str, room_id: str) -> JoinResult:
        if not isinstance(room_id, str) or not room_id:
            raise ValueError("room id must be a non-empty string")

        async with self._room_guard(room_id):
            if session_id not in self._sessions:
                raise UnknownSession(f"session '{session_id}' is not connected")

            current = self._sessions[session_id]
            if current is not None and current != room_id:
                return JoinResult(JoinOutcome.ALREADY_IN_ROOM, room_id)

            members = self._rooms.get(room_id)
            if members is not None and session_id in members:
                return JoinResult(
                    JoinOutcome.JOINED,
                    room_id,
                    self._other_member(members, session_id),
                    rejoined=True,
                )
            if members is not None and len(members) >= self.capacity:
                return JoinResult(JoinOutcome.ROOM_FULL, room_id)

            if members is None:
                members = set()
                self._rooms[room_id] = members
            peer_id = self._other_member(members, session_id)
            members.add(session_id)
            self._sessions[session_id] = room_id
            LOG.info(
                "Session %s joined room %s. Participants: %d", session_id, room_id, len(members)
            )
            return JoinResult(JoinOutcome.JOINED, room_id, peer_id)

    async def leave(self, session_id: str) -> Optional[LeaveResult]:
        """
        Remove ``session_id`` from its room.

        Returns ``None`` when the session was not in a room; otherwise the
        result names the remaining peer that has to be notified, if any.
        """

        while True:
            room_id = self._sessions.get(session_id)
            if room_id is None:
                return None
            async with self._room_guard(room_id):
                # The session may have moved while we waited for the lock.
                if self._sessions.get(session_id) != room_id:
                    continue
                return self._remove_locked(session_id, room_id)

    def members(self, room_id: str) -> FrozenSet[str]:
        return frozenset(self._rooms.get(room_id, ()))

    def rooms(self) -> List[str]:
        return sorted(self._rooms)

    def room_of(self, session_id: str) -> Optional[str]:
        return self._sessions.get(session_id)

    def is_connected(self, session_id: str) -> bool:
        return session_id in self._sessions

    @property
    def session_count(self) -> int:
        return len(self._sessions)


__all__ = [
    "JoinOutcome",
    "JoinResult",
    "LeaveResult",
    "ROOM_CAPACITY",
    "Registry",
    "UnknownSession",
]

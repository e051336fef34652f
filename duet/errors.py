"""
Error taxonomy shared by the relay and the negotiation client.
"""

from __future__ import annotations

from typing import Optional


class DuetError(RuntimeError):
    """Base class for signaling related errors."""


class MediaAccessError(DuetError):
    """Raised when the capture device is unavailable or access was denied."""


class RoomFull(DuetError):
    """Raised when the relay rejects a join because the room already has two members."""

    def __init__(self, room_id: str) -> None:
        super().__init__(f"room '{room_id}' is full")
        self.room_id = room_id


class RelayUnreachable(DuetError):
    """Raised when the signaling channel cannot be established or drops."""


class NegotiationFailure(DuetError):
    """
    The peer connection failed or closed unexpectedly.

    Non-fatal: the session stays in its room waiting for a fresh pairing.
    """

    def __init__(self, message: str, *, peer_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.peer_id = peer_id


class InvalidTransition(DuetError):
    """Raised when the negotiation state machine is asked for an illegal transition."""


__all__ = [
    "DuetError",
    "InvalidTransition",
    "MediaAccessError",
    "NegotiationFailure",
    "RelayUnreachable",
    "RoomFull",
]

"""
WebRTC client helpers: signaling channel, media capture and negotiation.
"""

from __future__ import annotations

from .channel import SignalingChannel
from .media import MediaHandle, MediaKind, PlayerMediaProvider, ToggleableTrack
from .negotiation import CallSnapshot, ConnectionStatus, NegotiationSession
from .peer import AiortcPeerConnection, aiortc_peer_factory

__all__ = [
    "AiortcPeerConnection",
    "CallSnapshot",
    "ConnectionStatus",
    "MediaHandle",
    "MediaKind",
    "NegotiationSession",
    "PlayerMediaProvider",
    "SignalingChannel",
    "ToggleableTrack",
    "aiortc_peer_factory",
]

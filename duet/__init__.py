"""
Duet: two-party WebRTC signaling.

The package hosts both halves of the signaling layer: the relay that pairs
two sessions per room and forwards their offers, answers and ICE candidates
(:mod:`duet.api`), and the client-side negotiation state machine that drives
an aiortc peer connection from those messages (:mod:`duet.rtc`).  Media never
passes through the relay.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]

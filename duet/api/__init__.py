"""
Signaling relay HTTP/WebSocket surface.
"""

from __future__ import annotations

from .server import RelayManager, RelaySession, create_app

__all__ = ["RelayManager", "RelaySession", "create_app"]

"""Utility helpers for duet."""

from .logging import configure_logging, resolve_level

__all__ = ["configure_logging", "resolve_level"]

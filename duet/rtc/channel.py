"""
Client side of the signaling channel.

One :class:`SignalingChannel` wraps one WebSocket connection to the relay.
There is no automatic reconnect: an unexpected drop surfaces as
:class:`~duet.errors.RelayUnreachable` and the caller decides what to do.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from ..errors import RelayUnreachable

LOG = logging.getLogger(__name__)


class SignalingChannel:
    """JSON message channel to the relay."""

    def __init__(
        self,
        url: str,
        *,
        open_timeout: float = 10.0,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self.url = url
        self.open_timeout = open_timeout
        self._connect = connect
        self._ws: Optional[Any] = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closing

    async def open(self) -> None:
        if self._ws is not None:
            return
        if self._closing:
            raise RelayUnreachable("signaling channel was closed")
        try:
            self._ws = await self._connect(self.url, open_timeout=self.open_timeout)
        except (OSError, TimeoutError, InvalidURI, InvalidHandshake) as exc:
            raise RelayUnreachable(f"Failed to connect to signaling server {self.url}: {exc}") from exc
        LOG.info("Connected to signaling server %s", self.url)

    async def send(self, message: Dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or self._closing:
            raise RelayUnreachable("signaling channel is not open")
        try:
            await ws.send(json.dumps(message))
        except ConnectionClosed as exc:
            raise RelayUnreachable("signaling channel dropped") from exc

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Dict[str, Any]]:
        ws = self._ws
        if ws is None:
            raise RelayUnreachable("signaling channel is not open")
        try:
            async for raw in ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    LOG.debug("Dropping non-JSON frame from relay")
                    continue
                if isinstance(message, dict):
                    yield message
        except ConnectionClosed as exc:
            if self._closing:
                return
            raise RelayUnreachable("signaling channel dropped") from exc
        if not self._closing:
            raise RelayUnreachable("relay closed the signaling channel")

    async def close(self) -> None:
        self._closing = True
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except ConnectionClosed:
            pass
        LOG.info("Disconnected from signaling server")


__all__ = ["SignalingChannel"]

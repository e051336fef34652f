"""
Peer connection adapter over :class:`aiortc.RTCPeerConnection`.

The negotiation state machine exchanges session descriptions and ICE
candidates as the JSON shapes browsers use (``RTCSessionDescriptionInit`` and
``RTCIceCandidateInit``); this module converts them to aiortc objects.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from aiortc import (
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..config import IceServer

LOG = logging.getLogger(__name__)

Description = Dict[str, str]
Candidate = Dict[str, Any]


def build_configuration(ice_servers: Iterable[IceServer]) -> RTCConfiguration:
    return RTCConfiguration(
        iceServers=[
            RTCIceServer(urls=server.urls, username=server.username, credential=server.credential)
            for server in ice_servers
        ]
    )


def description_to_dict(description: RTCSessionDescription) -> Description:
    return {"type": description.type, "sdp": description.sdp}


def description_from_dict(payload: Mapping[str, Any]) -> RTCSessionDescription:
    if not isinstance(payload, Mapping):
        raise ValueError("session description must be an object")
    kind = payload.get("type")
    sdp = payload.get("sdp")
    if kind not in {"offer", "answer", "pranswer", "rollback"} or not isinstance(sdp, str):
        raise ValueError("session description requires 'type' and 'sdp'")
    return RTCSessionDescription(sdp=sdp, type=kind)


def candidate_from_dict(payload: Mapping[str, Any]) -> RTCIceCandidate:
    raw = str(payload.get("candidate") or "")
    if raw.startswith("candidate:"):
        raw = raw[len("candidate:"):]
    candidate = candidate_from_sdp(raw)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


def candidate_to_dict(candidate: RTCIceCandidate) -> Candidate:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


class PeerConnection(Protocol):
    """Operations the negotiation state machine drives on a media engine."""

    @property
    def connection_state(self) -> str: ...

    @property
    def has_remote_description(self) -> bool: ...

    @property
    def local_description(self) -> Optional[Description]: ...

    def on(self, event: str, callback: Callable[..., None]) -> None: ...

    def add_track(self, track: Any) -> None: ...

    def remove_track(self, track: Any) -> None: ...

    async def create_offer(self) -> Description: ...

    async def create_answer(self) -> Description: ...

    async def set_local_description(self, description: Description) -> None: ...

    async def set_remote_description(self, description: Description) -> None: ...

    async def add_ice_candidate(self, candidate: Optional[Candidate]) -> None: ...

    async def close(self) -> None: ...


class AiortcPeerConnection:
    """
    :class:`PeerConnection` backed by aiortc.

    Events: ``connectionstatechange(state)``, ``track(track)`` and
    ``negotiationneeded()`` when tracks change after the first exchange.  aiortc
    gathers candidates during ``setLocalDescription`` and embeds them in the
    local description, so ``icecandidate`` is never emitted.
    """

    def __init__(self, configuration: Optional[RTCConfiguration] = None) -> None:
        self._pc = RTCPeerConnection(configuration=configuration)
        self._listeners: Dict[str, List[Callable[..., None]]] = defaultdict(list)
        self._pc.on("connectionstatechange", self._on_connection_state_change)
        self._pc.on("track", self._on_track)

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def has_remote_description(self) -> bool:
        return self._pc.remoteDescription is not None

    @property
    def local_description(self) -> Optional[Description]:
        description = self._pc.localDescription
        return description_to_dict(description) if description is not None else None

    def on(self, event: str, callback: Callable[..., None]) -> None:
        self._listeners[event].append(callback)

    def _emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners.get(event, ())):
            try:
                callback(*args)
            except Exception:  # pragma: no cover - listener failures should not kill the engine
                LOG.exception("Peer connection listener for %s failed", event)

    def _on_connection_state_change(self) -> None:
        self._emit("connectionstatechange", self._pc.connectionState)

    def _on_track(self, track: Any) -> None:
        LOG.info("Received remote track: %s", track.kind)
        self._emit("track", track)

    def add_track(self, track: Any) -> None:
        self._pc.addTrack(track)
        self._renegotiation_needed()

    def remove_track(self, track: Any) -> None:
        # aiortc has no removeTrack; stop sending on the track's transceiver instead.
        for transceiver in self._pc.getTransceivers():
            if transceiver.sender.track is track:
                transceiver.direction = "recvonly"
                self._renegotiation_needed()
                return

    def _renegotiation_needed(self) -> None:
        # aiortc never fires negotiationneeded itself.
        if self._pc.remoteDescription is not None:
            self._emit("negotiationneeded")

    async def create_offer(self) -> Description:
        return description_to_dict(await self._pc.createOffer())

    async def create_answer(self) -> Description:
        return description_to_dict(await self._pc.createAnswer())

    async def set_local_description(self, description: Description) -> None:
        await self._pc.setLocalDescription(description_from_dict(description))

    async def set_remote_description(self, description: Description) -> None:
        await self._pc.setRemoteDescription(description_from_dict(description))

    async def add_ice_candidate(self, candidate: Optional[Candidate]) -> None:
        if not candidate or not candidate.get("candidate"):
            # End-of-candidates marker; aiortc needs nothing for it.
            return
        await self._pc.addIceCandidate(candidate_from_dict(candidate))

    async def close(self) -> None:
        await self._pc.close()


def aiortc_peer_factory(ice_servers: Iterable[IceServer]) -> Callable[[], AiortcPeerConnection]:
    configuration = build_configuration(list(ice_servers))

    def factory() -> AiortcPeerConnection:
        return AiortcPeerConnection(configuration)

    return factory


__all__ = [
    "AiortcPeerConnection",
    "PeerConnection",
    "aiortc_peer_factory",
    "build_configuration",
    "candidate_from_dict",
    "candidate_to_dict",
    "description_from_dict",
    "description_to_dict",
]

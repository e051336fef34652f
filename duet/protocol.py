"""
Signaling wire format shared by the relay and the client.

Every frame is a JSON object whose ``type`` field names the message. Session
description and ICE candidate payloads are opaque to the relay.
"""

from __future__ import annotations

import secrets
import string
import time
from typing import Any, Dict, Optional

WELCOME = "welcome"
JOIN = "join"
JOINED = "joined"
ROOM_FULL = "room-full"
OTHER_USER = "other-user"
USER_JOINED = "user-joined"
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"
USER_LEFT = "user-left"
LEAVE = "leave"
ERROR = "error"
PING = "ping"
PONG = "pong"

# Messages forwarded verbatim between paired sessions, keyed by payload field.
RELAYED_PAYLOAD_FIELDS = {
    OFFER: "sdp",
    ANSWER: "sdp",
    ICE_CANDIDATE: "candidate",
}

E_INVALID_PAYLOAD = "E_INVALID_PAYLOAD"
E_ALREADY_IN_ROOM = "E_ALREADY_IN_ROOM"

ROOM_ID_ALPHABET = string.ascii_uppercase + string.digits
ROOM_ID_LENGTH = 8

Message = Dict[str, Any]


def normalise_room_id(value: object) -> str:
    """Strip and upper-case a user supplied room id; raises on empty input."""

    room_id = str(value or "").strip().upper()
    if not room_id:
        raise ValueError("room id must be a non-empty string")
    return room_id


def generate_room_id(length: int = ROOM_ID_LENGTH) -> str:
    return "".join(secrets.choice(ROOM_ID_ALPHABET) for _ in range(max(1, int(length))))


def welcome(session_id: str) -> Message:
    return {"type": WELCOME, "sessionId": session_id}


def join(room_id: str) -> Message:
    return {"type": JOIN, "roomId": room_id}


def joined(room_id: str) -> Message:
    return {"type": JOINED, "roomId": room_id}


def room_full(room_id: str) -> Message:
    return {"type": ROOM_FULL, "roomId": room_id}


def other_user(peer_id: str) -> Message:
    return {"type": OTHER_USER, "peerId": peer_id}


def user_joined(peer_id: str) -> Message:
    return {"type": USER_JOINED, "peerId": peer_id}


def user_left(peer_id: str) -> Message:
    return {"type": USER_LEFT, "peerId": peer_id}


def leave() -> Message:
    return {"type": LEAVE}


def ping() -> Message:
    return {"type": PING, "ts": time.time()}


def pong() -> Message:
    return {"type": PONG, "ts": time.time()}


def error(code: str, message: str, *, room_id: Optional[str] = None) -> Message:
    payload: Message = {"code": code, "message": message}
    if room_id is not None:
        payload["roomId"] = room_id
    return {"type": ERROR, "payload": payload}


def addressed(message_type: str, target: str, payload: Any) -> Message:
    """Build a client -> relay negotiation message for ``target``."""

    field = RELAYED_PAYLOAD_FIELDS[message_type]
    return {"type": message_type, "target": target, field: payload}


def relayed(message_type: str, sender: str, payload: Any) -> Message:
    """Build the relay -> client form of a negotiation message from ``sender``."""

    field = RELAYED_PAYLOAD_FIELDS[message_type]
    return {"type": message_type, "sender": sender, field: payload}


__all__ = [
    "ANSWER",
    "E_ALREADY_IN_ROOM",
    "E_INVALID_PAYLOAD",
    "ERROR",
    "ICE_CANDIDATE",
    "JOIN",
    "JOINED",
    "LEAVE",
    "Message",
    "OFFER",
    "OTHER_USER",
    "PING",
    "PONG",
    "RELAYED_PAYLOAD_FIELDS",
    "ROOM_FULL",
    "ROOM_ID_ALPHABET",
    "ROOM_ID_LENGTH",
    "USER_JOINED",
    "USER_LEFT",
    "WELCOME",
    "addressed",
    "error",
    "generate_room_id",
    "join",
    "joined",
    "leave",
    "normalise_room_id",
    "other_user",
    "ping",
    "pong",
    "relayed",
    "room_full",
    "user_joined",
    "user_left",
    "welcome",
]

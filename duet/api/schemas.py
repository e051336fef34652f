"""
Pydantic schemas mirroring the signaling WS contract and diagnostic endpoints.
"""

from __future__ import annotations

from typing import Any, List

from pydantic import BaseModel, ConfigDict, Field, field_validator


class JoinRequest(BaseModel):
    room_id: str = Field(alias="roomId")
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("room_id", mode="before")
    @classmethod
    def _require_room(cls, value: object) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("roomId must be a non-empty string")
        return value


class AddressedRequest(BaseModel):
    target: str
    model_config = ConfigDict(extra="ignore")

    @field_validator("target", mode="before")
    @classmethod
    def _require_target(cls, value: object) -> str:
        if not isinstance(value, str) or not value:
            raise ValueError("target must be a session id")
        return value


class DescriptionRelayRequest(AddressedRequest):
    sdp: Any


class CandidateRelayRequest(AddressedRequest):
    candidate: Any


class HealthResponse(BaseModel):
    status: str = "ok"
    rooms: List[str] = Field(default_factory=list)
    sessions: int = 0


class RoomMembersResponse(BaseModel):
    room_id: str = Field(serialization_alias="roomId")
    members: List[str] = Field(default_factory=list)

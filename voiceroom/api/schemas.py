"""
Pydantic schemas mirroring the WebSocket/REST contract.
"""

from __future__ import annotations

from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class JoinRoomRequest(BaseModel):
    room_id: str = Field(validation_alias=AliasChoices("roomId", "room_id", "room"))
    display_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("displayName", "display_name", "name"),
    )

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("room_id", mode="before")
    @classmethod
    def _coerce_room_id(cls, value: object) -> str:
        if value is None:
            raise ValueError("roomId is required")
        return str(value)

    @field_validator("display_name", mode="before")
    @classmethod
    def _coerce_display_name(cls, value: object) -> Optional[str]:
        return None if value is None else str(value)


class SetMutedRequest(BaseModel):
    muted: bool


class RelayRequest(BaseModel):
    to: str
    sdp: Any = None
    candidate: Any = None

    @field_validator("to", mode="before")
    @classmethod
    def _require_target(cls, value: object) -> str:
        result = str(value or "").strip()
        if not result:
            raise ValueError("to is required")
        return result


class RosterEntryModel(BaseModel):
    connectionId: str
    displayName: str
    muted: bool = False


class JoinedRoomMessage(BaseModel):
    type: str = "joined-room"
    roomId: str
    displayName: str
    peers: List[RosterEntryModel] = Field(default_factory=list)


class HealthResponse(BaseModel):
    ok: bool = True

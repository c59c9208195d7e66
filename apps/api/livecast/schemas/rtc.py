"""Data contracts for RTC endpoints."""
from __future__ import annotations

from pydantic import BaseModel, Field


class IceServer(BaseModel):
    urls: list[str] = Field(..., min_length=1, description="STUN or TURN URLs")
    username: str | None = None
    credential: str | None = None


class IceServersResponse(BaseModel):
    ice_servers: list[IceServer] = Field(default_factory=list, serialization_alias="iceServers")

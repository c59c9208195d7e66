"""Data contracts for room signaling."""
from __future__ import annotations

import enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SignalingKind(str, enum.Enum):
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"


class ConnectionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


class PeerRole(str, enum.Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class PresenceEventType(str, enum.Enum):
    JOINED = "joined"
    PARTICIPANT_JOINED = "participant_joined"
    PARTICIPANT_LEFT = "participant_left"


class SignalingMessage(BaseModel):
    """One negotiation artefact addressed from one peer to another."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: SignalingKind
    payload: Any = Field(default=None, description="Opaque negotiation blob")
    sender: str = Field(..., alias="from", min_length=1, description="Local id of the publishing peer")
    to: str | None = Field(default=None, description="Addressed peer; unset means the whole room")

    def to_wire(self) -> dict[str, Any]:
        """Return the JSON-ready form published on the room channel."""

        wire: dict[str, Any] = {"kind": self.kind.value, "payload": self.payload, "from": self.sender}
        if self.to is not None:
            wire["to"] = self.to
        return wire


class PresenceEvent(BaseModel):
    """Membership notice emitted by the signaling relay."""

    event: PresenceEventType
    participant_id: str
    room: str | None = None
    participants: list[str] = Field(default_factory=list)


def is_presence(message: dict[str, Any]) -> bool:
    return "event" in message and "kind" not in message

"""Schemas for conversation messages and their senders."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.models.enums import MessageType
from app.schemas.common import UTCDateTime


class DeliveryState(str, Enum):
    """Local delivery marker of a message; never persisted."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class SenderProfile(BaseModel):
    """Public profile attached to displayed messages."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    display_name: str | None = None
    avatar_url: str | None = None
    is_judge: bool = False


class Message(BaseModel):
    """A message row plus the local view state attached to it."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    conversation_id: str
    sender_id: str
    content: str | None = None
    metadata: dict[str, Any] | None = None
    message_type: MessageType = MessageType.TEXT
    created_at: UTCDateTime
    read_at: UTCDateTime | None = None

    sender: SenderProfile | None = Field(default=None, exclude=True)
    delivery: DeliveryState = Field(default=DeliveryState.SENT, exclude=True)
    error: str | None = Field(default=None, exclude=True)

    def sort_key(self) -> tuple:
        return (self.created_at, self.id)

    def to_row(self) -> dict[str, Any]:
        """Columns sent to the persistence gateway."""

        return self.model_dump(exclude={"sender", "delivery", "error"})

"""Schemas for feed notifications and reward notifications."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.models.enums import NotificationType, Rarity, RewardType
from app.schemas.common import UTCDateTime


class Notification(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    title: str
    body: str = ""
    type: NotificationType
    data: dict[str, Any] | None = Field(default=None, description="Routing payload, e.g. {'url': ...}")
    read: bool = False
    created_at: UTCDateTime

    @property
    def url(self) -> str | None:
        if not self.data:
            return None
        value = self.data.get("url")
        return str(value) if value else None


class RewardNotification(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    reward_type: RewardType
    title: str
    description: str = ""
    points: int | None = None
    rarity: Rarity = Rarity.COMMON
    data: dict[str, Any] | None = None
    read: bool = False
    created_at: UTCDateTime

"""Schema of a judge conversation row."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from app.models.enums import ConversationStatus
from app.schemas.common import UTCDateTime

_ALLOWED_TRANSITIONS: dict[ConversationStatus, frozenset[ConversationStatus]] = {
    ConversationStatus.ACTIVE: frozenset({ConversationStatus.ENDED, ConversationStatus.DISPUTED}),
    ConversationStatus.ENDED: frozenset(),
    ConversationStatus.DISPUTED: frozenset(),
}


def can_transition(current: ConversationStatus, target: ConversationStatus) -> bool:
    """Status only moves forward: active to ended or disputed, never back."""

    return current is target or target in _ALLOWED_TRANSITIONS[current]


class Conversation(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    question_id: str
    user_id: str
    judge_id: str
    status: ConversationStatus = ConversationStatus.ACTIVE
    started_at: UTCDateTime
    ended_at: UTCDateTime | None = None
    last_message_at: UTCDateTime | None = None

    @property
    def is_active(self) -> bool:
        return self.status is ConversationStatus.ACTIVE

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.user_id, self.judge_id)

    def counterpart_of(self, user_id: str) -> str:
        return self.judge_id if user_id == self.user_id else self.user_id

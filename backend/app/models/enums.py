from __future__ import annotations

from enum import Enum


class ConversationStatus(str, Enum):
    """Lifecycle of a judge conversation; transitions only leave ``active``."""

    ACTIVE = "active"
    ENDED = "ended"
    DISPUTED = "disputed"


class MessageType(str, Enum):
    """Kinds of messages exchanged inside a conversation."""

    TEXT = "text"
    IMAGE = "image"
    SYSTEM = "system"


class NotificationType(str, Enum):
    """Domain events a user can be notified about."""

    QUESTION_ASSIGNED = "question_assigned"
    QUESTION_ANSWERED = "question_answered"
    QUESTION_COMPLETED = "question_completed"
    RATING_RECEIVED = "rating_received"
    REWARD_EARNED = "reward_earned"
    QUESTION_AVAILABLE = "question_available"


class RewardType(str, Enum):
    """Gamification events presented through the reward modal queue."""

    POINTS = "points"
    BADGE = "badge"
    LEVEL_UP = "level_up"
    ACHIEVEMENT = "achievement"
    BONUS = "bonus"


class Rarity(str, Enum):
    COMMON = "common"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"

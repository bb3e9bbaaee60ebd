"""Database models package."""

from .base import Base
from .chat import Conversation, Message, Notification, Profile, RewardNotification
from .enums import ConversationStatus, MessageType, NotificationType, Rarity, RewardType

TABLES: dict[str, type[Base]] = {
    model.__tablename__: model
    for model in (Profile, Conversation, Message, Notification, RewardNotification)
}

__all__ = [
    "Base",
    "Profile",
    "Conversation",
    "Message",
    "Notification",
    "RewardNotification",
    "ConversationStatus",
    "MessageType",
    "NotificationType",
    "RewardType",
    "Rarity",
    "TABLES",
]

"""Pydantic schemas for gateway rows and the local view state built from them."""

from .conversations import Conversation, can_transition
from .messages import DeliveryState, Message, SenderProfile
from .notifications import Notification, RewardNotification

__all__ = [
    "Conversation",
    "can_transition",
    "DeliveryState",
    "Message",
    "SenderProfile",
    "Notification",
    "RewardNotification",
]

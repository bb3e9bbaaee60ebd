"""Creates notifications for backend-side domain events."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from app.models.enums import NotificationType, Rarity, RewardType
from app.schemas import Notification, RewardNotification
from judgeline.realtime.gateway import GatewayError, PersistenceGateway

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 50


def preview(content: str, limit: int = PREVIEW_LENGTH) -> str:
    """Shorten message content for a notification body."""

    if len(content) > limit:
        return content[:limit] + "..."
    return content


def conversation_url(conversation_id: str) -> str:
    return f"/conversation/{conversation_id}"


class NotificationFactory:
    """Inserts notification rows; failures are logged and reported as ``None``."""

    def __init__(self, gateway: PersistenceGateway) -> None:
        self._gateway = gateway

    async def _create(
        self, user_id: str, kind: NotificationType, title: str, body: str, data: dict[str, Any]
    ) -> Notification | None:
        row = {"user_id": user_id, "title": title, "body": body, "type": kind.value, "data": data}
        try:
            stored = await self._gateway.insert("notifications", row)
            return Notification.model_validate(stored)
        except (GatewayError, ValidationError):
            logger.warning("Failed to create %s notification", kind.value, extra={"user_id": user_id}, exc_info=True)
            return None

    async def question_assigned(self, question_id: str, user_id: str, judge_id: str) -> Notification | None:
        return await self._create(
            user_id,
            NotificationType.QUESTION_ASSIGNED,
            "Judge assigned",
            "A judge has taken your question and will answer shortly.",
            {"question_id": question_id, "judge_id": judge_id, "url": conversation_url(question_id)},
        )

    async def new_message(
        self, conversation_id: str, sender_id: str, recipient_id: str, content: str
    ) -> Notification | None:
        return await self._create(
            recipient_id,
            NotificationType.QUESTION_ANSWERED,
            "New message",
            preview(content),
            {
                "conversation_id": conversation_id,
                "sender_id": sender_id,
                "url": conversation_url(conversation_id),
            },
        )

    async def question_completed(self, conversation_id: str, user_id: str, judge_id: str) -> Notification | None:
        return await self._create(
            user_id,
            NotificationType.QUESTION_COMPLETED,
            "Question resolved",
            "Your question was marked as resolved. Don't forget to rate your judge!",
            {"conversation_id": conversation_id, "judge_id": judge_id, "url": conversation_url(conversation_id)},
        )

    async def rating_received(self, judge_id: str, rating: int, conversation_id: str) -> Notification | None:
        stars = "⭐" * max(0, min(rating, 5))
        return await self._create(
            judge_id,
            NotificationType.RATING_RECEIVED,
            "New rating",
            f"You received a rating of {rating}/5 {stars}",
            {"rating": rating, "conversation_id": conversation_id, "url": conversation_url(conversation_id)},
        )

    async def reward_earned(self, judge_id: str, points: int, reason: str) -> Notification | None:
        return await self._create(
            judge_id,
            NotificationType.REWARD_EARNED,
            "Reward earned",
            f"You earned {points} points: {reason}",
            {"points": points, "reason": reason, "url": "/profile?tab=rewards"},
        )

    async def question_available(self, judge_id: str, question_id: str, question_title: str) -> Notification | None:
        return await self._create(
            judge_id,
            NotificationType.QUESTION_AVAILABLE,
            "New question available",
            f'"{question_title}" - click to take it',
            {"question_id": question_id, "url": conversation_url(question_id)},
        )

    async def reward(
        self,
        user_id: str,
        reward_type: RewardType,
        title: str,
        description: str = "",
        *,
        points: int | None = None,
        rarity: Rarity = Rarity.COMMON,
        data: dict[str, Any] | None = None,
    ) -> RewardNotification | None:
        """Queue a reward for the blocking modal presentation."""

        row = {
            "user_id": user_id,
            "reward_type": reward_type.value,
            "title": title,
            "description": description,
            "points": points,
            "rarity": rarity.value,
            "data": data,
        }
        try:
            stored = await self._gateway.insert("reward_notifications", row)
            return RewardNotification.model_validate(stored)
        except (GatewayError, ValidationError):
            logger.warning("Failed to create reward notification", extra={"user_id": user_id}, exc_info=True)
            return None

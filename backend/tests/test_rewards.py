from __future__ import annotations

import asyncio
from typing import Any

import pytest

from app.models import Rarity, RewardType
from app.services.notification_factory import NotificationFactory
from app.services.rewards import RewardNotificationQueue
from judgeline.realtime.gateway import ChangeType
from support import USER_ID, at, stored_row


def reward_row(reward_id: str, seconds: float, *, read: bool = False, **extra: Any) -> dict[str, Any]:
    row = {
        "id": reward_id,
        "user_id": USER_ID,
        "reward_type": "points",
        "title": f"Reward {reward_id}",
        "points": 10,
        "read": read,
        "created_at": at(seconds),
    }
    row.update(extra)
    return row


@pytest.mark.anyio("asyncio")
async def test_open_queues_unread_rewards_oldest_first(gateway):
    gateway.seed("reward_notifications", reward_row("r2", 2))
    gateway.seed("reward_notifications", reward_row("r1", 1))
    gateway.seed("reward_notifications", reward_row("seen", 0, read=True))
    queue = RewardNotificationQueue(gateway, USER_ID)

    result = await queue.open()

    assert result.ok
    assert queue.current.id == "r1"
    assert [item.id for item in queue.pending] == ["r2"]
    assert queue.unread_count == 2
    await queue.close()


@pytest.mark.anyio("asyncio")
async def test_legendary_reward_waits_behind_the_one_on_screen(gateway, eventually):
    queue = RewardNotificationQueue(gateway, USER_ID)
    await queue.open()
    factory = NotificationFactory(gateway)

    common = await factory.reward(USER_ID, RewardType.POINTS, "First answer", points=10)
    await gateway.drain()
    await eventually(lambda: queue.current is not None)
    legendary = await factory.reward(
        USER_ID, RewardType.ACHIEVEMENT, "Rules guru", rarity=Rarity.LEGENDARY
    )
    await gateway.drain()
    await eventually(lambda: queue.unread_count == 2)

    assert queue.current.id == common.id
    assert [item.id for item in queue.pending] == [legendary.id]

    acknowledged = await queue.acknowledge()

    assert acknowledged.ok
    assert acknowledged.value.id == common.id
    assert queue.current.id == legendary.id
    assert queue.current.rarity is Rarity.LEGENDARY
    assert (await stored_row(gateway, "reward_notifications", common.id))["read"] is True
    await queue.close()


@pytest.mark.anyio("asyncio")
async def test_failed_acknowledge_keeps_current_reward(gateway):
    gateway.seed("reward_notifications", reward_row("r1", 1))
    queue = RewardNotificationQueue(gateway, USER_ID)
    await queue.open()
    gateway.inject_fault("update", "reward_notifications")

    result = await queue.acknowledge()

    assert not result.ok
    assert queue.current.id == "r1"
    gateway.clear_faults()
    assert (await queue.acknowledge()).ok
    assert queue.current is None
    assert not (await queue.acknowledge()).ok
    await queue.close()


@pytest.mark.anyio("asyncio")
async def test_duplicate_and_read_inserts_are_ignored(gateway, eventually):
    gateway.seed("reward_notifications", reward_row("r1", 1))
    queue = RewardNotificationQueue(gateway, USER_ID)
    await queue.open()

    gateway.emit("reward_notifications", ChangeType.INSERT, reward_row("r1", 1))
    gateway.emit("reward_notifications", ChangeType.INSERT, reward_row("r0", 0, read=True))
    gateway.emit("reward_notifications", ChangeType.INSERT, reward_row("r2", 2))
    await gateway.drain()
    await eventually(lambda: queue.unread_count == 2)
    await asyncio.sleep(0.01)

    assert queue.current.id == "r1"
    assert [item.id for item in queue.pending] == ["r2"]
    await queue.close()


@pytest.mark.anyio("asyncio")
async def test_rewards_of_other_users_are_not_queued(gateway):
    queue = RewardNotificationQueue(gateway, USER_ID)
    await queue.open()

    await gateway.insert("reward_notifications", reward_row("r1", 1, user_id="someone-else"))
    await gateway.drain()
    await asyncio.sleep(0.01)

    assert queue.current is None
    await queue.close()

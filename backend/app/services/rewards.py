"""One-at-a-time presentation queue for reward notifications."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from app.monitoring.metrics import notification_events_total, realtime_dropped_events_total
from app.schemas import RewardNotification
from judgeline.realtime.events import RowInserted, StatusChanged, StreamEvent
from judgeline.realtime.gateway import ChangeType, GatewayError, PersistenceGateway, RowFilter
from judgeline.realtime.observers import ActionResult, ChangeNotifier
from judgeline.realtime.stream import EventStreamClient, StreamHandle, TableFilter

logger = logging.getLogger(__name__)

FEED = "rewards"


def rewards_topic(user_id: str) -> str:
    return f"reward-notifications-{user_id}"


@dataclass(frozen=True, slots=True)
class RewardQueueSnapshot:
    current: RewardNotification | None
    pending: tuple[RewardNotification, ...]
    unread_count: int


class RewardNotificationQueue(ChangeNotifier):
    """Blocking overlay queue: the oldest unread reward is shown until acknowledged.

    New rewards never replace the one on screen; they wait behind it. Rewards
    are shown in the order they were earned, so a live arrival goes to the back
    of the queue rather than being shown next.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        user_id: str,
        *,
        client: EventStreamClient | None = None,
    ) -> None:
        super().__init__()
        self._gateway = gateway
        self.user_id = str(user_id)
        self._owns_client = client is None
        self._client = client or EventStreamClient(gateway)
        self._queue: list[RewardNotification] = []
        self._seen: set[str] = set()
        self._acknowledging: str | None = None
        self._handle: StreamHandle | None = None
        self._pump: asyncio.Task[None] | None = None
        self._opened = False
        self._closed = False

    @property
    def current(self) -> RewardNotification | None:
        return self._queue[0] if self._queue else None

    @property
    def pending(self) -> tuple[RewardNotification, ...]:
        return tuple(self._queue[1:])

    @property
    def unread_count(self) -> int:
        return len(self._queue)

    def snapshot(self) -> RewardQueueSnapshot:
        return RewardQueueSnapshot(current=self.current, pending=self.pending, unread_count=self.unread_count)

    async def open(self) -> ActionResult[None]:
        if self._closed:
            raise RuntimeError("Reward queue is closed")
        if self._opened:
            return ActionResult.success()
        self._opened = True
        self._handle = self._client.subscribe(
            rewards_topic(self.user_id),
            [
                TableFilter(
                    "reward_notifications",
                    (RowFilter.eq("user_id", self.user_id),),
                    (ChangeType.INSERT,),
                )
            ],
        )
        self._pump = asyncio.create_task(self._consume(self._handle), name=f"rewards-{self.user_id}")
        try:
            rows = await self._gateway.select(
                "reward_notifications",
                filters=[RowFilter.eq("user_id", self.user_id), RowFilter.eq("read", False)],
                order_by="created_at",
            )
        except GatewayError as exc:
            logger.warning("Failed to load reward notifications", extra={"user_id": self.user_id})
            return ActionResult.failure(str(exc))
        if self._closed:
            return ActionResult.failure("Reward queue is closed")
        loaded = [item for item in (self._parse(row) for row in rows) if item is not None]
        loaded = [item for item in loaded if item.id not in self._seen]
        self._seen.update(item.id for item in loaded)
        self._queue = sorted(loaded + self._queue, key=lambda item: (item.created_at, item.id))
        self._notify()
        return ActionResult.success()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        handle, self._handle = self._handle, None
        if handle is not None:
            await self._client.unsubscribe(handle)
        pump, self._pump = self._pump, None
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump
        if self._owns_client:
            await self._client.close()

    async def acknowledge(self) -> ActionResult[RewardNotification]:
        """Persist the current reward as read and promote the next one."""

        current = self.current
        if self._closed or current is None:
            return ActionResult.failure("No reward notification is displayed")
        if self._acknowledging == current.id:
            return ActionResult.failure("Acknowledgement already in progress")
        self._acknowledging = current.id
        try:
            await self._gateway.update(
                "reward_notifications", {"read": True}, filters=[RowFilter.eq("id", current.id)]
            )
        except GatewayError as exc:
            logger.warning("Failed to acknowledge reward", extra={"reward_id": current.id})
            return ActionResult.failure(str(exc))
        finally:
            self._acknowledging = None
        if self._closed:
            return ActionResult.failure("Reward queue is closed")
        self._queue = [item for item in self._queue if item.id != current.id]
        notification_events_total.labels(FEED, "acknowledged").inc()
        self._notify()
        return ActionResult.success(current)

    async def _consume(self, handle: StreamHandle) -> None:
        async for event in handle:
            if self._closed:
                return
            try:
                self._apply(event)
            except Exception:
                logger.exception("Failed to process reward event", extra={"user_id": self.user_id})

    def _apply(self, event: StreamEvent) -> None:
        if isinstance(event, RowInserted):
            item = self._parse(event.row)
            if item is None or item.read or item.user_id != self.user_id:
                return
            if item.id in self._seen:
                notification_events_total.labels(FEED, "duplicate").inc()
                return
            self._seen.add(item.id)
            self._queue.append(item)
            notification_events_total.labels(FEED, "queued").inc()
            self._notify()
        elif isinstance(event, StatusChanged):
            logger.debug("Reward stream %s", event.status.value, extra={"user_id": self.user_id})

    def _parse(self, row: dict[str, Any]) -> RewardNotification | None:
        try:
            return RewardNotification.model_validate(row)
        except ValidationError:
            logger.warning("Dropped malformed reward notification", extra={"user_id": self.user_id})
            realtime_dropped_events_total.labels("malformed").inc()
            return None

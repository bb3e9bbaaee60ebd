"""Per-user notification feed with an unread counter kept in step with live events."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from app.config import Settings, get_settings
from app.monitoring.metrics import notification_events_total, realtime_dropped_events_total
from app.schemas import Notification
from app.services.alerts import NotificationPresenter
from judgeline.realtime.events import RowInserted, RowUpdated, StatusChanged, StreamEvent, StreamStatus
from judgeline.realtime.gateway import GatewayError, PersistenceGateway, RowFilter
from judgeline.realtime.observers import ActionResult, ChangeNotifier
from judgeline.realtime.stream import EventStreamClient, StreamHandle, TableFilter

logger = logging.getLogger(__name__)

FEED = "notifications"


def notifications_topic(user_id: str) -> str:
    return f"notifications-{user_id}"


def _newest_first(items: Any) -> list[Notification]:
    return sorted(items, key=lambda item: (item.created_at, item.id), reverse=True)


@dataclass(frozen=True, slots=True)
class NotificationSnapshot:
    notifications: tuple[Notification, ...]
    unread_count: int
    loading: bool
    status: StreamStatus


class NotificationDispatcher(ChangeNotifier):
    """Feed of the most recent notifications of one user.

    The unread counter is the number of unread entries in the loaded window
    (``notification_window``, 50 by default), not a global count. Live inserts
    add exactly one to it and read transitions remove exactly one, floored at
    zero. Read state never goes back to unread.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        user_id: str,
        *,
        client: EventStreamClient | None = None,
        presenter: NotificationPresenter | None = None,
        settings: Settings | None = None,
    ) -> None:
        super().__init__()
        self._settings = settings or get_settings()
        self._gateway = gateway
        self.user_id = str(user_id)
        self._owns_client = client is None
        self._client = client or EventStreamClient(gateway)
        self._presenter = presenter or NotificationPresenter(os_permission=self._settings.notification_os_permission)
        self._window = self._settings.notification_window

        self._entries: dict[str, Notification] = {}
        self._unread = 0
        self._loading = False
        self._opened = False
        self._closed = False
        self._handle: StreamHandle | None = None
        self._pump: asyncio.Task[None] | None = None
        self._load_lock = asyncio.Lock()
        self._live_during_load: dict[str, Notification] | None = None
        self._pending_reads: set[str] = set()
        self._confirmed_reads: set[str] = set()
        self._needs_reload = False
        self._resubscribe_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def notifications(self) -> list[Notification]:
        return _newest_first(self._entries.values())

    @property
    def unread_count(self) -> int:
        return self._unread

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def status(self) -> StreamStatus:
        return self._handle.status if self._handle is not None else StreamStatus.CLOSED

    def snapshot(self) -> NotificationSnapshot:
        return NotificationSnapshot(
            notifications=tuple(self.notifications),
            unread_count=self._unread,
            loading=self._loading,
            status=self.status,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def open(self) -> ActionResult[None]:
        if self._closed:
            raise RuntimeError("Notification dispatcher is closed")
        if self._opened:
            return ActionResult.success()
        self._opened = True
        self._handle = self._client.subscribe(
            notifications_topic(self.user_id),
            [TableFilter("notifications", (RowFilter.eq("user_id", self.user_id),))],
        )
        self._pump = asyncio.create_task(self._consume(self._handle), name=f"notifications-{self.user_id}")
        return await self.load_notifications()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        resubscribe, self._resubscribe_task = self._resubscribe_task, None
        if resubscribe is not None:
            resubscribe.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await resubscribe
        for task in list(self._background):
            task.cancel()
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

    async def load_notifications(self) -> ActionResult[None]:
        """Load (or reload) the most recent window and recompute the unread count."""

        if self._closed:
            return ActionResult.failure("Notification dispatcher is closed")
        async with self._load_lock:
            self._loading = True
            self._live_during_load = {}
            self._notify()
            try:
                rows = await self._gateway.select(
                    "notifications",
                    filters=[RowFilter.eq("user_id", self.user_id)],
                    order_by="created_at",
                    descending=True,
                    limit=self._window,
                )
            except GatewayError as exc:
                logger.warning("Failed to load notifications", extra={"user_id": self.user_id})
                return ActionResult.failure(f"Failed to load notifications: {exc}")
            finally:
                live, self._live_during_load = self._live_during_load or {}, None
                self._loading = False
            if self._closed:
                return ActionResult.failure("Notification dispatcher is closed")

            merged: dict[str, Notification] = {}
            for row in rows:
                item = self._parse(row)
                if item is not None:
                    merged[item.id] = item
            for item in live.values():
                merged[item.id] = self._monotonic(merged.get(item.id), item)
            for item_id, item in list(merged.items()):
                local = self._entries.get(item_id)
                if local is not None and (local.read or item_id in self._pending_reads) and not item.read:
                    merged[item_id] = item.model_copy(update={"read": True})

            window = _newest_first(merged.values())[: self._window]
            self._entries = {item.id: item for item in window}
            self._unread = sum(1 for item in window if not item.read)
        notification_events_total.labels(FEED, "loaded").inc()
        self._notify()
        return ActionResult.success()

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------
    async def mark_read(self, notification_id: str) -> ActionResult[None]:
        if self._closed:
            return ActionResult.failure("Notification dispatcher is closed")
        current = self._entries.get(notification_id)
        if current is None:
            return ActionResult.failure("Unknown notification")
        if current.read or notification_id in self._pending_reads:
            return ActionResult.success()

        self._entries[notification_id] = current.model_copy(update={"read": True})
        self._unread = max(0, self._unread - 1)
        self._pending_reads.add(notification_id)
        self._notify()
        try:
            await self._gateway.update(
                "notifications", {"read": True}, filters=[RowFilter.eq("id", notification_id)]
            )
        except GatewayError as exc:
            confirmed = notification_id in self._confirmed_reads
            self._pending_reads.discard(notification_id)
            self._confirmed_reads.discard(notification_id)
            if confirmed:
                return ActionResult.success()
            if not self._closed:
                entry = self._entries.get(notification_id)
                if entry is not None and entry.read:
                    self._entries[notification_id] = entry.model_copy(update={"read": False})
                    self._unread += 1
                    self._notify()
            logger.warning("Failed to mark notification read", extra={"notification_id": notification_id})
            return ActionResult.failure(str(exc))
        self._pending_reads.discard(notification_id)
        self._confirmed_reads.discard(notification_id)
        notification_events_total.labels(FEED, "read").inc()
        return ActionResult.success()

    async def mark_all_read(self) -> ActionResult[None]:
        """Persist read for every unread entry, then clear the local counter."""

        if self._closed:
            return ActionResult.failure("Notification dispatcher is closed")
        try:
            updated = await self._gateway.update(
                "notifications",
                {"read": True},
                filters=[RowFilter.eq("user_id", self.user_id), RowFilter.eq("read", False)],
            )
        except GatewayError as exc:
            logger.warning("Failed to mark all notifications read", extra={"user_id": self.user_id})
            return ActionResult.failure(str(exc))
        if self._closed:
            return ActionResult.failure("Notification dispatcher is closed")

        confirmed = {str(row.get("id")) for row in updated}
        # Entries that arrived while the write was in flight may not be covered by it.
        stragglers = [
            item.id for item in self._entries.values() if not item.read and item.id not in confirmed
        ]
        self._entries = {
            key: item if item.read else item.model_copy(update={"read": True})
            for key, item in self._entries.items()
        }
        self._unread = 0
        notification_events_total.labels(FEED, "read_all").inc()
        self._notify()
        if stragglers:
            try:
                await self._gateway.update(
                    "notifications", {"read": True}, filters=[RowFilter.is_in("id", stragglers)]
                )
            except GatewayError:
                logger.warning("Failed to persist read state of late notifications", extra={"count": len(stragglers)})
        return ActionResult.success()

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------
    async def _consume(self, handle: StreamHandle) -> None:
        async for event in handle:
            if self._closed:
                return
            try:
                self._apply(event)
            except Exception:
                logger.exception("Failed to process notification event", extra={"user_id": self.user_id})

    def _apply(self, event: StreamEvent) -> None:
        if isinstance(event, RowInserted):
            self._on_insert(event.row)
        elif isinstance(event, RowUpdated):
            self._on_update(event.row)
        elif isinstance(event, StatusChanged):
            self._on_status(event)

    def _on_insert(self, row: dict[str, Any]) -> None:
        item = self._parse(row)
        if item is None or item.user_id != self.user_id:
            return
        if self._live_during_load is not None:
            self._live_during_load[item.id] = self._monotonic(self._live_during_load.get(item.id), item)
        if item.id in self._entries:
            notification_events_total.labels(FEED, "duplicate").inc()
            return
        self._entries[item.id] = item
        if not item.read:
            self._unread += 1
        notification_events_total.labels(FEED, "inserted").inc()
        self._presenter.present(item)
        self._notify()

    def _on_update(self, row: dict[str, Any]) -> None:
        item = self._parse(row)
        if item is None or item.user_id != self.user_id:
            return
        if self._live_during_load is not None and item.id in self._live_during_load:
            self._live_during_load[item.id] = self._monotonic(self._live_during_load[item.id], item)
        current = self._entries.get(item.id)
        if current is None:
            return
        if item.read and item.id in self._pending_reads:
            self._confirmed_reads.add(item.id)
        merged = self._monotonic(current, item)
        if not current.read and merged.read:
            self._unread = max(0, self._unread - 1)
            notification_events_total.labels(FEED, "read").inc()
        self._entries[item.id] = merged
        self._notify()

    def _on_status(self, event: StatusChanged) -> None:
        if event.status is StreamStatus.CHANNEL_ERROR:
            logger.warning("Notification stream error; reconnecting", extra={"user_id": self.user_id})
            self._needs_reload = True
            if self._resubscribe_task is None or self._resubscribe_task.done():
                self._resubscribe_task = asyncio.create_task(self._resubscribe_later())
        elif event.status is StreamStatus.SUBSCRIBED and self._needs_reload:
            self._needs_reload = False
            task = asyncio.create_task(self.load_notifications())
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        self._notify()

    async def _resubscribe_later(self) -> None:
        await asyncio.sleep(self._settings.realtime_resubscribe_delay_seconds)
        self._resubscribe_task = None
        handle = self._handle
        if not self._closed and handle is not None and handle.status is StreamStatus.CHANNEL_ERROR:
            await self._client.resubscribe(handle)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _parse(self, row: dict[str, Any]) -> Notification | None:
        try:
            return Notification.model_validate(row)
        except ValidationError:
            logger.warning("Dropped malformed notification", extra={"user_id": self.user_id})
            realtime_dropped_events_total.labels("malformed").inc()
            return None

    @staticmethod
    def _monotonic(current: Notification | None, incoming: Notification) -> Notification:
        if current is not None and current.read and not incoming.read:
            return incoming.model_copy(update={"read": True})
        return incoming

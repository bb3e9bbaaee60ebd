"""Process-local persistence gateway used for development and tests."""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Sequence

from judgeline.realtime.gateway import (
    ANY_EVENT,
    PRESENCE_EVENTS,
    PRESENCE_JOIN,
    PRESENCE_LEAVE,
    PRESENCE_SYNC,
    ChangeHandler,
    ChangeType,
    ChannelHandler,
    GatewayError,
    RowFilter,
    StatusCallback,
    matches_all,
)
from judgeline.realtime.transport import Subscription

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Column defaults applied on insert, mirroring the ORM models
_DEFAULTS: dict[str, dict[str, Any]] = {
    "profiles": {"display_name": None, "avatar_url": None, "is_judge": False},
    "conversations": {"status": "active", "ended_at": None, "last_message_at": None},
    "messages": {"content": None, "metadata": None, "message_type": "text", "read_at": None},
    "notifications": {"body": "", "data": None, "read": False},
    "reward_notifications": {"description": "", "points": None, "rarity": "common", "data": None, "read": False},
}
_TIMESTAMP_COLUMNS: dict[str, str] = {"conversations": "started_at"}


@dataclass(slots=True)
class _TableSubscriber:
    table: str
    handler: ChangeHandler
    filters: tuple[RowFilter, ...]
    events: frozenset[ChangeType]
    on_status: StatusCallback | None
    active: bool = True


@dataclass(slots=True)
class _Topic:
    channels: list["_MemoryChannel"] = field(default_factory=list)
    presence: dict[str, dict[str, Any]] = field(default_factory=dict)


class InMemoryGateway:
    """Keeps tables in dictionaries and fans changes out as asyncio tasks.

    Delivery is asynchronous like a real backend: a write returns before its
    change notification reaches subscribers. ``drain()`` waits for every
    scheduled delivery, including deliveries scheduled by handlers.
    """

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._subscribers: list[_TableSubscriber] = []
        self._topics: dict[str, _Topic] = {}
        self._pending: set[asyncio.Task[Any]] = set()
        self._faults: dict[tuple[str, str], str] = {}
        self.offline = False

    # ------------------------------------------------------------------
    # Test and development helpers
    # ------------------------------------------------------------------
    def inject_fault(self, operation: str, table: str = "*", message: str = "Injected failure") -> None:
        """Make ``operation`` ("select", "insert", ...) on ``table`` raise :class:`GatewayError`."""

        self._faults[(operation, table)] = message

    def clear_faults(self) -> None:
        self._faults.clear()

    def rows(self, table: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(row) for row in self._tables.get(table, {}).values()]

    def seed(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """Store a row without emitting a change notification."""

        stored = self._prepare(table, row)
        self._tables.setdefault(table, {})[stored["id"]] = stored
        return copy.deepcopy(stored)

    def emit(self, table: str, change: ChangeType, row: dict[str, Any]) -> None:
        """Deliver a change notification without touching the stored rows."""

        self._fan_out(table, change, row)

    def emit_status(self, status: str, detail: str | None = None) -> None:
        """Report a connection transition (``"error"``/``"recovered"``) to every subscriber."""

        for subscriber in list(self._subscribers):
            if subscriber.active and subscriber.on_status is not None:
                subscriber.on_status(status, detail)

    def subscriber_count(self, table: str | None = None) -> int:
        return sum(1 for item in self._subscribers if item.active and (table is None or item.table == table))

    def channel_count(self, topic: str) -> int:
        entry = self._topics.get(topic)
        return len(entry.channels) if entry else 0

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Row access
    # ------------------------------------------------------------------
    async def select(
        self,
        table: str,
        *,
        filters: Sequence[RowFilter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        self._check("select", table)
        rows = [row for row in self._tables.get(table, {}).values() if matches_all(filters, row)]
        if order_by is not None:
            present = [row for row in rows if row.get(order_by) is not None]
            missing = [row for row in rows if row.get(order_by) is None]
            present.sort(key=lambda row: row[order_by], reverse=descending)
            rows = present + missing
        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(row) for row in rows]

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        self._check("insert", table)
        stored = self._prepare(table, row)
        bucket = self._tables.setdefault(table, {})
        if stored["id"] in bucket:
            raise GatewayError(f"Duplicate key '{stored['id']}' in table '{table}'")
        bucket[stored["id"]] = stored
        self._fan_out(table, ChangeType.INSERT, stored)
        return copy.deepcopy(stored)

    async def update(
        self, table: str, values: dict[str, Any], *, filters: Sequence[RowFilter]
    ) -> list[dict[str, Any]]:
        self._check("update", table)
        changed: list[dict[str, Any]] = []
        for row in self._tables.get(table, {}).values():
            if not matches_all(filters, row):
                continue
            row.update(self._plain(values))
            changed.append(copy.deepcopy(row))
            self._fan_out(table, ChangeType.UPDATE, row)
        return changed

    async def delete(self, table: str, *, filters: Sequence[RowFilter]) -> int:
        self._check("delete", table)
        bucket = self._tables.get(table, {})
        doomed = [key for key, row in bucket.items() if matches_all(filters, row)]
        for key in doomed:
            del bucket[key]
        return len(doomed)

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------
    async def subscribe(
        self,
        table: str,
        handler: ChangeHandler,
        *,
        filters: Sequence[RowFilter] = (),
        events: Sequence[ChangeType] = (ChangeType.INSERT, ChangeType.UPDATE),
        on_status: StatusCallback | None = None,
    ) -> Subscription:
        self._check("subscribe", table)
        subscriber = _TableSubscriber(
            table=table,
            handler=handler,
            filters=tuple(filters),
            events=frozenset(events),
            on_status=on_status,
        )
        self._subscribers.append(subscriber)

        async def cleanup() -> None:
            subscriber.active = False
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return Subscription(f"memory:{table}", cleanup)

    def channel(self, topic: str) -> "_MemoryChannel":
        return _MemoryChannel(self, topic)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _check(self, operation: str, table: str) -> None:
        if self.offline:
            raise GatewayError("Gateway is offline")
        message = self._faults.get((operation, table)) or self._faults.get((operation, "*"))
        if message is not None:
            raise GatewayError(message)

    @staticmethod
    def _plain(values: dict[str, Any]) -> dict[str, Any]:
        plain: dict[str, Any] = {}
        for key, value in values.items():
            plain[key] = value.value if isinstance(value, Enum) else value
        return copy.deepcopy(plain)

    def _prepare(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        stored = dict(_DEFAULTS.get(table, {}))
        stored.update(self._plain(row))
        if stored.get("id") is None:
            stored["id"] = str(uuid.uuid4())
        timestamp = _TIMESTAMP_COLUMNS.get(table, "created_at")
        if stored.get(timestamp) is None:
            stored[timestamp] = _utcnow()
        return stored

    def _fan_out(self, table: str, change: ChangeType, row: dict[str, Any]) -> None:
        for subscriber in list(self._subscribers):
            if not subscriber.active or subscriber.table != table or change not in subscriber.events:
                continue
            if not matches_all(subscriber.filters, row):
                continue
            self._schedule(self._deliver_change(subscriber, change, copy.deepcopy(row)))

    async def _deliver_change(self, subscriber: _TableSubscriber, change: ChangeType, row: dict[str, Any]) -> None:
        if not subscriber.active:
            return
        try:
            await subscriber.handler(change, row)
        except Exception:
            logger.exception("Change handler failed", extra={"table": subscriber.table})

    def _schedule(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _topic(self, topic: str) -> _Topic:
        return self._topics.setdefault(topic, _Topic())


class _MemoryChannel:
    """Presence and broadcast channel backed by the gateway's topic registry."""

    def __init__(self, gateway: InMemoryGateway, topic: str) -> None:
        self._gateway = gateway
        self._topic_name = topic
        self._key = uuid.uuid4().hex
        self._handlers: list[tuple[str, ChannelHandler]] = []
        self._joined = False
        self._tracked = False

    @property
    def topic(self) -> str:
        return self._topic_name

    def on(self, event: str, handler: ChannelHandler) -> None:
        self._handlers.append((event, handler))

    async def subscribe(self) -> None:
        self._gateway._check("channel", self._topic_name)
        if self._joined:
            return
        self._gateway._topic(self._topic_name).channels.append(self)
        self._joined = True

    async def track(self, payload: dict[str, Any]) -> None:
        self._require_joined()
        entry = self._gateway._topic(self._topic_name)
        entry.presence[self._key] = copy.deepcopy(payload)
        self._tracked = True
        self._publish_presence(PRESENCE_JOIN, payload)

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        self._require_joined()
        if event in PRESENCE_EVENTS:
            raise GatewayError(f"Event name '{event}' is reserved")
        for channel in list(self._gateway._topic(self._topic_name).channels):
            if channel is not self:
                channel._deliver(event, payload)

    async def unsubscribe(self) -> None:
        if not self._joined:
            return
        self._joined = False
        entry = self._gateway._topic(self._topic_name)
        if self in entry.channels:
            entry.channels.remove(self)
        if self._tracked:
            self._tracked = False
            payload = entry.presence.pop(self._key, {})
            self._publish_presence(PRESENCE_LEAVE, payload)
        if not entry.channels and not entry.presence:
            self._gateway._topics.pop(self._topic_name, None)

    def _require_joined(self) -> None:
        if not self._joined:
            raise GatewayError(f"Channel '{self._topic_name}' is not subscribed")
        self._gateway._check("channel", self._topic_name)

    def _publish_presence(self, event: str, payload: dict[str, Any]) -> None:
        entry = self._gateway._topic(self._topic_name)
        members = {key: copy.deepcopy(value) for key, value in entry.presence.items()}
        for channel in list(entry.channels):
            channel._deliver(event, {"key": self._key, "payload": copy.deepcopy(payload)})
            channel._deliver(PRESENCE_SYNC, {"members": members})

    def _deliver(self, event: str, payload: dict[str, Any]) -> None:
        for name, handler in list(self._handlers):
            if name in (event, ANY_EVENT):
                self._gateway._schedule(self._invoke(handler, event, copy.deepcopy(payload)))

    async def _invoke(self, handler: ChannelHandler, event: str, payload: dict[str, Any]) -> None:
        if not self._joined:
            return
        try:
            await handler(event, payload)
        except Exception:
            logger.exception("Channel handler failed", extra={"topic": self._topic_name, "event": event})

"""Persistence gateway over SQLAlchemy with change feeds on the realtime transport."""

from __future__ import annotations

import logging
import uuid
from enum import Enum
from typing import Any, Sequence

import anyio
from sqlalchemy import Table, delete, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.database import session_scope
from app.models import TABLES
from app.monitoring.metrics import realtime_events_total, realtime_publish_errors_total
from judgeline.realtime.gateway import (
    ANY_EVENT,
    PRESENCE_EVENTS,
    PRESENCE_JOIN,
    PRESENCE_LEAVE,
    PRESENCE_SYNC,
    ChangeHandler,
    ChangeType,
    ChannelHandler,
    FilterOp,
    GatewayError,
    RowFilter,
    StatusCallback,
    matches_all,
)
from judgeline.realtime.transport import (
    CHANGES_TOPIC,
    CHANNEL_TOPIC,
    RedisNATSTransport,
    Subscription,
    TransportUnavailableError,
)

logger = logging.getLogger(__name__)


def _row_to_dict(mapping: Any) -> dict[str, Any]:
    row: dict[str, Any] = {}
    for key, value in mapping.items():
        row[key] = value.value if isinstance(value, Enum) else value
    return row


class SQLGateway:
    """Stores rows through SQLAlchemy and announces changes on the broker.

    Sessions are synchronous and run in worker threads. Every successful
    insert or update is published to ``changes.<table>``; subscribers on any
    node filter those messages locally.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        transport: RedisNATSTransport,
        *,
        tables: dict[str, Any] | None = None,
        serialize: bool = False,
    ) -> None:
        self._session_factory = session_factory
        self._transport = transport
        self._serialize = serialize
        self._limiter: anyio.CapacityLimiter | None = None
        self._tables: dict[str, Table] = {
            name: model.__table__ for name, model in (tables or TABLES).items()
        }

    def _table(self, name: str) -> Table:
        try:
            return self._tables[name]
        except KeyError:
            raise GatewayError(f"Unknown table '{name}'") from None

    @staticmethod
    def _clauses(table: Table, filters: Sequence[RowFilter]) -> list[Any]:
        clauses = []
        for item in filters:
            if item.column not in table.c:
                raise GatewayError(f"Unknown column '{item.column}' on '{table.name}'")
            column = table.c[item.column]
            if item.op is FilterOp.IN:
                clauses.append(column.in_(list(item.value)))
            else:
                clauses.append(column == item.value)
        return clauses

    async def _run(self, func: Any, *args: Any) -> Any:
        # A shared SQLite connection must only be used by one worker at a time.
        if self._serialize and self._limiter is None:
            self._limiter = anyio.CapacityLimiter(1)
        try:
            return await anyio.to_thread.run_sync(func, *args, limiter=self._limiter)
        except SQLAlchemyError as exc:
            logger.warning("Database operation failed", exc_info=True)
            raise GatewayError(str(exc)) from exc

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
        target = self._table(table)
        statement = select(target).where(*self._clauses(target, filters))
        if order_by is not None:
            column = target.c[order_by]
            statement = statement.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            statement = statement.limit(limit)

        def run() -> list[dict[str, Any]]:
            with session_scope(self._session_factory) as session:
                return [_row_to_dict(row) for row in session.execute(statement).mappings()]

        return await self._run(run)

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        target = self._table(table)
        values = {key: value for key, value in row.items() if key in target.c}
        if values.get("id") is None:
            values["id"] = str(uuid.uuid4())

        def run() -> dict[str, Any]:
            with session_scope(self._session_factory) as session:
                session.execute(insert(target).values(**values))
                stored = session.execute(select(target).where(target.c.id == values["id"])).mappings().one()
                return _row_to_dict(stored)

        stored = await self._run(run)
        await self._announce(table, ChangeType.INSERT, [stored])
        return stored

    async def update(
        self, table: str, values: dict[str, Any], *, filters: Sequence[RowFilter]
    ) -> list[dict[str, Any]]:
        target = self._table(table)
        clauses = self._clauses(target, filters)
        changes = {key: value for key, value in values.items() if key in target.c}

        def run() -> list[dict[str, Any]]:
            with session_scope(self._session_factory) as session:
                ids = list(session.execute(select(target.c.id).where(*clauses)).scalars())
                if not ids:
                    return []
                session.execute(update(target).where(target.c.id.in_(ids)).values(**changes))
                rows = session.execute(select(target).where(target.c.id.in_(ids))).mappings()
                return [_row_to_dict(row) for row in rows]

        updated = await self._run(run)
        await self._announce(table, ChangeType.UPDATE, updated)
        return updated

    async def delete(self, table: str, *, filters: Sequence[RowFilter]) -> int:
        target = self._table(table)
        clauses = self._clauses(target, filters)

        def run() -> int:
            with session_scope(self._session_factory) as session:
                return session.execute(delete(target).where(*clauses)).rowcount or 0

        return await self._run(run)

    async def _announce(self, table: str, change: ChangeType, rows: list[dict[str, Any]]) -> None:
        for row in rows:
            try:
                await self._transport.publish(
                    f"{CHANGES_TOPIC}.{table}", {"type": change.value, "table": table, "row": row}
                )
            except TransportUnavailableError:
                # The write itself succeeded; live subscribers converge on their next reload.
                logger.warning(
                    "Change notification not published", extra={"table": table, "change": change.value}
                )
                realtime_publish_errors_total.labels(CHANGES_TOPIC, "transport", "unavailable").inc()
                return
            realtime_events_total.labels(table, "out", change.value.lower()).inc()

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
        self._table(table)
        wanted = frozenset(events)
        filters = tuple(filters)

        async def on_message(payload: dict[str, Any]) -> None:
            try:
                change = ChangeType(payload.get("type"))
            except ValueError:
                logger.warning("Discarded change with unknown type", extra={"table": table})
                return
            row = payload.get("row")
            if change not in wanted or not isinstance(row, dict) or not matches_all(filters, row):
                return
            await handler(change, row)

        inner = await self._transport.subscribe(f"{CHANGES_TOPIC}.{table}", on_message)
        remove_listener = self._transport.add_status_listener(on_status) if on_status else None

        async def cleanup() -> None:
            if remove_listener is not None:
                remove_listener()
            await inner.close()

        return Subscription(inner.name, cleanup)

    def channel(self, topic: str) -> "_TransportChannel":
        return _TransportChannel(self._transport, topic)


class _TransportChannel:
    """Presence/broadcast channel multiplexed over ``channel.<topic>`` on the broker."""

    def __init__(self, transport: RedisNATSTransport, topic: str) -> None:
        self._transport = transport
        self._topic_name = topic
        self._key = uuid.uuid4().hex
        self._handlers: list[tuple[str, ChannelHandler]] = []
        self._subscription: Subscription | None = None
        self._tracked = False

    @property
    def topic(self) -> str:
        return self._topic_name

    @property
    def _broker_topic(self) -> str:
        return f"{CHANNEL_TOPIC}.{self._topic_name}"

    def on(self, event: str, handler: ChannelHandler) -> None:
        self._handlers.append((event, handler))

    async def subscribe(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = await self._transport.subscribe(self._broker_topic, self._on_message)

    async def track(self, payload: dict[str, Any]) -> None:
        self._require_subscribed()
        members = await self._transport.presence_update(self._topic_name, self._key, payload)
        self._tracked = True
        await self._publish(PRESENCE_JOIN, {"key": self._key, "payload": payload})
        await self._publish(PRESENCE_SYNC, {"members": members})

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        self._require_subscribed()
        if event in PRESENCE_EVENTS:
            raise GatewayError(f"Event name '{event}' is reserved")
        await self._publish(event, payload)

    async def unsubscribe(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        if self._tracked:
            self._tracked = False
            try:
                members = await self._transport.presence_update(self._topic_name, self._key, None)
                await self._publish(PRESENCE_LEAVE, {"key": self._key, "payload": {}})
                await self._publish(PRESENCE_SYNC, {"members": members})
            except TransportUnavailableError:
                logger.warning("Presence entry not released", extra={"topic": self._topic_name})
        await subscription.close()

    def _require_subscribed(self) -> None:
        if self._subscription is None:
            raise GatewayError(f"Channel '{self._topic_name}' is not subscribed")

    async def _publish(self, event: str, payload: dict[str, Any]) -> None:
        try:
            await self._transport.publish(
                self._broker_topic, {"event": event, "payload": payload, "sender": self._key}
            )
        except TransportUnavailableError as exc:
            raise GatewayError(f"Channel '{self._topic_name}' is unavailable") from exc

    async def _on_message(self, message: dict[str, Any]) -> None:
        event = message.get("event")
        if not isinstance(event, str):
            return
        # Broadcasts are not echoed back to the sender; presence is.
        if event not in PRESENCE_EVENTS and message.get("sender") == self._key:
            return
        payload = message.get("payload") or {}
        for name, handler in list(self._handlers):
            if name not in (event, ANY_EVENT):
                continue
            try:
                await handler(event, payload)
            except Exception:
                logger.exception("Channel handler failed", extra={"topic": self._topic_name, "event": event})

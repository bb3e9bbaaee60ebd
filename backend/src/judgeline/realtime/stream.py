"""Event stream client: one subscription handle per topic, delivered as an async iterator."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Sequence

from pydantic import ValidationError

from app.monitoring.metrics import (
    realtime_dropped_events_total,
    realtime_events_total,
    realtime_stream_errors_total,
    realtime_subscriptions,
)

from .events import (
    Broadcast,
    PresenceJoin,
    PresenceLeave,
    PresenceSync,
    RowInserted,
    RowUpdated,
    StatusChanged,
    StreamEvent,
    StreamStatus,
)
from .gateway import (
    ANY_EVENT,
    PRESENCE_JOIN,
    PRESENCE_LEAVE,
    PRESENCE_SYNC,
    ChangeType,
    GatewayError,
    PersistenceGateway,
    RealtimeChannel,
    RowFilter,
)
from .transport import Subscription, TransportUnavailableError

logger = logging.getLogger(__name__)

_ESTABLISH_ERRORS = (GatewayError, TransportUnavailableError, OSError)


@dataclass(frozen=True, slots=True)
class TableFilter:
    """One change feed of a stream: a table, a row predicate and the change types wanted."""

    table: str
    filters: tuple[RowFilter, ...] = ()
    events: tuple[ChangeType, ...] = (ChangeType.INSERT, ChangeType.UPDATE)


_CLOSED = object()


class StreamHandle:
    """Push-based, unbounded event sequence for a single topic.

    Iteration can be interrupted and resumed; events queue up in between. After
    the handle is closed nothing else is yielded, even if already queued.
    """

    def __init__(self, topic: str, filters: Sequence[TableFilter]) -> None:
        self.topic = topic
        self.filters = tuple(filters)
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._status = StreamStatus.CONNECTING
        self._subscriptions: list[Subscription] = []
        self._channel: RealtimeChannel | None = None
        self._task: asyncio.Task[None] | None = None
        self._counted = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def status(self) -> StreamStatus:
        return self._status

    def _push(self, event: StreamEvent) -> None:
        if self._closed:
            return
        if isinstance(event, StatusChanged):
            self._status = event.status
        self._queue.put_nowait(event)

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._status = StreamStatus.CLOSED
        self._queue.put_nowait(_CLOSED)

    def pending(self) -> int:
        return self._queue.qsize()

    def __aiter__(self) -> "StreamHandle":
        return self

    async def __anext__(self) -> StreamEvent:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED or self._closed:
            raise StopAsyncIteration
        return item

    async def track(self, payload: dict[str, Any]) -> None:
        if self._channel is None or self._closed:
            raise GatewayError(f"Stream '{self.topic}' is not subscribed")
        await self._channel.track(payload)

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        if self._channel is None or self._closed:
            raise GatewayError(f"Stream '{self.topic}' is not subscribed")
        await self._channel.send(event, payload)


class EventStreamClient:
    """Opens topic subscriptions on the persistence gateway and exposes typed events."""

    def __init__(self, gateway: PersistenceGateway) -> None:
        self._gateway = gateway
        self._handles: set[StreamHandle] = set()

    def subscribe(self, topic: str, filters: Sequence[TableFilter] = ()) -> StreamHandle:
        """Register interest in ``topic``; establishment happens in the background."""

        handle = StreamHandle(topic, filters)
        self._handles.add(handle)
        handle._push(StatusChanged(status=StreamStatus.CONNECTING))
        handle._task = asyncio.create_task(self._establish(handle), name=f"stream-{topic}")
        return handle

    async def unsubscribe(self, handle: StreamHandle) -> None:
        """Stop delivery immediately and release the handle's resources; idempotent."""

        was_open = not handle.closed
        handle._close()
        self._handles.discard(handle)
        task = handle._task
        handle._task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._release(handle)
        if was_open:
            logger.debug("Stream unsubscribed", extra={"topic": handle.topic})

    async def resubscribe(self, handle: StreamHandle) -> None:
        """Re-establish a handle after a channel error, keeping its queued events."""

        if handle.closed:
            return
        task = handle._task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._release(handle)
        if handle.closed:
            return
        handle._push(StatusChanged(status=StreamStatus.CONNECTING))
        handle._task = asyncio.create_task(self._establish(handle), name=f"stream-{handle.topic}")

    async def publish(self, topic: str, event: str, payload: dict[str, Any]) -> bool:
        """Best-effort broadcast through any open handle on ``topic``."""

        for handle in list(self._handles):
            if handle.topic != topic or handle.closed or handle._channel is None:
                continue
            try:
                await handle._channel.send(event, payload)
            except Exception:
                logger.warning(
                    "Broadcast failed", extra={"topic": topic, "event": event}, exc_info=True
                )
                realtime_stream_errors_total.labels("publish").inc()
                return False
            realtime_events_total.labels("broadcast", "out", event).inc()
            return True
        logger.debug("No open stream for broadcast", extra={"topic": topic, "event": event})
        return False

    async def close(self) -> None:
        for handle in list(self._handles):
            await self.unsubscribe(handle)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _establish(self, handle: StreamHandle) -> None:
        try:
            for table_filter in handle.filters:
                subscription = await self._gateway.subscribe(
                    table_filter.table,
                    partial(self._on_change, handle, table_filter.table),
                    filters=table_filter.filters,
                    events=table_filter.events,
                    on_status=partial(self._on_status, handle),
                )
                handle._subscriptions.append(subscription)
                if handle.closed:
                    break
            if not handle.closed:
                channel = self._gateway.channel(handle.topic)
                channel.on(ANY_EVENT, partial(self._on_channel_event, handle))
                handle._channel = channel
                await channel.subscribe()
        except _ESTABLISH_ERRORS as exc:
            logger.warning(
                "Stream subscription failed",
                extra={"topic": handle.topic},
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            realtime_stream_errors_total.labels("subscribe").inc()
            await self._release(handle)
            handle._push(StatusChanged(status=StreamStatus.CHANNEL_ERROR, detail=str(exc)))
            return
        if handle.closed:
            await self._release(handle)
            return
        realtime_subscriptions.labels("stream").inc()
        handle._counted = True
        handle._push(StatusChanged(status=StreamStatus.SUBSCRIBED))

    async def _release(self, handle: StreamHandle) -> None:
        subscriptions, handle._subscriptions = handle._subscriptions, []
        channel, handle._channel = handle._channel, None
        for subscription in subscriptions:
            try:
                await subscription.close()
            except Exception:
                logger.warning(
                    "Failed to close change subscription",
                    extra={"topic": handle.topic, "subscription": subscription.name},
                    exc_info=True,
                )
        if channel is not None:
            try:
                await channel.unsubscribe()
            except Exception:
                logger.warning(
                    "Failed to leave channel", extra={"topic": handle.topic}, exc_info=True
                )
        if handle._counted:
            handle._counted = False
            realtime_subscriptions.labels("stream").dec()

    async def _on_change(
        self, handle: StreamHandle, table: str, change: ChangeType, row: dict[str, Any]
    ) -> None:
        if handle.closed:
            return
        try:
            if change is ChangeType.INSERT:
                event: StreamEvent = RowInserted(table=table, row=row)
            else:
                event = RowUpdated(table=table, row=row)
        except ValidationError:
            logger.warning("Dropped malformed change event", extra={"topic": handle.topic, "table": table})
            realtime_dropped_events_total.labels("malformed").inc()
            return
        realtime_events_total.labels(table, "in", change.value.lower()).inc()
        handle._push(event)

    async def _on_channel_event(self, handle: StreamHandle, event: str, payload: dict[str, Any]) -> None:
        if handle.closed:
            return
        try:
            if event == PRESENCE_SYNC:
                item: StreamEvent = PresenceSync(members=payload.get("members") or {})
            elif event == PRESENCE_JOIN:
                item = PresenceJoin(key=payload.get("key"), payload=payload.get("payload") or {})
            elif event == PRESENCE_LEAVE:
                item = PresenceLeave(key=payload.get("key"), payload=payload.get("payload") or {})
            else:
                item = Broadcast(event=event, payload=payload)
        except ValidationError:
            logger.warning("Dropped malformed channel event", extra={"topic": handle.topic, "event": event})
            realtime_dropped_events_total.labels("malformed").inc()
            return
        realtime_events_total.labels("channel", "in", event).inc()
        handle._push(item)

    def _on_status(self, handle: StreamHandle, status: str, detail: str | None) -> None:
        if handle.closed:
            return
        if status == "error":
            realtime_stream_errors_total.labels("connection").inc()
            handle._push(StatusChanged(status=StreamStatus.CHANNEL_ERROR, detail=detail))
        elif status == "recovered":
            handle._push(StatusChanged(status=StreamStatus.SUBSCRIBED, detail=detail))

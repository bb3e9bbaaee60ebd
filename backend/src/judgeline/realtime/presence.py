"""Presence and typing state for one conversation topic."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from app.monitoring.metrics import realtime_events_total, realtime_publish_errors_total

from .events import Broadcast, PresenceJoin, PresenceLeave, PresenceSync, StatusChanged, StreamStatus
from .observers import ActionResult, ChangeNotifier
from .stream import EventStreamClient, StreamHandle

logger = logging.getLogger(__name__)

TYPING_EVENT = "typing"
STOP_TYPING_EVENT = "stop_typing"
DEFAULT_TYPING_TTL = 3.0


def presence_topic(conversation_id: str) -> str:
    return f"presence-conversation-{conversation_id}"


@dataclass(frozen=True, slots=True)
class PresenceSnapshot:
    online: frozenset[str]
    typing: frozenset[str]
    status: StreamStatus


class PresenceTracker(ChangeNotifier):
    """Tracks who else is connected to a conversation and who is composing.

    Membership is replaced wholesale on every sync event; join and leave
    events are only logged. Typing is kept per sending device, so a user typing
    on two devices shows up once and stays until ``typing_ttl`` seconds after the
    most recent signal from any of them.
    """

    def __init__(
        self,
        client: EventStreamClient,
        conversation_id: str,
        user_id: str,
        *,
        typing_ttl: float = DEFAULT_TYPING_TTL,
    ) -> None:
        super().__init__()
        self._client = client
        self._conversation_id = conversation_id
        self._user_id = str(user_id)
        self._ttl = typing_ttl
        self._handle: StreamHandle | None = None
        self._pump: asyncio.Task[None] | None = None
        self._present: frozenset[str] = frozenset()
        self._device_id = uuid.uuid4().hex
        self._typing: dict[str, dict[str, asyncio.TimerHandle]] = {}
        self._auto_stop: asyncio.TimerHandle | None = None
        self._tracked = False
        self._closed = False
        self._publish_warning_logged = False
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def topic(self) -> str:
        return presence_topic(self._conversation_id)

    @property
    def present_users(self) -> frozenset[str]:
        """Everyone in the last sync, the local user included."""
        return self._present

    @property
    def online_users(self) -> frozenset[str]:
        return self._present - {self._user_id}

    @property
    def typing_users(self) -> frozenset[str]:
        return frozenset(self._typing)

    @property
    def status(self) -> StreamStatus:
        return self._handle.status if self._handle is not None else StreamStatus.CLOSED

    def snapshot(self) -> PresenceSnapshot:
        return PresenceSnapshot(online=self.online_users, typing=self.typing_users, status=self.status)

    async def open(self) -> None:
        if self._closed:
            raise RuntimeError("Presence tracker is closed")
        if self._handle is not None:
            return
        self._handle = self._client.subscribe(self.topic)
        self._pump = asyncio.create_task(self._consume(self._handle), name=f"presence-{self._conversation_id}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cancel_auto_stop()
        for devices in self._typing.values():
            for timer in devices.values():
                timer.cancel()
        self._typing.clear()
        for task in list(self._background):
            task.cancel()
        for task in list(self._background):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._background.clear()
        self._present = frozenset()
        handle, self._handle = self._handle, None
        if handle is not None:
            await self._client.unsubscribe(handle)
        pump, self._pump = self._pump, None
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump

    async def resubscribe(self) -> None:
        if self._handle is not None and not self._closed:
            self._tracked = False
            await self._client.resubscribe(self._handle)

    # ------------------------------------------------------------------
    # Local typing signals
    # ------------------------------------------------------------------
    async def notify_typing(self) -> ActionResult[None]:
        """Broadcast that the local user is typing; debounced auto-stop after the TTL."""

        if self._closed or self._handle is None:
            return ActionResult.failure("Presence channel is not open")
        self._cancel_auto_stop()
        loop = asyncio.get_running_loop()
        self._auto_stop = loop.call_later(self._ttl, self._schedule_auto_stop)
        sent = await self._broadcast(TYPING_EVENT)
        return ActionResult.success() if sent else ActionResult.failure("Typing signal not delivered")

    async def stop_typing(self) -> ActionResult[None]:
        if self._closed or self._handle is None:
            return ActionResult.failure("Presence channel is not open")
        self._cancel_auto_stop()
        sent = await self._broadcast(STOP_TYPING_EVENT)
        return ActionResult.success() if sent else ActionResult.failure("Stop-typing signal not delivered")

    def clear_typing(self, user_id: str) -> None:
        """Drop ``user_id`` from the typing set, e.g. once their message arrived."""

        devices = self._typing.pop(str(user_id), None)
        if devices is not None:
            for timer in devices.values():
                timer.cancel()
            self._notify()

    def _cancel_auto_stop(self) -> None:
        if self._auto_stop is not None:
            self._auto_stop.cancel()
            self._auto_stop = None

    def _schedule_auto_stop(self) -> None:
        self._auto_stop = None
        if not self._closed:
            task = asyncio.create_task(self._broadcast(STOP_TYPING_EVENT))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _broadcast(self, event: str) -> bool:
        sent = await self._client.publish(
            self.topic, event, {"user_id": self._user_id, "device_id": self._device_id}
        )
        if sent:
            self._publish_warning_logged = False
            return True
        if not self._publish_warning_logged:
            logger.warning(
                "Presence channel unavailable while broadcasting %s; operating in local-only mode",
                event,
            )
            self._publish_warning_logged = True
        realtime_publish_errors_total.labels("typing", "stream", "unavailable").inc()
        return False

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------
    async def _consume(self, handle: StreamHandle) -> None:
        async for event in handle:
            try:
                await self._dispatch(event)
            except Exception:
                logger.exception("Failed to process presence event", extra={"topic": self.topic})

    async def _dispatch(self, event: Any) -> None:
        if isinstance(event, StatusChanged):
            if event.status is StreamStatus.SUBSCRIBED and not self._tracked:
                await self._track_self()
            elif event.status is StreamStatus.CHANNEL_ERROR:
                self._tracked = False
            self._notify()
        elif isinstance(event, PresenceSync):
            self._present = frozenset(event.user_ids())
            realtime_events_total.labels("presence", "in", "sync").inc()
            self._notify()
        elif isinstance(event, (PresenceJoin, PresenceLeave)):
            logger.debug(
                "Presence %s", event.kind, extra={"topic": self.topic, "key": event.key}
            )
        elif isinstance(event, Broadcast):
            self._on_broadcast(event)

    async def _track_self(self) -> None:
        handle = self._handle
        if handle is None or handle.closed:
            return
        payload = {"user_id": self._user_id, "online_at": datetime.now(timezone.utc).isoformat()}
        try:
            await handle.track(payload)
        except Exception:
            logger.warning("Failed to announce presence", extra={"topic": self.topic}, exc_info=True)
            realtime_publish_errors_total.labels("presence", "stream", "error").inc()
            return
        self._tracked = True

    def _on_broadcast(self, event: Broadcast) -> None:
        user_id = event.payload.get("user_id")
        if user_id is None:
            return
        user_id = str(user_id)
        if user_id == self._user_id:
            return
        device_id = str(event.payload.get("device_id") or user_id)
        if event.event == TYPING_EVENT:
            was_typing = user_id in self._typing
            devices = self._typing.setdefault(user_id, {})
            previous = devices.pop(device_id, None)
            if previous is not None:
                previous.cancel()
            loop = asyncio.get_running_loop()
            devices[device_id] = loop.call_later(self._ttl, self._expire_typing, user_id, device_id)
            if not was_typing:
                self._notify()
        elif event.event == STOP_TYPING_EVENT:
            if "device_id" in event.payload:
                self._expire_typing(user_id, device_id)
            else:
                self.clear_typing(user_id)

    def _expire_typing(self, user_id: str, device_id: str) -> None:
        devices = self._typing.get(user_id)
        if devices is None:
            return
        timer = devices.pop(device_id, None)
        if timer is not None:
            timer.cancel()
        if not devices:
            del self._typing[user_id]
            self._notify()

"""Conversation view: bulk load, live merge and optimistic sends for one conversation."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import ValidationError

from app.config import Settings, get_settings
from app.models.enums import ConversationStatus, MessageType
from app.monitoring.metrics import conversation_messages_total, realtime_dropped_events_total
from app.schemas import Conversation, DeliveryState, Message, SenderProfile, can_transition
from app.services.alerts import NotificationPresenter
from app.services.cards import CardLookupError, CardLookupService
from app.services.notification_factory import NotificationFactory
from judgeline.realtime.events import RowInserted, RowUpdated, StatusChanged, StreamEvent, StreamStatus
from judgeline.realtime.gateway import ChangeType, GatewayError, PersistenceGateway, RowFilter
from judgeline.realtime.observers import ActionResult, ChangeNotifier
from judgeline.realtime.optimistic import OptimisticLedger, ProvisionalEntry
from judgeline.realtime.presence import PresenceTracker
from judgeline.realtime.stream import EventStreamClient, StreamHandle, TableFilter

logger = logging.getLogger(__name__)

SendResult = ActionResult[Message]

COMPLETION_MESSAGE = "Question marked as resolved by the judge."


def conversation_topic(conversation_id: str) -> str:
    return f"conversation-{conversation_id}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ViewState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    LIVE = "live"
    CLOSED = "closed"


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class SynchronizerStateError(RuntimeError):
    """Raised when a conversation view is driven through an invalid transition."""


@dataclass(frozen=True, slots=True)
class ConversationSnapshot:
    state: ViewState
    connection: ConnectionState
    conversation: Conversation | None
    messages: tuple[Message, ...]
    online: frozenset[str]
    typing: frozenset[str]


class ConversationSynchronizer(ChangeNotifier):
    """Single time-ordered view of a conversation's messages.

    The view is built from a bulk load, live change events and locally
    originated sends. Live events that arrive while the bulk load is in flight
    are buffered and merged afterwards. Messages are keyed by id, so duplicates
    from any of the three sources collapse into one entry, and the exposed list
    is always sorted by ``(created_at, id)``.

    Locally sent messages appear immediately with ``delivery=pending`` and are
    reconciled exactly once with their persisted row, whichever of the write
    response or the live echo arrives first.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        conversation_id: str,
        user_id: str,
        *,
        client: EventStreamClient | None = None,
        presence: bool = True,
        presenter: NotificationPresenter | None = None,
        cards: CardLookupService | None = None,
        notifications: NotificationFactory | None = None,
        settings: Settings | None = None,
    ) -> None:
        super().__init__()
        self._settings = settings or get_settings()
        self._gateway = gateway
        self.conversation_id = str(conversation_id)
        self.user_id = str(user_id)
        self._owns_client = client is None
        self._client = client or EventStreamClient(gateway)
        self._presenter = presenter or NotificationPresenter(os_permission=self._settings.notification_os_permission)
        self._cards = cards
        self._notifications = notifications
        self._tracker = (
            PresenceTracker(
                self._client,
                self.conversation_id,
                self.user_id,
                typing_ttl=self._settings.realtime_typing_ttl_seconds,
            )
            if presence
            else None
        )
        self._ledger: OptimisticLedger[Message] = OptimisticLedger(
            tolerance=timedelta(seconds=self._settings.optimistic_match_window_seconds),
            timeout=self._settings.optimistic_timeout_seconds,
            on_expire=self._on_provisional_expired,
            label="message",
        )

        self._state = ViewState.UNINITIALIZED
        self._connection = ConnectionState.CLOSED
        self._conversation: Conversation | None = None
        self._messages: dict[str, Message] = {}
        self._senders: dict[str, SenderProfile] = {}
        self._receipts: set[str] = set()
        self._buffer: list[StreamEvent] = []
        self._handle: StreamHandle | None = None
        self._pump: asyncio.Task[None] | None = None
        self._established = asyncio.Event()
        self._needs_reload = False
        self._resubscribe_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._remove_tracker_listener = (
            self._tracker.add_listener(lambda _snapshot: self._notify()) if self._tracker else None
        )

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------
    @property
    def state(self) -> ViewState:
        return self._state

    @property
    def connection(self) -> ConnectionState:
        return self._connection

    @property
    def conversation(self) -> Conversation | None:
        return self._conversation

    @property
    def messages(self) -> list[Message]:
        return sorted(self._messages.values(), key=Message.sort_key)

    @property
    def online_users(self) -> frozenset[str]:
        return self._tracker.online_users if self._tracker else frozenset()

    @property
    def typing_users(self) -> frozenset[str]:
        return self._tracker.typing_users if self._tracker else frozenset()

    @property
    def presence(self) -> PresenceTracker | None:
        return self._tracker

    def snapshot(self) -> ConversationSnapshot:
        return ConversationSnapshot(
            state=self._state,
            connection=self._connection,
            conversation=self._conversation,
            messages=tuple(self.messages),
            online=self.online_users,
            typing=self.typing_users,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def open(self) -> ActionResult[Conversation]:
        """Authorize, subscribe, bulk load and start merging live events."""

        if self._state is ViewState.CLOSED:
            raise SynchronizerStateError("Conversation view is closed")
        if self._state is not ViewState.UNINITIALIZED:
            raise SynchronizerStateError("Conversation view is already open")

        self._state = ViewState.LOADING
        try:
            rows = await self._gateway.select("conversations", filters=[RowFilter.eq("id", self.conversation_id)])
        except GatewayError as exc:
            logger.warning("Failed to load conversation", extra={"conversation_id": self.conversation_id})
            self._state = ViewState.UNINITIALIZED
            return ActionResult.failure(f"Failed to load conversation: {exc}")
        conversation = self._parse_conversation(rows[0]) if rows else None
        if conversation is None:
            self._state = ViewState.UNINITIALIZED
            return ActionResult.failure("Conversation not found")
        if not conversation.is_participant(self.user_id):
            logger.warning(
                "Rejected conversation access",
                extra={"conversation_id": self.conversation_id, "user_id": self.user_id},
            )
            self._state = ViewState.UNINITIALIZED
            return ActionResult.failure("You are not a participant of this conversation")
        self._conversation = conversation

        self._connection = ConnectionState.CONNECTING
        self._handle = self._client.subscribe(
            conversation_topic(self.conversation_id),
            [
                TableFilter("messages", (RowFilter.eq("conversation_id", self.conversation_id),)),
                TableFilter("conversations", (RowFilter.eq("id", self.conversation_id),), (ChangeType.UPDATE,)),
            ],
        )
        self._pump = asyncio.create_task(self._consume(self._handle), name=f"conversation-{self.conversation_id}")
        # Rows written before the change feed is live would otherwise be missed.
        await self._established.wait()
        if self._state is ViewState.CLOSED:
            return ActionResult.failure("Conversation view was closed")

        try:
            await self._prefetch_senders([conversation.user_id, conversation.judge_id])
            rows = await self._gateway.select(
                "messages",
                filters=[RowFilter.eq("conversation_id", self.conversation_id)],
                order_by="created_at",
            )
            if self._state is not ViewState.CLOSED:
                await self._prefetch_senders({str(row.get("sender_id")) for row in rows if row.get("sender_id")})
        except GatewayError as exc:
            logger.warning("Failed to load messages", extra={"conversation_id": self.conversation_id})
            if self._state is not ViewState.CLOSED:
                await self._release()
                self._buffer.clear()
                self._conversation = None
                self._connection = ConnectionState.CLOSED
                self._established = asyncio.Event()
                self._state = ViewState.UNINITIALIZED
            return ActionResult.failure(f"Failed to load messages: {exc}")
        if self._state is ViewState.CLOSED:
            return ActionResult.failure("Conversation view was closed")

        for row in rows:
            await self._ingest(row, source="load")
        while self._buffer:
            await self._apply(self._buffer.pop(0))
        if self._state is ViewState.CLOSED:
            return ActionResult.failure("Conversation view was closed")
        self._state = ViewState.LIVE
        logger.info(
            "Conversation view live",
            extra={"conversation_id": self.conversation_id, "messages": len(self._messages)},
        )

        if self._needs_reload and self._connection is ConnectionState.CONNECTED:
            self._needs_reload = False
            self._spawn(self._reload())
        if self._tracker is not None:
            await self._tracker.open()
        self._notify()
        return ActionResult.success(conversation)

    async def close(self) -> None:
        """Release the subscription; later events and late write results are ignored."""

        if self._state is ViewState.CLOSED:
            return
        self._state = ViewState.CLOSED
        self._connection = ConnectionState.CLOSED
        self._established.set()
        self._ledger.close()
        self._buffer.clear()
        if self._remove_tracker_listener is not None:
            self._remove_tracker_listener()
        await self._release()
        for task in list(self._background):
            task.cancel()
        for task in list(self._background):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._background.clear()
        if self._tracker is not None:
            await self._tracker.close()
        if self._owns_client:
            await self._client.close()
        logger.debug("Conversation view closed", extra={"conversation_id": self.conversation_id})

    async def _release(self) -> None:
        resubscribe, self._resubscribe_task = self._resubscribe_task, None
        if resubscribe is not None and resubscribe is not asyncio.current_task():
            resubscribe.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await resubscribe
        handle, self._handle = self._handle, None
        if handle is not None:
            await self._client.unsubscribe(handle)
        pump, self._pump = self._pump, None
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------
    def _check_writable(self) -> str | None:
        if self._state is not ViewState.LIVE or self._conversation is None:
            return "Conversation is not open"
        if not self._conversation.is_participant(self.user_id):
            return "You are not a participant of this conversation"
        if not self._conversation.is_active:
            return "Conversation is no longer active"
        return None

    async def send(
        self,
        content: str,
        metadata: dict[str, Any] | None = None,
        *,
        message_type: MessageType = MessageType.TEXT,
    ) -> SendResult:
        """Show the message immediately, then persist it."""

        text = (content or "").strip()
        if not text:
            return SendResult.failure("Message content is empty")
        problem = self._check_writable()
        if problem is not None:
            return SendResult.failure(problem)

        now = _utcnow()
        entry = self._ledger.apply((self.user_id, text), now, None)  # type: ignore[arg-type]
        provisional = Message(
            id=entry.provisional_id,
            conversation_id=self.conversation_id,
            sender_id=self.user_id,
            content=text,
            metadata=metadata,
            message_type=message_type,
            created_at=now,
            sender=self._senders.get(self.user_id),
            delivery=DeliveryState.PENDING,
        )
        self._ledger.replace_value(entry.provisional_id, provisional)
        self._messages[entry.provisional_id] = provisional
        self._notify()

        row = provisional.to_row()
        for column in ("id", "created_at", "read_at"):
            row.pop(column, None)
        try:
            stored = await self._gateway.insert("messages", row)
        except GatewayError as exc:
            if self._state is ViewState.CLOSED:
                return SendResult.failure("Conversation view was closed")
            return SendResult.failure(str(exc), self._mark_failed(entry.provisional_id, str(exc)))
        if self._state is ViewState.CLOSED:
            return SendResult.failure("Conversation view was closed")

        try:
            durable = Message.model_validate(stored)
        except ValidationError:
            # The live echo will still reconcile the provisional entry.
            logger.warning("Persisted message row is malformed", extra={"conversation_id": self.conversation_id})
            return SendResult.success(self._messages.get(entry.provisional_id, provisional))
        message = self._resolve_provisional(entry.provisional_id, durable)
        conversation_messages_total.labels("local").inc()

        await self._bump_last_message(durable.created_at)
        if self._tracker is not None:
            await self._tracker.stop_typing()
        if self._notifications is not None and self._conversation is not None:
            await self._notifications.new_message(
                self.conversation_id,
                self.user_id,
                self._conversation.counterpart_of(self.user_id),
                text,
            )
        return SendResult.success(message)

    async def send_card(self, query: str) -> SendResult:
        """Share the first card matching ``query``; falls back to plain text."""

        card = None
        if self._cards is not None and query.strip():
            try:
                card = await self._cards.first(query)
            except CardLookupError:
                logger.info("Card lookup failed; sending the query as text", extra={"query": query})
        if card is None:
            return await self.send(query)
        return await self.send(f"Card shared: {card.name}", card.to_metadata())

    async def resend(self, provisional_id: str) -> SendResult:
        """Drop a failed provisional message and send its content again."""

        message = self._messages.get(provisional_id)
        if message is None or message.delivery is not DeliveryState.FAILED:
            return SendResult.failure("Message is not awaiting a retry")
        self._ledger.discard(provisional_id)
        self._messages.pop(provisional_id, None)
        self._notify()
        return await self.send(message.content or "", message.metadata, message_type=message.message_type)

    async def complete(self) -> ActionResult[Conversation]:
        """Judge-only: end the conversation, post a system message and notify the user."""

        problem = self._check_writable()
        if problem is not None:
            return ActionResult.failure(problem)
        conversation = self._conversation
        if conversation is None or self.user_id != conversation.judge_id:
            return ActionResult.failure("Only the judge can complete this conversation")
        result = await self._transition(ConversationStatus.ENDED, {"ended_at": _utcnow()})
        if not result.ok:
            return result

        try:
            stored = await self._gateway.insert(
                "messages",
                {
                    "conversation_id": self.conversation_id,
                    "sender_id": self.user_id,
                    "content": COMPLETION_MESSAGE,
                    "message_type": MessageType.SYSTEM.value,
                },
            )
        except GatewayError:
            logger.warning("Failed to post completion message", extra={"conversation_id": self.conversation_id})
        else:
            if self._state is not ViewState.CLOSED:
                await self._ingest(stored, source="local")
                self._notify()
        if self._notifications is not None:
            await self._notifications.question_completed(
                self.conversation_id, conversation.user_id, conversation.judge_id
            )
        return result

    async def dispute(self) -> ActionResult[Conversation]:
        problem = self._check_writable()
        if problem is not None:
            return ActionResult.failure(problem)
        return await self._transition(ConversationStatus.DISPUTED, {})

    async def notify_typing(self) -> ActionResult[None]:
        if self._tracker is None or self._state is not ViewState.LIVE:
            return ActionResult.failure("Presence is not available")
        return await self._tracker.notify_typing()

    async def _transition(
        self, status: ConversationStatus, extra: dict[str, Any]
    ) -> ActionResult[Conversation]:
        try:
            rows = await self._gateway.update(
                "conversations",
                {"status": status.value, **extra},
                filters=[
                    RowFilter.eq("id", self.conversation_id),
                    RowFilter.eq("status", ConversationStatus.ACTIVE.value),
                ],
            )
        except GatewayError as exc:
            return ActionResult.failure(str(exc))
        if self._state is ViewState.CLOSED:
            return ActionResult.failure("Conversation view was closed")
        if not rows:
            return ActionResult.failure("Conversation is no longer active")
        self._merge_conversation(rows[0])
        logger.info(
            "Conversation status changed",
            extra={"conversation_id": self.conversation_id, "status": status.value},
        )
        return ActionResult.success(self._conversation)

    async def _bump_last_message(self, at: datetime) -> None:
        try:
            rows = await self._gateway.update(
                "conversations",
                {"last_message_at": at},
                filters=[RowFilter.eq("id", self.conversation_id)],
            )
        except GatewayError:
            logger.warning("Failed to update last message time", extra={"conversation_id": self.conversation_id})
            return
        if rows and self._state is not ViewState.CLOSED:
            self._merge_conversation(rows[0])

    # ------------------------------------------------------------------
    # Optimistic bookkeeping
    # ------------------------------------------------------------------
    def _mark_failed(self, provisional_id: str, error: str) -> Message | None:
        self._ledger.fail(provisional_id, error)
        message = self._messages.get(provisional_id)
        if message is None:
            return None
        failed = message.model_copy(update={"delivery": DeliveryState.FAILED, "error": error})
        self._messages[provisional_id] = failed
        self._notify()
        return failed

    def _on_provisional_expired(self, entry: ProvisionalEntry[Message]) -> None:
        if self._state is ViewState.CLOSED or entry.provisional_id not in self._messages:
            return
        message = self._messages[entry.provisional_id]
        self._messages[entry.provisional_id] = message.model_copy(
            update={"delivery": DeliveryState.FAILED, "error": entry.error}
        )
        self._notify()

    def _resolve_provisional(self, provisional_id: str, durable: Message) -> Message:
        entry = self._ledger.resolve(provisional_id, durable.id)
        if entry is None:
            # Already reconciled by the live echo.
            return self._messages.get(durable.id, durable)
        return self._swap_in(entry, durable)

    def _swap_in(self, entry: ProvisionalEntry[Message], durable: Message) -> Message:
        self._messages.pop(entry.provisional_id, None)
        existing = self._messages.get(durable.id)
        if existing is not None:
            self._notify()
            return existing
        sender = (entry.value.sender if entry.value is not None else None) or self._senders.get(durable.sender_id)
        message = durable.model_copy(update={"sender": sender, "delivery": DeliveryState.SENT, "error": None})
        self._messages[durable.id] = message
        self._notify()
        return message

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------
    async def _consume(self, handle: StreamHandle) -> None:
        async for event in handle:
            if self._state is ViewState.CLOSED:
                return
            if self._state is ViewState.LOADING and not isinstance(event, StatusChanged):
                self._buffer.append(event)
                continue
            try:
                await self._apply(event)
            except Exception:
                logger.exception(
                    "Failed to process conversation event",
                    extra={"conversation_id": self.conversation_id, "kind": getattr(event, "kind", None)},
                )

    async def _apply(self, event: StreamEvent) -> None:
        if isinstance(event, StatusChanged):
            self._on_status(event)
        elif isinstance(event, RowInserted) and event.table == "messages":
            await self._ingest(event.row, source="live")
            self._notify()
        elif isinstance(event, RowUpdated) and event.table == "messages":
            self._on_message_updated(event.row)
        elif isinstance(event, RowUpdated) and event.table == "conversations":
            self._merge_conversation(event.row)

    def _on_status(self, event: StatusChanged) -> None:
        if event.status is StreamStatus.SUBSCRIBED:
            self._connection = ConnectionState.CONNECTED
            self._established.set()
            if self._needs_reload and self._state is ViewState.LIVE:
                self._needs_reload = False
                self._spawn(self._reload())
        elif event.status is StreamStatus.CHANNEL_ERROR:
            logger.warning(
                "Conversation stream error; reconnecting",
                extra={"conversation_id": self.conversation_id, "detail": event.detail},
            )
            self._connection = ConnectionState.RECONNECTING
            self._needs_reload = True
            self._established.set()
            self._schedule_resubscribe()
        elif event.status is StreamStatus.CONNECTING and self._connection is not ConnectionState.RECONNECTING:
            self._connection = ConnectionState.CONNECTING
        self._notify()

    def _schedule_resubscribe(self) -> None:
        if self._resubscribe_task is not None and not self._resubscribe_task.done():
            return
        self._resubscribe_task = asyncio.create_task(
            self._resubscribe_later(), name=f"conversation-resubscribe-{self.conversation_id}"
        )

    async def _resubscribe_later(self) -> None:
        await asyncio.sleep(self._settings.realtime_resubscribe_delay_seconds)
        self._resubscribe_task = None
        handle = self._handle
        if self._state is ViewState.CLOSED or handle is None or handle.status is not StreamStatus.CHANNEL_ERROR:
            return
        logger.info("Resubscribing conversation stream", extra={"conversation_id": self.conversation_id})
        await self._client.resubscribe(handle)
        if self._tracker is not None and self._tracker.status is StreamStatus.CHANNEL_ERROR:
            await self._tracker.resubscribe()

    async def _reload(self) -> None:
        """Merge everything persisted so far; repairs gaps left by an outage."""

        try:
            conversation_rows = await self._gateway.select(
                "conversations", filters=[RowFilter.eq("id", self.conversation_id)]
            )
            rows = await self._gateway.select(
                "messages",
                filters=[RowFilter.eq("conversation_id", self.conversation_id)],
                order_by="created_at",
            )
        except GatewayError:
            logger.warning("Reload after reconnect failed", extra={"conversation_id": self.conversation_id})
            self._needs_reload = True
            return
        if self._state is ViewState.CLOSED:
            return
        if conversation_rows:
            self._merge_conversation(conversation_rows[0])
        for row in rows:
            await self._ingest(row, source="reload")
            if self._state is ViewState.CLOSED:
                return
        self._notify()

    async def _ingest(self, row: dict[str, Any], *, source: str) -> None:
        try:
            message = Message.model_validate(row)
        except ValidationError:
            logger.warning("Dropped malformed message", extra={"conversation_id": self.conversation_id})
            realtime_dropped_events_total.labels("malformed").inc()
            return
        if message.conversation_id != self.conversation_id:
            realtime_dropped_events_total.labels("foreign").inc()
            return
        if message.id in self._messages:
            realtime_dropped_events_total.labels("duplicate").inc()
            return
        if message.sender_id == self.user_id and message.message_type is not MessageType.SYSTEM:
            entry = self._ledger.match((self.user_id, (message.content or "").strip()), message.created_at, message.id)
            if entry is not None:
                self._swap_in(entry, message)
                conversation_messages_total.labels(source).inc()
                return

        if source == "load":
            sender = self._senders.get(message.sender_id)
        else:
            sender = await self._resolve_sender(message.sender_id)
            if self._state is ViewState.CLOSED:
                return
            if sender is None:
                logger.warning(
                    "Dropped message from unknown sender",
                    extra={"conversation_id": self.conversation_id, "message_id": message.id},
                )
                realtime_dropped_events_total.labels("unknown_sender").inc()
                return
            if message.id in self._messages:
                return

        self._messages[message.id] = message.model_copy(update={"sender": sender})
        conversation_messages_total.labels(source).inc()
        if source == "load":
            return
        if self._tracker is not None:
            self._tracker.clear_typing(message.sender_id)
        if message.sender_id != self.user_id:
            self._presenter.cue_message(message)
            if message.read_at is None:
                self._schedule_read_receipt(message.id)

    def _on_message_updated(self, row: dict[str, Any]) -> None:
        message_id = str(row.get("id"))
        current = self._messages.get(message_id)
        if current is None:
            return
        try:
            incoming = Message.model_validate(row)
        except ValidationError:
            realtime_dropped_events_total.labels("malformed").inc()
            return
        if incoming.read_at is None or incoming.read_at == current.read_at:
            return
        # Identity, conversation and content are immutable once created.
        self._messages[message_id] = current.model_copy(update={"read_at": incoming.read_at})
        self._notify()

    def _merge_conversation(self, row: dict[str, Any]) -> None:
        current = self._conversation
        if current is None:
            return
        incoming = self._parse_conversation({**current.model_dump(), **row})
        if incoming is None or incoming.id != current.id:
            return
        status = current.status
        if can_transition(current.status, incoming.status):
            status = incoming.status
        else:
            logger.debug(
                "Ignored status regression",
                extra={"conversation_id": current.id, "from": current.status.value, "to": incoming.status.value},
            )
        candidates = [value for value in (current.last_message_at, incoming.last_message_at) if value is not None]
        self._conversation = incoming.model_copy(
            update={
                "status": status,
                "ended_at": incoming.ended_at or current.ended_at,
                "last_message_at": max(candidates) if candidates else None,
                "user_id": current.user_id,
                "judge_id": current.judge_id,
                "question_id": current.question_id,
            }
        )
        self._notify()

    # ------------------------------------------------------------------
    # Related data
    # ------------------------------------------------------------------
    @staticmethod
    def _parse_conversation(row: dict[str, Any]) -> Conversation | None:
        try:
            return Conversation.model_validate(row)
        except ValidationError:
            logger.warning("Malformed conversation row", extra={"conversation_id": row.get("id")})
            return None

    async def _prefetch_senders(self, sender_ids: Any) -> None:
        missing = sorted({str(item) for item in sender_ids} - set(self._senders))
        if not missing:
            return
        rows = await self._gateway.select("profiles", filters=[RowFilter.is_in("id", missing)])
        for row in rows:
            try:
                profile = SenderProfile.model_validate(row)
            except ValidationError:
                continue
            self._senders[profile.id] = profile

    async def _resolve_sender(self, sender_id: str) -> SenderProfile | None:
        cached = self._senders.get(sender_id)
        if cached is not None:
            return cached
        attempts = self._settings.sender_lookup_attempts
        for attempt in range(1, attempts + 1):
            try:
                rows = await self._gateway.select("profiles", filters=[RowFilter.eq("id", sender_id)])
                if rows:
                    profile = SenderProfile.model_validate(rows[0])
                    self._senders[profile.id] = profile
                    return profile
            except (GatewayError, ValidationError):
                logger.warning(
                    "Sender lookup failed (attempt %s/%s)", attempt, attempts, extra={"sender_id": sender_id}
                )
            if attempt < attempts:
                await asyncio.sleep(self._settings.sender_lookup_backoff_seconds * attempt)
            if self._state is ViewState.CLOSED:
                return None
        return None

    def _schedule_read_receipt(self, message_id: str) -> None:
        if message_id in self._receipts:
            return
        self._receipts.add(message_id)
        self._spawn(self._write_read_receipt(message_id))

    async def _write_read_receipt(self, message_id: str) -> None:
        await asyncio.sleep(self._settings.read_receipt_delay_seconds)
        if self._state is ViewState.CLOSED:
            return
        try:
            await self._gateway.update(
                "messages", {"read_at": _utcnow()}, filters=[RowFilter.eq("id", message_id)]
            )
        except GatewayError:
            logger.warning("Failed to write read receipt", extra={"message_id": message_id})

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from app.gateway import InMemoryGateway
from app.models import ConversationStatus, MessageType
from app.monitoring.metrics import conversation_messages_total, realtime_dropped_events_total
from app.schemas import DeliveryState
from app.services.alerts import NotificationPresenter
from app.services.cards import CardLookupService
from app.services.conversations import (
    COMPLETION_MESSAGE,
    ConnectionState,
    ConversationSynchronizer,
    SynchronizerStateError,
    ViewState,
)
from app.services.notification_factory import NotificationFactory
from judgeline.realtime.gateway import ChangeType, GatewayError
from support import CONVERSATION_ID, JUDGE_ID, QUESTION_ID, USER_ID, at, message_row, stored_row


class RecordingSink:
    def __init__(self) -> None:
        self.sounds: list[str] = []
        self.os_notifications: list[dict[str, Any]] = []

    def play_sound(self, kind: str) -> None:
        self.sounds.append(kind)

    def show_os_notification(self, title: str, body: str, *, tag: str, url: str | None = None) -> None:
        self.os_notifications.append({"title": title, "body": body, "tag": tag, "url": url})


class CountingGateway(InMemoryGateway):
    def __init__(self) -> None:
        super().__init__()
        self.updates: list[tuple[str, dict[str, Any]]] = []

    async def update(self, table, values, *, filters):
        self.updates.append((table, dict(values)))
        return await super().update(table, values, filters=filters)


def seed_conversation(gateway: InMemoryGateway, **extra: Any) -> None:
    gateway.seed("profiles", {"id": USER_ID, "username": "asker"})
    gateway.seed("profiles", {"id": JUDGE_ID, "username": "judge", "is_judge": True})
    row = {
        "id": CONVERSATION_ID,
        "question_id": QUESTION_ID,
        "user_id": USER_ID,
        "judge_id": JUDGE_ID,
        "started_at": at(0),
    }
    row.update(extra)
    gateway.seed("conversations", row)


def rows_by_id(gateway: InMemoryGateway, table: str) -> dict[str, dict[str, Any]]:
    return {row["id"]: row for row in gateway.rows(table)}


def contents(view: ConversationSynchronizer) -> list[str | None]:
    return [message.content for message in view.messages]


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def make_view(gateway, settings, sink):
    def build(user_id: str = USER_ID, **kwargs: Any) -> ConversationSynchronizer:
        kwargs.setdefault("presenter", NotificationPresenter(sink))
        view = ConversationSynchronizer(gateway, CONVERSATION_ID, user_id, settings=settings, **kwargs)
        return view

    return build


@pytest.mark.anyio("asyncio")
async def test_open_loads_history_in_timestamp_order(gateway, make_view):
    gateway.seed("messages", message_row("m3", USER_ID, "third", 3))
    gateway.seed("messages", message_row("m1", JUDGE_ID, "first", 1))
    gateway.seed("messages", message_row("b", USER_ID, "tie-b", 2))
    gateway.seed("messages", message_row("a", JUDGE_ID, "tie-a", 2))
    view = make_view()

    result = await view.open()

    assert result.ok
    assert view.state is ViewState.LIVE
    assert view.connection is ConnectionState.CONNECTED
    assert [message.id for message in view.messages] == ["m1", "a", "b", "m3"]
    assert view.messages[0].sender.username == "judge"
    assert conversation_messages_total.value("load") == 4.0
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_non_participant_is_rejected_before_subscribing(gateway, make_view):
    view = make_view("stranger")

    result = await view.open()

    assert not result.ok
    assert "participant" in result.error
    assert view.state is ViewState.UNINITIALIZED
    assert view.messages == []
    assert gateway.subscriber_count() == 0
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_missing_conversation_fails_to_open(settings):
    view = ConversationSynchronizer(InMemoryGateway(), "nope", USER_ID, settings=settings, presence=False)

    result = await view.open()

    assert not result.ok
    assert result.error == "Conversation not found"
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_failed_sender_lookup_during_load_releases_subscription(settings, sink):
    class FlakyProfilesGateway(InMemoryGateway):
        profile_selects = 0

        async def select(self, table, **kwargs):
            if table == "profiles":
                self.profile_selects += 1
                if self.profile_selects == 2:
                    raise GatewayError("profiles unavailable")
            return await super().select(table, **kwargs)

    gateway = FlakyProfilesGateway()
    seed_conversation(gateway)
    gateway.seed("profiles", {"id": "admin-1", "username": "admin"})
    gateway.seed("messages", message_row("m1", "admin-1", "hello", 1))
    view = ConversationSynchronizer(
        gateway, CONVERSATION_ID, USER_ID, settings=settings, presenter=NotificationPresenter(sink), presence=False
    )

    result = await view.open()

    assert not result.ok
    assert "profiles unavailable" in result.error
    assert view.state is ViewState.UNINITIALIZED
    assert view.messages == []
    assert gateway.subscriber_count() == 0
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_inserts_during_bulk_load_are_merged_exactly_once(settings, sink, eventually):
    class RacingGateway(InMemoryGateway):
        raced = False

        async def select(self, table, **kwargs):
            if table != "messages" or self.raced:
                return await super().select(table, **kwargs)
            self.raced = True
            # One row lands before the snapshot is read, one after.
            await self.insert("messages", message_row("early", JUDGE_ID, "early", 1))
            rows = await super().select(table, **kwargs)
            await self.insert("messages", message_row("late", JUDGE_ID, "late", 2))
            await self.drain()
            await asyncio.sleep(0.01)
            return rows

    gateway = RacingGateway()
    seed_conversation(gateway)
    view = ConversationSynchronizer(
        gateway, CONVERSATION_ID, USER_ID, settings=settings, presence=False, presenter=NotificationPresenter(sink)
    )

    result = await view.open()

    assert result.ok
    assert [message.id for message in view.messages] == ["early", "late"]
    assert realtime_dropped_events_total.value("duplicate") == 1.0
    # Only the live copy of a row gets a read receipt.
    await eventually(lambda: rows_by_id(gateway, "messages")["late"]["read_at"] is not None)
    assert rows_by_id(gateway, "messages")["early"]["read_at"] is None
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_out_of_order_live_events_are_sorted(gateway, make_view, eventually):
    view = make_view(presence=False)
    await view.open()

    gateway.emit("messages", ChangeType.INSERT, message_row("m2", JUDGE_ID, "second", 2))
    gateway.emit("messages", ChangeType.INSERT, message_row("m1", JUDGE_ID, "first", 1))
    gateway.emit("messages", ChangeType.INSERT, message_row("m2", JUDGE_ID, "second", 2))
    await gateway.drain()
    await eventually(lambda: len(view.messages) == 2)

    assert contents(view) == ["first", "second"]
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_send_is_shown_immediately_and_reconciled_once(gateway, make_view, eventually):
    view = make_view(presence=False)
    await view.open()
    seen: list[tuple[str, DeliveryState]] = []
    view.add_listener(lambda snapshot: seen.extend((m.content, m.delivery) for m in snapshot.messages))

    result = await view.send("  Does Lightning Bolt hit planeswalkers?  ")
    await gateway.drain()
    await asyncio.sleep(0.02)

    assert result.ok
    assert seen[0] == ("Does Lightning Bolt hit planeswalkers?", DeliveryState.PENDING)
    messages = view.messages
    assert len(messages) == 1
    assert messages[0].id == result.value.id
    assert messages[0].delivery is DeliveryState.SENT
    assert not messages[0].id.startswith("provisional-")
    assert len(gateway.rows("messages")) == 1
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_echo_arriving_before_write_response_reconciles_once(settings, sink):
    class SlowWriteGateway(InMemoryGateway):
        async def insert(self, table, row):
            stored = await super().insert(table, row)
            if table == "messages":
                await self.drain()
                await asyncio.sleep(0.02)
            return stored

    gateway = SlowWriteGateway()
    seed_conversation(gateway)
    view = ConversationSynchronizer(
        gateway, CONVERSATION_ID, USER_ID, settings=settings, presence=False, presenter=NotificationPresenter(sink)
    )
    await view.open()

    result = await view.send("hello")
    await gateway.drain()

    assert result.ok
    assert [(m.id, m.delivery) for m in view.messages] == [(result.value.id, DeliveryState.SENT)]
    assert conversation_messages_total.value("live") == 1.0
    assert conversation_messages_total.value("local") == 1.0
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_failed_send_keeps_marker_and_resend_replaces_it(gateway, make_view):
    view = make_view(presence=False)
    await view.open()
    gateway.inject_fault("insert", "messages", "write rejected")

    failed = await view.send("hello")

    assert not failed.ok
    assert failed.error == "write rejected"
    assert failed.value.delivery is DeliveryState.FAILED
    assert [m.delivery for m in view.messages] == [DeliveryState.FAILED]

    gateway.clear_faults()
    retried = await view.resend(failed.value.id)
    await gateway.drain()
    await asyncio.sleep(0.01)

    assert retried.ok
    assert [(m.content, m.delivery) for m in view.messages] == [("hello", DeliveryState.SENT)]
    assert not (await view.resend(retried.value.id)).ok
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_empty_content_is_rejected(gateway, make_view):
    view = make_view(presence=False)
    await view.open()

    result = await view.send("   ")

    assert not result.ok
    assert view.messages == []
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_send_to_ended_conversation_is_rejected(settings):
    gateway = InMemoryGateway()
    seed_conversation(gateway, status="ended")
    view = ConversationSynchronizer(gateway, CONVERSATION_ID, USER_ID, settings=settings, presence=False)
    await view.open()

    result = await view.send("anyone there?")

    assert not result.ok
    assert result.error == "Conversation is no longer active"
    assert gateway.rows("messages") == []
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_send_notifies_counterpart_and_bumps_last_message(gateway, make_view):
    view = make_view(JUDGE_ID, presence=False, notifications=NotificationFactory(gateway))
    await view.open()

    result = await view.send("x" * 60)

    assert result.ok
    notifications = gateway.rows("notifications")
    assert len(notifications) == 1
    assert notifications[0]["user_id"] == USER_ID
    assert notifications[0]["body"] == "x" * 50 + "..."
    assert notifications[0]["data"]["url"] == f"/conversation/{CONVERSATION_ID}"
    conversation = await stored_row(gateway, "conversations", CONVERSATION_ID)
    assert conversation["last_message_at"] == result.value.created_at
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_send_card_attaches_card_metadata(gateway, make_view, settings):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["q"] == "bolt"
        return httpx.Response(
            200,
            json={"data": [{"name": "Lightning Bolt", "mana_cost": "{R}", "scryfall_uri": "https://cards.test/bolt"}]},
        )

    cards = CardLookupService(settings, transport=httpx.MockTransport(handler))
    view = make_view(presence=False, cards=cards)
    await view.open()

    result = await view.send_card("bolt")

    assert result.ok
    assert result.value.content == "Card shared: Lightning Bolt"
    assert result.value.metadata["card"]["name"] == "Lightning Bolt"
    assert result.value.metadata["card"]["scryfall_url"] == "https://cards.test/bolt"
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_judge_completes_conversation(gateway, make_view, eventually):
    view = make_view(JUDGE_ID, presence=False, notifications=NotificationFactory(gateway))
    await view.open()

    result = await view.complete()
    await gateway.drain()
    await asyncio.sleep(0.01)

    assert result.ok
    assert view.conversation.status is ConversationStatus.ENDED
    assert view.conversation.ended_at is not None
    system = [m for m in view.messages if m.message_type is MessageType.SYSTEM]
    assert [m.content for m in system] == [COMPLETION_MESSAGE]
    assert [row["type"] for row in gateway.rows("notifications")] == ["question_completed"]
    assert not (await view.send("after the end")).ok
    assert not (await view.complete()).ok
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_only_judge_can_complete(gateway, make_view):
    view = make_view(presence=False)
    await view.open()

    result = await view.complete()

    assert not result.ok
    assert (await stored_row(gateway, "conversations", CONVERSATION_ID))["status"] == "active"
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_dispute_and_status_never_regresses(gateway, make_view, eventually):
    view = make_view(presence=False)
    await view.open()

    assert (await view.dispute()).ok
    assert view.conversation.status is ConversationStatus.DISPUTED

    row = await stored_row(gateway, "conversations", CONVERSATION_ID)
    gateway.emit("conversations", ChangeType.UPDATE, {**row, "status": "active", "last_message_at": at(10)})
    await gateway.drain()
    await eventually(lambda: view.conversation.last_message_at == at(10))

    assert view.conversation.status is ConversationStatus.DISPUTED
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_inbound_message_gets_one_read_receipt_and_cue(settings, sink, eventually):
    gateway = CountingGateway()
    seed_conversation(gateway)
    view = ConversationSynchronizer(
        gateway, CONVERSATION_ID, USER_ID, settings=settings, presence=False, presenter=NotificationPresenter(sink)
    )
    await view.open()

    stored = await gateway.insert("messages", message_row("m1", JUDGE_ID, "answer", 1))
    await gateway.drain()
    gateway.emit("messages", ChangeType.INSERT, stored)
    await gateway.drain()
    await eventually(lambda: view.messages and view.messages[0].read_at is not None)
    await asyncio.sleep(0.05)

    receipts = [values for table, values in gateway.updates if table == "messages" and "read_at" in values]
    assert len(receipts) == 1
    assert sink.sounds == ["message"]
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_own_messages_do_not_get_read_receipts(settings, sink):
    gateway = CountingGateway()
    seed_conversation(gateway)
    view = ConversationSynchronizer(
        gateway, CONVERSATION_ID, USER_ID, settings=settings, presence=False, presenter=NotificationPresenter(sink)
    )
    await view.open()

    await view.send("question")
    await gateway.drain()
    await asyncio.sleep(0.05)

    assert [table for table, values in gateway.updates if "read_at" in values] == []
    assert sink.sounds == []
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_message_from_unknown_sender_is_dropped(gateway, make_view):
    view = make_view(presence=False)
    await view.open()

    gateway.emit("messages", ChangeType.INSERT, message_row("m1", "ghost", "boo", 1))
    await gateway.drain()
    await asyncio.sleep(0.1)

    assert view.messages == []
    assert realtime_dropped_events_total.value("unknown_sender") == 1.0
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_malformed_live_row_is_dropped(gateway, make_view):
    view = make_view(presence=False)
    await view.open()

    gateway.emit("messages", ChangeType.INSERT, {"id": "m1", "conversation_id": CONVERSATION_ID})
    await gateway.drain()
    await asyncio.sleep(0.01)

    assert view.messages == []
    assert view.state is ViewState.LIVE
    assert realtime_dropped_events_total.value("malformed") == 1.0
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_channel_error_resubscribes_and_reloads_missed_rows(gateway, make_view, eventually):
    view = make_view(presence=False)
    await view.open()
    states: list[ConnectionState] = []
    view.add_listener(lambda snapshot: states.append(snapshot.connection))

    gateway.emit_status("error", "socket closed")
    gateway.seed("messages", message_row("missed", JUDGE_ID, "written during the outage", 5))
    await eventually(lambda: [m.id for m in view.messages] == ["missed"])

    assert ConnectionState.RECONNECTING in states
    assert view.connection is ConnectionState.CONNECTED
    assert gateway.subscriber_count("messages") == 1
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_close_stops_updates_and_cannot_reopen(gateway, make_view):
    view = make_view()
    await view.open()

    await view.close()
    await gateway.insert("messages", message_row("m1", JUDGE_ID, "too late", 1))
    await gateway.drain()
    await asyncio.sleep(0.01)

    assert view.state is ViewState.CLOSED
    assert view.messages == []
    assert gateway.subscriber_count() == 0
    assert not (await view.send("hello")).ok
    with pytest.raises(SynchronizerStateError):
        await view.open()


@pytest.mark.anyio("asyncio")
async def test_open_twice_is_an_error(gateway, make_view):
    view = make_view(presence=False)
    await view.open()

    with pytest.raises(SynchronizerStateError):
        await view.open()
    await view.close()


@pytest.mark.anyio("asyncio")
async def test_typing_indicator_clears_when_message_arrives(gateway, make_view, eventually):
    asker = make_view(USER_ID)
    judge = make_view(JUDGE_ID)
    await asker.open()
    await judge.open()
    await eventually(lambda: asker.online_users == frozenset({JUDGE_ID}))

    assert (await judge.notify_typing()).ok
    await gateway.drain()
    await eventually(lambda: asker.typing_users == frozenset({JUDGE_ID}))

    await judge.send("Yes, it does.")
    await gateway.drain()
    await eventually(lambda: not asker.typing_users)
    await eventually(lambda: contents(asker) == ["Yes, it does."])

    await judge.close()
    await eventually(lambda: asker.online_users == frozenset())
    await asker.close()

"""Unit tests validating Pydantic schema constraints."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from app.models import ConversationStatus, MessageType
from app.schemas import Conversation, DeliveryState, Message, Notification, can_transition
from judgeline.realtime.events import Broadcast, PresenceSync, RowInserted, StatusChanged, StreamStatus, parse_event

from support import at


def test_message_naive_timestamp_is_treated_as_utc():
    message = Message(
        id="m1",
        conversation_id="c1",
        sender_id="u1",
        content="hi",
        created_at=datetime(2024, 5, 1, 12, 0),
    )
    assert message.created_at.tzinfo is timezone.utc
    assert message.message_type is MessageType.TEXT
    assert message.delivery is DeliveryState.SENT


def test_message_row_excludes_local_view_state():
    message = Message(
        id="m1",
        conversation_id="c1",
        sender_id="u1",
        content="hi",
        created_at=at(0),
        delivery=DeliveryState.PENDING,
        error="boom",
    )
    row = message.to_row()
    assert "delivery" not in row
    assert "error" not in row
    assert "sender" not in row
    assert row["content"] == "hi"


def test_message_requires_created_at():
    with pytest.raises(ValidationError):
        Message.model_validate({"id": "m1", "conversation_id": "c1", "sender_id": "u1"})


def test_messages_order_by_timestamp_then_id():
    first = Message(id="b", conversation_id="c", sender_id="u", created_at=at(1))
    second = Message(id="a", conversation_id="c", sender_id="u", created_at=at(2))
    tie = Message(id="c", conversation_id="c", sender_id="u", created_at=at(2))
    assert sorted([tie, second, first], key=Message.sort_key) == [first, second, tie]


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        (ConversationStatus.ACTIVE, ConversationStatus.ENDED, True),
        (ConversationStatus.ACTIVE, ConversationStatus.DISPUTED, True),
        (ConversationStatus.ENDED, ConversationStatus.ACTIVE, False),
        (ConversationStatus.DISPUTED, ConversationStatus.ENDED, False),
        (ConversationStatus.ENDED, ConversationStatus.ENDED, True),
    ],
)
def test_conversation_status_only_moves_forward(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_conversation_participants():
    conversation = Conversation(id="c", question_id="q", user_id="u", judge_id="j", started_at=at(0))
    assert conversation.is_participant("u")
    assert conversation.is_participant("j")
    assert not conversation.is_participant("x")
    assert conversation.counterpart_of("u") == "j"
    assert conversation.counterpart_of("j") == "u"


def test_notification_url_comes_from_data():
    notification = Notification(
        id="n1", user_id="u", title="t", type="question_assigned", data={"url": "/conversation/c"}, created_at=at(0)
    )
    assert notification.url == "/conversation/c"
    assert Notification(id="n2", user_id="u", title="t", type="reward_earned", created_at=at(0)).url is None


def test_parse_event_dispatches_on_kind():
    assert isinstance(parse_event({"kind": "row_inserted", "table": "messages", "row": {}}), RowInserted)
    assert isinstance(parse_event({"kind": "broadcast", "event": "typing"}), Broadcast)
    status = parse_event({"kind": "status", "status": "channel_error", "detail": "lost"})
    assert isinstance(status, StatusChanged)
    assert status.status is StreamStatus.CHANNEL_ERROR
    with pytest.raises(ValidationError):
        parse_event({"kind": "unknown"})


def test_presence_sync_collects_user_ids():
    sync = PresenceSync(members={"a": {"user_id": "u1"}, "b": {"user_id": "u1"}, "c": {"user_id": "u2"}, "d": {}})
    assert sync.user_ids() == {"u1", "u2"}

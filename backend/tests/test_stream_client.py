from __future__ import annotations

import asyncio

import pytest

from app.monitoring.metrics import realtime_dropped_events_total, realtime_stream_errors_total, realtime_subscriptions
from judgeline.realtime.events import Broadcast, RowInserted, RowUpdated, StatusChanged, StreamStatus
from judgeline.realtime.gateway import ChangeType, RowFilter
from judgeline.realtime.stream import EventStreamClient, TableFilter
from support import CONVERSATION_ID, JUDGE_ID, message_row


async def next_event(handle, timeout: float = 1.0):
    return await asyncio.wait_for(handle.__anext__(), timeout=timeout)


def messages_feed() -> list[TableFilter]:
    return [TableFilter("messages", (RowFilter.eq("conversation_id", CONVERSATION_ID),))]


@pytest.mark.anyio("asyncio")
async def test_subscribe_reports_connecting_then_subscribed(gateway):
    client = EventStreamClient(gateway)
    handle = client.subscribe("conversation-test", messages_feed())

    first = await next_event(handle)
    second = await next_event(handle)

    assert isinstance(first, StatusChanged) and first.status is StreamStatus.CONNECTING
    assert isinstance(second, StatusChanged) and second.status is StreamStatus.SUBSCRIBED
    assert handle.status is StreamStatus.SUBSCRIBED
    assert realtime_subscriptions.value("stream") == 1.0

    await client.close()
    assert realtime_subscriptions.value("stream") == 0.0


@pytest.mark.anyio("asyncio")
async def test_row_changes_are_filtered_and_typed(gateway):
    client = EventStreamClient(gateway)
    handle = client.subscribe("conversation-test", messages_feed())
    await next_event(handle)
    await next_event(handle)

    await gateway.insert("messages", message_row("m-other", JUDGE_ID, "elsewhere", 1, conversation_id="other"))
    await gateway.insert("messages", message_row("m1", JUDGE_ID, "hello", 2))
    await gateway.update("messages", {"content": "edited"}, filters=[RowFilter.eq("id", "m1")])
    await gateway.drain()

    inserted = await next_event(handle)
    updated = await next_event(handle)
    assert isinstance(inserted, RowInserted)
    assert inserted.table == "messages"
    assert inserted.row["id"] == "m1"
    assert isinstance(updated, RowUpdated)
    assert updated.row["content"] == "edited"
    assert handle.pending() == 0

    await client.close()


@pytest.mark.anyio("asyncio")
async def test_insert_only_feed_ignores_updates(gateway):
    client = EventStreamClient(gateway)
    handle = client.subscribe(
        "rewards-test",
        [TableFilter("messages", (), (ChangeType.INSERT,))],
    )
    await next_event(handle)
    await next_event(handle)

    await gateway.insert("messages", message_row("m1", JUDGE_ID, "hello", 1))
    await gateway.update("messages", {"read_at": None}, filters=[RowFilter.eq("id", "m1")])
    await gateway.drain()

    assert isinstance(await next_event(handle), RowInserted)
    assert handle.pending() == 0
    await client.close()


@pytest.mark.anyio("asyncio")
async def test_unsubscribe_stops_delivery_even_for_queued_events(gateway):
    client = EventStreamClient(gateway)
    handle = client.subscribe("conversation-test", messages_feed())
    await next_event(handle)
    await next_event(handle)

    await gateway.insert("messages", message_row("m1", JUDGE_ID, "hello", 1))
    await gateway.drain()
    assert handle.pending() == 1

    await client.unsubscribe(handle)
    await client.unsubscribe(handle)

    with pytest.raises(StopAsyncIteration):
        await next_event(handle)
    assert handle.closed
    assert handle.status is StreamStatus.CLOSED
    assert gateway.subscriber_count("messages") == 0
    assert gateway.channel_count("conversation-test") == 0


@pytest.mark.anyio("asyncio")
async def test_failed_subscription_surfaces_channel_error_and_can_resubscribe(gateway):
    gateway.inject_fault("subscribe", "messages", "subscriptions disabled")
    client = EventStreamClient(gateway)
    handle = client.subscribe("conversation-test", messages_feed())

    await next_event(handle)
    error = await next_event(handle)
    assert isinstance(error, StatusChanged)
    assert error.status is StreamStatus.CHANNEL_ERROR
    assert error.detail == "subscriptions disabled"
    assert realtime_stream_errors_total.value("subscribe") == 1.0
    assert realtime_subscriptions.value("stream") == 0.0

    gateway.clear_faults()
    await client.resubscribe(handle)
    statuses = [(await next_event(handle)).status, (await next_event(handle)).status]
    assert statuses == [StreamStatus.CONNECTING, StreamStatus.SUBSCRIBED]
    assert gateway.subscriber_count("messages") == 1

    await client.close()


@pytest.mark.anyio("asyncio")
async def test_connection_loss_is_reported_in_band(gateway):
    client = EventStreamClient(gateway)
    handle = client.subscribe("conversation-test", messages_feed())
    await next_event(handle)
    await next_event(handle)

    gateway.emit_status("error", "socket closed")
    gateway.emit_status("recovered")

    lost = await next_event(handle)
    recovered = await next_event(handle)
    assert lost.status is StreamStatus.CHANNEL_ERROR
    assert lost.detail == "socket closed"
    assert recovered.status is StreamStatus.SUBSCRIBED
    assert realtime_stream_errors_total.value("connection") == 1.0

    await client.close()


@pytest.mark.anyio("asyncio")
async def test_publish_reaches_other_handles_but_not_sender(gateway):
    sender_client = EventStreamClient(gateway)
    receiver_client = EventStreamClient(gateway)
    sender = sender_client.subscribe("presence-test")
    receiver = receiver_client.subscribe("presence-test")
    for handle in (sender, receiver):
        await next_event(handle)
        await next_event(handle)

    assert await sender_client.publish("presence-test", "typing", {"user_id": JUDGE_ID}) is True
    await gateway.drain()

    event = await next_event(receiver)
    assert isinstance(event, Broadcast)
    assert event.event == "typing"
    assert event.payload == {"user_id": JUDGE_ID}
    assert sender.pending() == 0

    await sender_client.close()
    await receiver_client.close()


@pytest.mark.anyio("asyncio")
async def test_publish_without_open_stream_is_not_delivered(gateway):
    client = EventStreamClient(gateway)
    assert await client.publish("presence-test", "typing", {"user_id": JUDGE_ID}) is False


@pytest.mark.anyio("asyncio")
async def test_malformed_channel_event_is_dropped(gateway):
    client = EventStreamClient(gateway)
    handle = client.subscribe("presence-test")
    await next_event(handle)
    await next_event(handle)

    await client._on_channel_event(handle, "presence_join", {"payload": {}})

    assert handle.pending() == 0
    assert realtime_dropped_events_total.value("malformed") == 1.0
    await client.close()

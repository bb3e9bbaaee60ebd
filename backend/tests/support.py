"""Identifiers and helpers shared by the realtime tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from app.gateway import InMemoryGateway
from judgeline.realtime.gateway import RowFilter

USER_ID = "user-1"
JUDGE_ID = "judge-1"
CONVERSATION_ID = "conv-1"
QUESTION_ID = "question-1"

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    """Timestamp ``seconds`` after a fixed reference point."""

    return BASE_TIME + timedelta(seconds=seconds)


def message_row(message_id: str, sender_id: str, content: str, seconds: float, **extra: Any) -> dict[str, Any]:
    row = {
        "id": message_id,
        "conversation_id": CONVERSATION_ID,
        "sender_id": sender_id,
        "content": content,
        "created_at": at(seconds),
    }
    row.update(extra)
    return row


async def stored_row(gateway: InMemoryGateway, table: str, row_id: str) -> dict[str, Any]:
    rows = await gateway.select(table, filters=[RowFilter.eq("id", row_id)])
    assert rows, f"{table} row {row_id} not found"
    return rows[0]

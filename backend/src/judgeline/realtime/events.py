"""Typed events produced by the event stream client."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class StreamStatus(str, Enum):
    """Connection state reported in-band on a stream."""

    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    CHANNEL_ERROR = "channel_error"
    CLOSED = "closed"


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class RowInserted(_Event):
    kind: Literal["row_inserted"] = "row_inserted"
    table: str
    row: dict[str, Any]


class RowUpdated(_Event):
    kind: Literal["row_updated"] = "row_updated"
    table: str
    row: dict[str, Any]


class PresenceSync(_Event):
    """Full presence state of a topic; replaces whatever was known before."""

    kind: Literal["presence_sync"] = "presence_sync"
    members: dict[str, dict[str, Any]] = Field(default_factory=dict)

    def user_ids(self) -> set[str]:
        ids: set[str] = set()
        for payload in self.members.values():
            user_id = payload.get("user_id")
            if user_id is not None:
                ids.add(str(user_id))
        return ids


class PresenceJoin(_Event):
    kind: Literal["presence_join"] = "presence_join"
    key: str
    payload: dict[str, Any] = Field(default_factory=dict)


class PresenceLeave(_Event):
    kind: Literal["presence_leave"] = "presence_leave"
    key: str
    payload: dict[str, Any] = Field(default_factory=dict)


class Broadcast(_Event):
    kind: Literal["broadcast"] = "broadcast"
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)


class StatusChanged(_Event):
    kind: Literal["status"] = "status"
    status: StreamStatus
    detail: str | None = None


StreamEvent = Annotated[
    Union[RowInserted, RowUpdated, PresenceSync, PresenceJoin, PresenceLeave, Broadcast, StatusChanged],
    Field(discriminator="kind"),
]

_event_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


def parse_event(raw: Mapping[str, Any]) -> StreamEvent:
    """Validate a raw mapping into a stream event; raises ``pydantic.ValidationError``."""

    return _event_adapter.validate_python(dict(raw))

"""Contract of the hosted persistence/realtime backend consumed by the realtime core."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol, Sequence

from .transport import Subscription


class GatewayError(RuntimeError):
    """Raised when the persistence gateway rejects or cannot complete a request."""


class ChangeType(str, Enum):
    """Row change notifications delivered by table subscriptions."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"


class FilterOp(str, Enum):
    EQ = "eq"
    IN = "in"


@dataclass(frozen=True, slots=True)
class RowFilter:
    """Equality or set-membership predicate on a single column."""

    column: str
    value: Any
    op: FilterOp = FilterOp.EQ

    @classmethod
    def eq(cls, column: str, value: Any) -> "RowFilter":
        return cls(column, value, FilterOp.EQ)

    @classmethod
    def is_in(cls, column: str, values: Iterable[Any]) -> "RowFilter":
        return cls(column, tuple(values), FilterOp.IN)

    def matches(self, row: Mapping[str, Any]) -> bool:
        current = row.get(self.column)
        if isinstance(current, Enum):
            current = current.value
        if self.op is FilterOp.IN:
            return current in {_plain(item) for item in self.value}
        return current == _plain(self.value)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def matches_all(filters: Sequence[RowFilter], row: Mapping[str, Any]) -> bool:
    return all(item.matches(row) for item in filters)


ChangeHandler = Callable[[ChangeType, dict[str, Any]], Awaitable[None]]
ChannelHandler = Callable[[str, dict[str, Any]], Awaitable[None]]
StatusCallback = Callable[[str, str | None], None]

# Reserved channel event names; everything else is a broadcast event.
PRESENCE_SYNC = "presence_sync"
PRESENCE_JOIN = "presence_join"
PRESENCE_LEAVE = "presence_leave"
PRESENCE_EVENTS = frozenset({PRESENCE_SYNC, PRESENCE_JOIN, PRESENCE_LEAVE})
ANY_EVENT = "*"


class RealtimeChannel(Protocol):
    """Presence and broadcast channel keyed by topic name."""

    @property
    def topic(self) -> str:
        """Topic this channel is bound to."""

    def on(self, event: str, handler: ChannelHandler) -> None:
        """Register ``handler(event, payload)`` for ``event`` (``"*"`` for all events)."""

    async def subscribe(self) -> None:
        """Start receiving events; raises :class:`GatewayError` when the channel cannot join."""

    async def track(self, payload: dict[str, Any]) -> None:
        """Publish this channel's presence payload to the topic."""

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        """Broadcast ``event`` to the other subscribers of the topic."""

    async def unsubscribe(self) -> None:
        """Leave the topic, dropping any tracked presence; idempotent."""


class PersistenceGateway(Protocol):
    """Row-level CRUD plus change subscriptions over the durable store."""

    async def select(
        self,
        table: str,
        *,
        filters: Sequence[RowFilter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Return rows matching every filter."""

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """Persist ``row`` and return the stored row with generated columns."""

    async def update(
        self, table: str, values: dict[str, Any], *, filters: Sequence[RowFilter]
    ) -> list[dict[str, Any]]:
        """Apply ``values`` to the matching rows and return them."""

    async def delete(self, table: str, *, filters: Sequence[RowFilter]) -> int:
        """Delete the matching rows and return how many were removed."""

    async def subscribe(
        self,
        table: str,
        handler: ChangeHandler,
        *,
        filters: Sequence[RowFilter] = (),
        events: Sequence[ChangeType] = (ChangeType.INSERT, ChangeType.UPDATE),
        on_status: StatusCallback | None = None,
    ) -> Subscription:
        """Deliver matching row changes to ``handler`` until the subscription is closed."""

    def channel(self, topic: str) -> RealtimeChannel:
        """Return a new, not yet subscribed, channel for ``topic``."""

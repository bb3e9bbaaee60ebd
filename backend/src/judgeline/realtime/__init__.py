"""Realtime conversation, presence and notification synchronization."""

from .events import StreamEvent, StreamStatus, parse_event  # noqa: F401
from .gateway import (  # noqa: F401
    ChangeType,
    GatewayError,
    PersistenceGateway,
    RealtimeChannel,
    RowFilter,
)
from .observers import ActionResult, ChangeNotifier  # noqa: F401
from .optimistic import OptimisticLedger, ProvisionalEntry  # noqa: F401
from .presence import PresenceTracker  # noqa: F401
from .stream import EventStreamClient, StreamHandle, TableFilter  # noqa: F401
from .transport import (  # noqa: F401
    BrokerConfig,
    RedisNATSTransport,
    Subscription,
    TransportUnavailableError,
)

__all__ = [
    "ActionResult",
    "BrokerConfig",
    "ChangeNotifier",
    "ChangeType",
    "EventStreamClient",
    "GatewayError",
    "OptimisticLedger",
    "PersistenceGateway",
    "PresenceTracker",
    "ProvisionalEntry",
    "RealtimeChannel",
    "RedisNATSTransport",
    "RowFilter",
    "StreamEvent",
    "StreamHandle",
    "StreamStatus",
    "Subscription",
    "TableFilter",
    "TransportUnavailableError",
    "parse_event",
]

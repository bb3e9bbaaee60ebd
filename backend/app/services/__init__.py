"""Application service helpers."""

from .alerts import AlertSink, LoggingAlertSink, NotificationPresenter
from .cards import CardLookupError, CardLookupService, CardSummary
from .conversations import ConnectionState, ConversationSynchronizer, SynchronizerStateError, ViewState
from .notification_factory import NotificationFactory
from .notifications import NotificationDispatcher
from .rewards import RewardNotificationQueue

__all__ = [
    "AlertSink",
    "CardLookupError",
    "CardLookupService",
    "CardSummary",
    "ConnectionState",
    "ConversationSynchronizer",
    "LoggingAlertSink",
    "NotificationDispatcher",
    "NotificationFactory",
    "NotificationPresenter",
    "RewardNotificationQueue",
    "SynchronizerStateError",
    "ViewState",
]

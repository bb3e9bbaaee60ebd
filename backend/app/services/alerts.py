"""Best-effort delivery side effects: audible cues and OS-level notifications."""

from __future__ import annotations

import logging
from typing import Protocol

from app.schemas import Message, Notification

logger = logging.getLogger(__name__)

MESSAGE_SOUND = "message"
NOTIFICATION_SOUND = "notification"


class AlertSink(Protocol):
    """Presentation hooks supplied by the embedding UI."""

    def play_sound(self, kind: str) -> None:
        ...

    def show_os_notification(self, title: str, body: str, *, tag: str, url: str | None = None) -> None:
        ...


class LoggingAlertSink:
    """Default sink used when no UI is attached; it only records what would be shown."""

    def play_sound(self, kind: str) -> None:
        logger.debug("Audible cue", extra={"sound": kind})

    def show_os_notification(self, title: str, body: str, *, tag: str, url: str | None = None) -> None:
        logger.info("OS notification: %s", title, extra={"tag": tag, "url": url})


class NotificationPresenter:
    """Fires each cue at most once per entity id and never lets a sink failure escape."""

    def __init__(self, sink: AlertSink | None = None, *, os_permission: bool = False) -> None:
        self._sink: AlertSink = sink or LoggingAlertSink()
        self.os_permission = os_permission
        self._notified: set[str] = set()
        self._cued_messages: set[str] = set()

    def present(self, notification: Notification) -> bool:
        """Announce a newly arrived notification; returns ``False`` for repeats."""

        if notification.id in self._notified:
            return False
        self._notified.add(notification.id)
        if self.os_permission:
            self._safely(
                "os_notification",
                self._sink.show_os_notification,
                notification.title,
                notification.body,
                tag=notification.id,
                url=notification.url,
            )
        self._safely("sound", self._sink.play_sound, NOTIFICATION_SOUND)
        return True

    def cue_message(self, message: Message) -> bool:
        if message.id in self._cued_messages:
            return False
        self._cued_messages.add(message.id)
        self._safely("sound", self._sink.play_sound, MESSAGE_SOUND)
        return True

    @staticmethod
    def _safely(effect: str, func, *args, **kwargs) -> None:
        try:
            func(*args, **kwargs)
        except Exception:
            logger.exception("Delivery side effect failed", extra={"effect": effect})

"""Snapshot listeners and action results shared by the realtime components."""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class ActionResult(Generic[T]):
    """Outcome of a user-initiated action; failures carry a message instead of raising."""

    ok: bool
    error: str | None = None
    value: T | None = None

    @classmethod
    def success(cls, value: T | None = None) -> "ActionResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str, value: T | None = None) -> "ActionResult[T]":
        return cls(ok=False, error=error, value=value)


Listener = Callable[[Any], None]


class ChangeNotifier:
    """Lets the presentation layer re-render whenever a component's snapshot changes."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return remove

    def snapshot(self) -> Any:
        raise NotImplementedError

    def _notify(self) -> None:
        if not self._listeners:
            return
        state = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Snapshot listener failed", extra={"component": type(self).__name__})

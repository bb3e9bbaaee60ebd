"""Optimistic apply + reconcile bookkeeping for locally-originated entities."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Generic, Hashable, TypeVar

from app.monitoring.metrics import optimistic_reconciliations_total

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROVISIONAL_PREFIX = "provisional-"


def is_provisional(identifier: str) -> bool:
    return identifier.startswith(PROVISIONAL_PREFIX)


@dataclass(slots=True)
class ProvisionalEntry(Generic[T]):
    """A locally applied entity waiting for its durable counterpart."""

    provisional_id: str
    identity: tuple[Hashable, ...]
    at: datetime
    value: T
    failed: bool = False
    error: str | None = None
    _timer: asyncio.TimerHandle | None = field(default=None, repr=False)


class OptimisticLedger(Generic[T]):
    """Tracks provisional entries and hands each one out exactly once.

    An entry is claimed either by :meth:`resolve` (the write returned) or by
    :meth:`match` (the durable row was echoed back first), whichever happens
    first. Entries nobody claims within ``timeout`` seconds are passed to
    ``on_expire`` and stay in the ledger flagged as failed.
    """

    def __init__(
        self,
        *,
        tolerance: timedelta,
        timeout: float | None,
        on_expire: Callable[[ProvisionalEntry[T]], None] | None = None,
        label: str = "entity",
    ) -> None:
        self._tolerance = tolerance
        self._timeout = timeout
        self._on_expire = on_expire
        self._label = label
        self._entries: dict[str, ProvisionalEntry[T]] = {}
        self._claimed: set[str] = set()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, provisional_id: object) -> bool:
        return provisional_id in self._entries

    def get(self, provisional_id: str) -> ProvisionalEntry[T] | None:
        return self._entries.get(provisional_id)

    def apply(self, identity: tuple[Hashable, ...], at: datetime, value: T) -> ProvisionalEntry[T]:
        entry: ProvisionalEntry[T] = ProvisionalEntry(
            provisional_id=f"{PROVISIONAL_PREFIX}{uuid.uuid4().hex}",
            identity=identity,
            at=at,
            value=value,
        )
        self._entries[entry.provisional_id] = entry
        if self._timeout is not None:
            loop = asyncio.get_running_loop()
            entry._timer = loop.call_later(self._timeout, self._expire, entry.provisional_id)
        return entry

    def replace_value(self, provisional_id: str, value: T) -> None:
        entry = self._entries.get(provisional_id)
        if entry is not None:
            entry.value = value

    def resolve(self, provisional_id: str, durable_id: str) -> ProvisionalEntry[T] | None:
        """Claim a specific entry for ``durable_id``; ``None`` if it was already claimed."""

        if durable_id in self._claimed:
            return None
        entry = self._entries.pop(provisional_id, None)
        if entry is None:
            return None
        self._settle(entry, durable_id)
        optimistic_reconciliations_total.labels(self._label, "resolved").inc()
        return entry

    def match(
        self, identity: tuple[Hashable, ...], at: datetime, durable_id: str
    ) -> ProvisionalEntry[T] | None:
        """Claim the oldest entry with ``identity`` whose timestamp lies within tolerance."""

        if durable_id in self._claimed:
            return None
        candidates = [
            entry
            for entry in self._entries.values()
            if entry.identity == identity and abs(entry.at - at) <= self._tolerance
        ]
        if not candidates:
            return None
        entry = min(candidates, key=lambda item: (abs(item.at - at), item.at))
        del self._entries[entry.provisional_id]
        self._settle(entry, durable_id)
        optimistic_reconciliations_total.labels(self._label, "matched").inc()
        return entry

    def fail(self, provisional_id: str, error: str) -> ProvisionalEntry[T] | None:
        entry = self._entries.get(provisional_id)
        if entry is None:
            return None
        entry.failed = True
        entry.error = error
        self._cancel_timer(entry)
        optimistic_reconciliations_total.labels(self._label, "failed").inc()
        return entry

    def discard(self, provisional_id: str) -> ProvisionalEntry[T] | None:
        entry = self._entries.pop(provisional_id, None)
        if entry is not None:
            self._cancel_timer(entry)
        return entry

    def close(self) -> None:
        for entry in self._entries.values():
            self._cancel_timer(entry)

    def _settle(self, entry: ProvisionalEntry[T], durable_id: str) -> None:
        self._cancel_timer(entry)
        self._claimed.add(durable_id)

    @staticmethod
    def _cancel_timer(entry: ProvisionalEntry[T]) -> None:
        if entry._timer is not None:
            entry._timer.cancel()
            entry._timer = None

    def _expire(self, provisional_id: str) -> None:
        entry = self._entries.get(provisional_id)
        if entry is None or entry.failed:
            return
        entry._timer = None
        entry.failed = True
        entry.error = "Timed out waiting for confirmation"
        optimistic_reconciliations_total.labels(self._label, "expired").inc()
        logger.warning(
            "Optimistic %s was never confirmed", self._label, extra={"provisional_id": provisional_id}
        )
        if self._on_expire is not None:
            try:
                self._on_expire(entry)
            except Exception:
                logger.exception("Optimistic expiry callback failed")

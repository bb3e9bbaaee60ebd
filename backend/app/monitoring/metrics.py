"""Metric definitions for the realtime synchronization layer."""

from __future__ import annotations

from .registry import registry


realtime_events_total = registry.counter(
    "realtime_events_total",
    "Count of realtime events processed by the stream client and trackers.",
    label_names=("topic", "direction", "action"),
)

realtime_subscriptions = registry.gauge(
    "realtime_stream_subscriptions",
    "Number of established stream subscriptions.",
    label_names=("scope",),
)

realtime_publish_errors_total = registry.counter(
    "realtime_publish_errors_total",
    "Number of realtime broadcasts that could not be delivered.",
    label_names=("topic", "backend", "reason"),
)

realtime_transport_restarts_total = registry.counter(
    "realtime_transport_restarts_total",
    "Number of times the realtime broker connection was re-established.",
    label_names=("backend", "reason"),
)

realtime_stream_errors_total = registry.counter(
    "realtime_stream_errors_total",
    "Stream-level failures surfaced as status events.",
    label_names=("kind",),
)

realtime_dropped_events_total = registry.counter(
    "realtime_dropped_events_total",
    "Inbound events dropped before reaching component state.",
    label_names=("reason",),
)

optimistic_reconciliations_total = registry.counter(
    "optimistic_reconciliations_total",
    "Outcomes of optimistic entries (resolved, matched, failed, expired).",
    label_names=("entity", "outcome"),
)

conversation_messages_total = registry.counter(
    "conversation_messages_total",
    "Messages merged into conversation views by origin.",
    label_names=("source",),
)

notification_events_total = registry.counter(
    "notification_events_total",
    "Notification feed transitions handled by the dispatcher.",
    label_names=("feed", "action"),
)

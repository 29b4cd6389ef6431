"""Metric definitions for chat dispatch, room state and the realtime transport."""

from __future__ import annotations

from .registry import registry


chat_dispatch_total = registry.counter(
    "chat_dispatch_total",
    "Number of chat messages handled by the dispatcher.",
    label_names=("route", "outcome"),
)

chat_publish_errors_total = registry.counter(
    "chat_publish_errors_total",
    "Egress and fan-out publishes that failed and were skipped.",
    label_names=("channel", "backend", "reason"),
)

chat_attachments_total = registry.counter(
    "chat_attachments_total",
    "Number of dispatched chat messages carrying an attachment reference.",
)

room_state_updates_total = registry.counter(
    "room_state_updates_total",
    "Conversation summary updates by outcome.",
    label_names=("outcome",),
)

room_state_update_seconds = registry.summary(
    "room_state_update_seconds",
    "Time spent applying a conversation summary update, lock wait included.",
)

realtime_transport_restarts_total = registry.counter(
    "realtime_transport_restarts_total",
    "Broker client resets triggered by publish or subscribe failures.",
    label_names=("backend", "reason"),
)

realtime_connections = registry.gauge(
    "realtime_active_connections",
    "Number of live subscriber websockets attached to this instance.",
    label_names=("scope",),
)

"""Metric definitions for the chat relay."""

from __future__ import annotations

from .registry import registry


realtime_events_total = registry.counter(
    "realtime_events_total",
    "Count of realtime events handled, by event name and direction.",
    label_names=("topic", "direction"),
)

realtime_connections = registry.gauge(
    "realtime_active_connections",
    "Number of active websocket connections handled locally.",
    label_names=("scope",),
)

realtime_publish_errors_total = registry.counter(
    "realtime_publish_errors_total",
    "Cross-node publishes that could not be delivered to the broker.",
    label_names=("topic", "reason"),
)

realtime_transport_restarts_total = registry.counter(
    "realtime_transport_restarts_total",
    "Broker reconnect attempts after a lost subscription.",
    label_names=("reason",),
)

chat_messages_total = registry.counter(
    "chat_messages_total",
    "Chat send attempts by outcome.",
    label_names=("outcome",),
)

chat_notifications_total = registry.counter(
    "chat_notifications_total",
    "Notification routing decisions.",
    label_names=("decision",),
)

chat_persist_seconds = registry.summary(
    "chat_persist_seconds",
    "Time spent persisting a chat message.",
)

chat_online_users = registry.gauge(
    "chat_online_users",
    "Distinct online users across the cluster, sampled on scrape.",
)

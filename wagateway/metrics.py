from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


SESSION_STATE = Gauge(
    "wagateway_session_state",
    "Current session state (1 for the active state, 0 otherwise)",
    labelnames=("state",),
)
SESSION_TRANSITIONS_TOTAL = Counter(
    "wagateway_session_transitions_total",
    "Applied session state transitions",
    labelnames=("from_state", "to_state"),
)
IGNORED_EVENTS_TOTAL = Counter(
    "wagateway_ignored_events_total",
    "Lifecycle events ignored because they did not fit the current state",
    labelnames=("event", "state"),
)
RECOVERY_ATTEMPTS_TOTAL = Counter(
    "wagateway_recovery_attempts_total",
    "Session teardown and re-initialize attempts grouped by outcome",
    labelnames=("result",),
)
COMMANDS_TOTAL = Counter(
    "wagateway_commands_total",
    "Command gateway requests grouped by command and result",
    labelnames=("command", "result"),
)
MEDIA_BYTES = Histogram(
    "wagateway_media_bytes",
    "Size of media payloads fetched for outbound sends",
    buckets=(1024, 16 * 1024, 128 * 1024, 1024 * 1024, 4 * 1024 * 1024, 16 * 1024 * 1024),
)
SUBSCRIBERS = Gauge(
    "wagateway_realtime_subscribers",
    "Number of connected realtime subscribers",
)
DROPPED_NOTICES_TOTAL = Counter(
    "wagateway_dropped_notices_total",
    "Realtime notices dropped because a subscriber buffer was full",
)

__all__ = [
    "SESSION_STATE",
    "SESSION_TRANSITIONS_TOTAL",
    "IGNORED_EVENTS_TOTAL",
    "RECOVERY_ATTEMPTS_TOTAL",
    "COMMANDS_TOTAL",
    "MEDIA_BYTES",
    "SUBSCRIBERS",
    "DROPPED_NOTICES_TOTAL",
]

"""Typed events emitted by the session engine."""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional


LOGGER = logging.getLogger("wagateway.events")


class EventKind(str, enum.Enum):
    QR_CHALLENGE = "qr-challenge"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    AUTH_FAILED = "auth-failed"
    DISCONNECTED = "disconnected"
    MESSAGE_RECEIVED = "message-received"
    MESSAGE_ACK = "message-ack"
    GROUP_NOTIFICATION = "group-notification"
    CALL_RECEIVED = "call-received"
    CONTACT_CHANGED = "contact-changed"


LIFECYCLE_KINDS = frozenset(
    {
        EventKind.QR_CHALLENGE,
        EventKind.AUTHENTICATED,
        EventKind.READY,
        EventKind.AUTH_FAILED,
        EventKind.DISCONNECTED,
    }
)


@dataclass(frozen=True, slots=True)
class Event:
    kind: EventKind
    payload: Mapping[str, Any] = field(default_factory=dict)
    emitted_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    @property
    def is_lifecycle(self) -> bool:
        return self.kind in LIFECYCLE_KINDS

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "payload": dict(self.payload)}


# Raw event names used by the automation sidecar.
_RAW_EVENT_KINDS: dict[str, EventKind] = {
    "qr": EventKind.QR_CHALLENGE,
    "authenticated": EventKind.AUTHENTICATED,
    "ready": EventKind.READY,
    "auth_failure": EventKind.AUTH_FAILED,
    "disconnected": EventKind.DISCONNECTED,
    "message": EventKind.MESSAGE_RECEIVED,
    "message_ack": EventKind.MESSAGE_ACK,
    "group_join": EventKind.GROUP_NOTIFICATION,
    "group_leave": EventKind.GROUP_NOTIFICATION,
    "group_update": EventKind.GROUP_NOTIFICATION,
    "group_admin_changed": EventKind.GROUP_NOTIFICATION,
    "call": EventKind.CALL_RECEIVED,
    "contact_changed": EventKind.CONTACT_CHANGED,
}

# ACK_ERROR: -1, ACK_PENDING: 0, ACK_SERVER: 1, ACK_DEVICE: 2, ACK_READ: 3, ACK_PLAYED: 4
ACK_NAMES = {
    -1: "error",
    0: "pending",
    1: "server",
    2: "device",
    3: "read",
    4: "played",
}


def _coerce_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _as_mapping(value: Any) -> dict[str, Any]:
    if isinstance(value, Mapping):
        return dict(value)
    return {}


def _message_fields(raw: Mapping[str, Any]) -> dict[str, Any]:
    message = _as_mapping(raw.get("message") or raw.get("msg"))
    return {
        "id": message.get("id") or raw.get("message_id"),
        "from": message.get("from") or raw.get("from"),
        "to": message.get("to") or raw.get("to"),
        "body": message.get("body") if isinstance(message.get("body"), str) else raw.get("body") or "",
        "from_me": bool(message.get("fromMe", message.get("from_me", False))),
        "has_media": bool(message.get("hasMedia", message.get("has_media", False))),
        "timestamp": message.get("timestamp") or raw.get("timestamp"),
    }


def parse_engine_event(raw: Mapping[str, Any]) -> Optional[Event]:
    """Translate a raw sidecar event into an :class:`Event`.

    Returns ``None`` for event names the gateway does not track
    (``loading_screen``, ``change_state``, ``message_create`` ...).
    """

    if not isinstance(raw, Mapping):
        return None
    name = str(raw.get("event") or raw.get("type") or "").strip().lower()
    kind = _RAW_EVENT_KINDS.get(name)
    if kind is None:
        LOGGER.debug("event=engine_event_skipped name=%s", name or "-")
        return None

    data = raw.get("data")
    body: Mapping[str, Any] = data if isinstance(data, Mapping) else raw

    if kind is EventKind.QR_CHALLENGE:
        qr_value = body.get("qr") or body.get("code") or raw.get("qr")
        qr_text = str(qr_value).strip() if qr_value is not None else ""
        if not qr_text:
            LOGGER.warning("event=engine_event_invalid name=qr reason=empty_qr")
            return None
        return Event(kind, {"qr": qr_text})

    if kind in {EventKind.AUTH_FAILED, EventKind.DISCONNECTED}:
        reason = body.get("reason") or body.get("message") or body.get("msg")
        return Event(kind, {"reason": str(reason) if reason is not None else None})

    if kind in {EventKind.AUTHENTICATED, EventKind.READY}:
        return Event(kind, {})

    if kind is EventKind.MESSAGE_RECEIVED:
        return Event(kind, _message_fields(body))

    if kind is EventKind.MESSAGE_ACK:
        fields = _message_fields(body)
        ack = _coerce_int(body.get("ack"))
        fields["ack"] = ack
        fields["ack_name"] = ACK_NAMES.get(ack) if ack is not None else None
        return Event(kind, fields)

    if kind is EventKind.GROUP_NOTIFICATION:
        notification = _as_mapping(body.get("notification")) or dict(body)
        action = name.replace("group_", "", 1)
        return Event(
            kind,
            {
                "action": action,
                "chat_id": notification.get("chatId") or notification.get("chat_id"),
                "author": notification.get("author"),
                "type": notification.get("type"),
                "recipients": list(notification.get("recipientIds") or notification.get("recipients") or []),
            },
        )

    if kind is EventKind.CALL_RECEIVED:
        call = _as_mapping(body.get("call")) or dict(body)
        return Event(
            kind,
            {
                "id": call.get("id"),
                "from": call.get("from"),
                "from_me": bool(call.get("fromMe", call.get("from_me", False))),
                "is_group": bool(call.get("isGroup", call.get("is_group", False))),
                "is_video": bool(call.get("isVideo", call.get("is_video", False))),
            },
        )

    return Event(
        kind,
        {
            "old_id": body.get("oldId") or body.get("old_id"),
            "new_id": body.get("newId") or body.get("new_id"),
            "is_contact": bool(body.get("isContact", body.get("is_contact", False))),
        },
    )


__all__ = [
    "ACK_NAMES",
    "Event",
    "EventKind",
    "LIFECYCLE_KINDS",
    "parse_engine_event",
]

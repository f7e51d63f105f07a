"""Lightweight configuration helpers for the WhatsApp gateway."""
from __future__ import annotations

import os
from dataclasses import dataclass


DEFAULT_ENGINE_URL = "http://waweb:9001"
DEFAULT_PORT = 7005
DEFAULT_MEDIA_MAX_BYTES = 16 * 1024 * 1024


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


def _coerce_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    cleaned = value.strip().lower()
    if not cleaned:
        return default
    return cleaned in {"1", "true", "yes", "on"}


def _normalize_engine_url(raw: str | None) -> str:
    if not raw:
        return DEFAULT_ENGINE_URL
    cleaned = raw.strip()
    if not cleaned:
        return DEFAULT_ENGINE_URL
    return cleaned.rstrip("/") or DEFAULT_ENGINE_URL


def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    if cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        return float(cleaned)
    except ValueError:
        return default


def _parse_prefixes(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    items = [item.strip().lower() for item in raw.split(",")]
    return tuple(item for item in items if item)


@dataclass(frozen=True, slots=True)
class GatewayConfig:
    port: int
    engine_url: str
    engine_token: str | None
    session_id: str
    webhook_secret: str | None
    engine_http_timeout: float
    command_timeout: float
    media_fetch_timeout: float
    media_max_bytes: int
    media_allowed_types: tuple[str, ...]
    recovery_max_attempts: int
    recovery_base_delay: float
    recovery_max_delay: float
    subscriber_queue_size: int
    default_country_code: str
    ping_reply_enabled: bool
    reject_calls: bool


def gateway_config() -> GatewayConfig:
    session_id = (os.getenv("WA_SESSION_ID") or "default").strip() or "default"
    country_code = (os.getenv("DEFAULT_COUNTRY_CODE") or "62").strip().lstrip("+") or "62"

    return GatewayConfig(
        port=_coerce_int(os.getenv("PORT"), DEFAULT_PORT),
        engine_url=_normalize_engine_url(os.getenv("WA_ENGINE_URL")),
        engine_token=(os.getenv("WA_ENGINE_TOKEN") or "").strip() or None,
        session_id=session_id,
        webhook_secret=(os.getenv("WEBHOOK_SECRET") or "").strip() or None,
        engine_http_timeout=_parse_duration(os.getenv("ENGINE_HTTP_TIMEOUT"), default=15.0),
        command_timeout=_parse_duration(os.getenv("COMMAND_TIMEOUT"), default=30.0),
        media_fetch_timeout=_parse_duration(os.getenv("MEDIA_FETCH_TIMEOUT"), default=15.0),
        media_max_bytes=max(1, _coerce_int(os.getenv("MEDIA_MAX_BYTES"), DEFAULT_MEDIA_MAX_BYTES)),
        media_allowed_types=_parse_prefixes(os.getenv("MEDIA_ALLOWED_TYPES")),
        recovery_max_attempts=max(0, _coerce_int(os.getenv("RECOVERY_MAX_ATTEMPTS"), 5)),
        recovery_base_delay=_parse_duration(os.getenv("RECOVERY_BASE_DELAY"), default=1.0),
        recovery_max_delay=_parse_duration(os.getenv("RECOVERY_MAX_DELAY"), default=60.0),
        subscriber_queue_size=max(1, _coerce_int(os.getenv("SUBSCRIBER_QUEUE_SIZE"), 100)),
        default_country_code=country_code,
        ping_reply_enabled=_coerce_bool(os.getenv("PING_REPLY_ENABLED"), True),
        reject_calls=_coerce_bool(os.getenv("REJECT_CALLS"), True),
    )


__all__ = [
    "GatewayConfig",
    "DEFAULT_ENGINE_URL",
    "DEFAULT_PORT",
    "DEFAULT_MEDIA_MAX_BYTES",
    "gateway_config",
]

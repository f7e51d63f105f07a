from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .errors import (
    DeliveryError,
    GatewayError,
    SessionNotReadyError,
    UnreachableRecipientError,
    ValidationError,
)
from .formatter import PhoneNumberError, format_phone_number
from .manager import SessionManager, SessionState
from .media import MediaFetcher
from .metrics import COMMANDS_TOTAL


LOGGER = logging.getLogger("wagateway.gateway")

INVALID_VALUE = "Invalid value"

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class SendText:
    recipient: str
    text: str


@dataclass(frozen=True, slots=True)
class SendMedia:
    recipient: str
    media_ref: str
    caption: Optional[str] = None


@dataclass(slots=True)
class CommandResult:
    ok: bool
    payload: dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[str] = None

    @classmethod
    def from_error(cls, exc: GatewayError) -> "CommandResult":
        return cls(ok=False, payload=exc.to_payload(), error_kind=exc.kind)

    def to_payload(self) -> dict[str, Any]:
        if self.ok:
            return {"status": True, "response": self.payload}
        return dict(self.payload)


def _blank(value: Any) -> bool:
    return value is None or not str(value).strip()


def _log_late_result(task: "asyncio.Future[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.warning("stage=late_engine_result error=%s", exc)
    else:
        LOGGER.info("stage=late_engine_result status=completed")


class CommandGateway:
    """Validate and execute outbound send commands against the live session."""

    def __init__(
        self,
        manager: SessionManager,
        fetcher: MediaFetcher,
        *,
        command_timeout: float = 30.0,
        canonicalize: Callable[[str], str] = format_phone_number,
    ) -> None:
        self._manager = manager
        self._fetcher = fetcher
        self._command_timeout = command_timeout
        self._canonicalize = canonicalize

    def _require_ready(self) -> None:
        state = self._manager.state
        if state is not SessionState.READY:
            raise SessionNotReadyError(state.value)

    def _recipient(self, raw: str) -> str:
        try:
            return self._canonicalize(raw)
        except PhoneNumberError as exc:
            # not a phone number, so it cannot be a registered identity either
            LOGGER.info("stage=send_rejected to=%s reason=unparseable_number error=%s", raw, exc)
            raise UnreachableRecipientError(raw) from exc

    async def _bounded(self, call: Awaitable[T], *, what: str) -> T:
        # the engine call keeps running after a timeout and keeps the session lock
        # until it settles; only the caller gives up
        task = asyncio.ensure_future(call)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self._command_timeout)
        except asyncio.TimeoutError as exc:
            task.add_done_callback(_log_late_result)
            self._manager.hold_lock_until(task)
            LOGGER.error("stage=%s_timeout timeout=%s", what, self._command_timeout)
            raise DeliveryError(f"{what}_timeout", cause=exc) from exc

    async def send_text(self, recipient: str, text: str) -> CommandResult:
        try:
            result = await self._send_text(SendText(recipient=recipient, text=text))
        except GatewayError as exc:
            COMMANDS_TOTAL.labels("send_text", exc.kind).inc()
            raise
        COMMANDS_TOTAL.labels("send_text", "ok").inc()
        return result

    async def _send_text(self, command: SendText) -> CommandResult:
        errors: dict[str, str] = {}
        if _blank(command.recipient):
            errors["number"] = INVALID_VALUE
        if _blank(command.text):
            errors["message"] = INVALID_VALUE
        if errors:
            raise ValidationError(errors)

        self._require_ready()
        to = self._recipient(command.recipient)

        async with self._manager.ready_engine() as engine:
            try:
                reachable = await self._bounded(engine.is_reachable(to), what="reachability")
            except DeliveryError:
                raise
            except Exception as exc:
                LOGGER.error("stage=reachability_fail to=%s error=%s", to, exc)
                raise DeliveryError(f"reachability_check_failed: {exc}", cause=exc) from exc
            if not reachable:
                LOGGER.info("stage=send_rejected to=%s reason=unreachable", to)
                raise UnreachableRecipientError(to)
            try:
                response = await self._bounded(engine.send_text(to, command.text), what="send")
            except DeliveryError:
                raise
            except Exception as exc:
                LOGGER.error("stage=send_fail kind=text to=%s error=%s", to, exc)
                raise DeliveryError(str(exc) or "send_failed", cause=exc) from exc

        LOGGER.info("stage=send_ok kind=text to=%s", to)
        return CommandResult(ok=True, payload=response)

    async def send_media(
        self, recipient: str, media_ref: str, caption: Optional[str] = None
    ) -> CommandResult:
        try:
            result = await self._send_media(
                SendMedia(recipient=recipient, media_ref=media_ref, caption=caption)
            )
        except GatewayError as exc:
            COMMANDS_TOTAL.labels("send_media", exc.kind).inc()
            raise
        COMMANDS_TOTAL.labels("send_media", "ok").inc()
        return result

    async def _send_media(self, command: SendMedia) -> CommandResult:
        errors: dict[str, str] = {}
        if _blank(command.recipient):
            errors["number"] = INVALID_VALUE
        if _blank(command.media_ref):
            errors["file"] = INVALID_VALUE
        if errors:
            raise ValidationError(errors)

        self._require_ready()
        # no reachability check on this path, unlike send_text
        to = self._recipient(command.recipient)
        media = await self._fetcher.resolve(command.media_ref)

        async with self._manager.ready_engine() as engine:
            try:
                response = await self._bounded(
                    engine.send_media(
                        to,
                        media.as_base64(),
                        media.content_type,
                        command.caption or None,
                        filename=media.filename,
                    ),
                    what="send",
                )
            except DeliveryError:
                raise
            except Exception as exc:
                LOGGER.error("stage=send_fail kind=media to=%s error=%s", to, exc)
                raise DeliveryError(str(exc) or "send_failed", cause=exc) from exc

        LOGGER.info(
            "stage=send_ok kind=media to=%s content_type=%s size=%s",
            to,
            media.content_type,
            media.size,
        )
        return CommandResult(ok=True, payload=response)


__all__ = ["CommandGateway", "CommandResult", "SendMedia", "SendText"]

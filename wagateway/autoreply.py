"""Built-in responders reacting to incoming content events."""

from __future__ import annotations

import logging

from .errors import SessionNotReadyError
from .events import Event, EventKind
from .manager import SessionManager


LOGGER = logging.getLogger("wagateway.autoreply")

PING = "!ping"
PING_REPLY = "!ping reply"
PONG = "pong"


def describe_call(event: Event, *, rejected: bool) -> str:
    direction = "Outgoing" if event.get("from_me") else "Incoming"
    media = "video" if event.get("is_video") else "audio"
    if event.get("is_group"):
        media = f"group {media}"
    text = f"[{direction}] Phone call from {event.get('from')}, type {media} call."
    if rejected:
        text += " This call was automatically rejected by the script."
    return text


class AutoResponder:
    """Answer ``!ping`` messages and reject incoming calls.

    Runs through the session's serialized command path; anything that fails
    is logged and dropped.
    """

    def __init__(
        self,
        manager: SessionManager,
        *,
        ping_enabled: bool = True,
        reject_calls: bool = True,
    ) -> None:
        self._manager = manager
        self._ping_enabled = ping_enabled
        self._reject_calls = reject_calls

    async def __call__(self, event: Event) -> None:
        if event.kind is EventKind.MESSAGE_RECEIVED and self._ping_enabled:
            await self._on_message(event)
        elif event.kind is EventKind.CALL_RECEIVED:
            await self._on_call(event)

    async def _on_message(self, event: Event) -> None:
        if event.get("from_me"):
            return
        body = str(event.get("body") or "")
        if body not in {PING, PING_REPLY}:
            return
        sender = event.get("from")
        if not sender:
            return
        quoted = event.get("id") if body == PING_REPLY else None
        try:
            async with self._manager.ready_engine() as engine:
                await engine.send_text(str(sender), PONG, quoted_message_id=quoted)
        except SessionNotReadyError as exc:
            LOGGER.info("stage=autoreply_skipped kind=ping state=%s", exc.state)
            return
        except Exception as exc:
            LOGGER.warning("stage=autoreply_failed kind=ping to=%s error=%s", sender, exc)
            return
        LOGGER.info("stage=autoreply_ok kind=ping to=%s quoted=%s", sender, bool(quoted))

    async def _on_call(self, event: Event) -> None:
        caller = event.get("from")
        call_id = event.get("id")
        LOGGER.info("stage=call_received from=%s reject=%s", caller, self._reject_calls)
        if not caller or event.get("from_me"):
            return
        rejected = False
        try:
            async with self._manager.ready_engine() as engine:
                if self._reject_calls and call_id:
                    await engine.reject_call(str(call_id))
                    rejected = True
                await engine.send_text(str(caller), describe_call(event, rejected=rejected))
        except SessionNotReadyError as exc:
            LOGGER.info("stage=autoreply_skipped kind=call state=%s", exc.state)
            return
        except Exception as exc:
            LOGGER.warning(
                "stage=autoreply_failed kind=call from=%s rejected=%s error=%s",
                caller,
                rejected,
                exc,
            )
            return
        LOGGER.info("stage=autoreply_ok kind=call from=%s rejected=%s", caller, rejected)


__all__ = ["AutoResponder", "describe_call"]

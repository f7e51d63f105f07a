from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Mapping, Optional, Protocol
from urllib.parse import quote

import httpx

from .errors import EngineError
from .events import Event, parse_engine_event


LOGGER = logging.getLogger("wagateway.engine")

_STREAM_CLOSED = object()


class SessionEngine(Protocol):
    """Interface consumed from the automation-driven messaging client."""

    def events(self) -> AsyncIterator[Event]:
        ...

    async def initialize(self) -> None:
        ...

    async def destroy(self) -> None:
        ...

    async def send_text(
        self, to: str, body: str, *, quoted_message_id: str | None = None
    ) -> dict[str, Any]:
        ...

    async def send_media(
        self,
        to: str,
        payload: str,
        content_type: str,
        caption: str | None = None,
        *,
        filename: str | None = None,
    ) -> dict[str, Any]:
        ...

    async def is_reachable(self, to: str) -> bool:
        ...

    async def reject_call(self, call_id: str) -> None:
        ...


class EventStream:
    """Single-consumer queue turning pushed events into an async iterator."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, event: Event) -> bool:
        if self._closed:
            return False
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_STREAM_CLOSED)

    async def __aiter__(self) -> AsyncIterator[Event]:
        while True:
            item = await self._queue.get()
            if item is _STREAM_CLOSED:
                return
            yield item


class WawebEngine:
    """Session engine backed by a whatsapp-web automation sidecar over HTTP.

    Commands are plain HTTP calls; events are pushed by the sidecar to the
    gateway webhook and handed to :meth:`feed`.
    """

    def __init__(
        self,
        base_url: str,
        session_id: str,
        *,
        token: str | None = None,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session_id = session_id
        headers = {"Content-Type": "application/json"}
        if token:
            headers["X-Auth-Token"] = token
        self._http = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self._stream = EventStream()

    @property
    def session_id(self) -> str:
        return self._session_id

    def _path(self, suffix: str) -> str:
        return f"/session/{quote(self._session_id, safe='')}{suffix}"

    def events(self) -> AsyncIterator[Event]:
        return self._stream.__aiter__()

    def feed(self, raw: Mapping[str, Any]) -> Optional[Event]:
        event = parse_engine_event(raw)
        if event is None:
            return None
        if not self._stream.push(event):
            LOGGER.info(
                "event=engine_event_dropped session=%s kind=%s reason=stream_closed",
                self._session_id,
                event.kind.value,
            )
            return None
        return event

    async def _request(
        self,
        method: str,
        suffix: str,
        *,
        json: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        try:
            response = await self._http.request(method, self._path(suffix), json=json, params=params)
        except httpx.HTTPError as exc:
            raise EngineError(f"engine_unreachable: {exc}") from exc
        if response.status_code >= 400:
            detail = response.text.strip() or response.reason_phrase
            raise EngineError(detail or "engine_error", status=response.status_code)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    async def initialize(self) -> None:
        await self._request("POST", "/start")
        LOGGER.info("stage=engine_initialize session=%s", self._session_id)

    async def destroy(self) -> None:
        self._stream.close()
        try:
            await self._request("POST", "/destroy")
        except EngineError as exc:
            LOGGER.warning(
                "stage=engine_destroy_failed session=%s error=%s", self._session_id, exc
            )
        finally:
            with contextlib.suppress(Exception):
                await self._http.aclose()
        LOGGER.info("stage=engine_destroy session=%s", self._session_id)

    async def send_text(
        self, to: str, body: str, *, quoted_message_id: str | None = None
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"to": to, "text": body}
        if quoted_message_id:
            payload["quoted_message_id"] = quoted_message_id
        result = await self._request("POST", "/send", json=payload)
        return result if isinstance(result, dict) else {"result": result}

    async def send_media(
        self,
        to: str,
        payload: str,
        content_type: str,
        caption: str | None = None,
        *,
        filename: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "to": to,
            "media": {
                "mimetype": content_type,
                "data": payload,
                "filename": filename or "Media",
            },
        }
        if caption:
            body["caption"] = caption
        result = await self._request("POST", "/send", json=body)
        return result if isinstance(result, dict) else {"result": result}

    async def is_reachable(self, to: str) -> bool:
        result = await self._request("GET", "/registered", params={"to": to})
        if isinstance(result, dict):
            return bool(result.get("registered"))
        return bool(result)

    async def reject_call(self, call_id: str) -> None:
        await self._request("POST", f"/calls/{quote(call_id, safe='')}/reject")


__all__ = ["EventStream", "SessionEngine", "WawebEngine"]

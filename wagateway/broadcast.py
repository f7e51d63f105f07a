"""Fan-out of session engine events to realtime subscribers."""

from __future__ import annotations

import asyncio
import base64
import contextlib
import io
import itertools
import logging
import time
from asyncio import QueueEmpty
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

import qrcode

from .events import Event, EventKind
from .metrics import DROPPED_NOTICES_TOTAL, SUBSCRIBERS


LOGGER = logging.getLogger("wagateway.broadcast")

CONNECTING_TEXT = "Connecting..."
QR_TEXT = "QR Code received, scan please!"
READY_TEXT = "Whatsapp is ready!"
AUTHENTICATED_TEXT = "Whatsapp is authenticated!"
AUTH_FAILURE_TEXT = "Auth failure, restarting..."
DISCONNECTED_TEXT = "Whatsapp is disconnected!"


@dataclass(frozen=True, slots=True)
class Notice:
    """One realtime frame, ``{"event": ..., "data": ...}`` on the wire."""

    event: str
    data: Any = None

    def to_payload(self) -> dict[str, Any]:
        return {"event": self.event, "data": self.data}


def render_qr_data_url(text: str) -> str:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=4,
    )
    qr.add_data(text)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    encoded = base64.b64encode(buf.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


_ids = itertools.count(1)


@dataclass(eq=False)
class Subscriber:
    queue_size: int
    id: int = field(default_factory=lambda: next(_ids))
    connected_at: float = field(default_factory=time.time)
    dropped: int = 0

    def __post_init__(self) -> None:
        self._queue: asyncio.Queue[Notice] = asyncio.Queue(maxsize=self.queue_size)

    def offer(self, notice: Notice) -> None:
        if self._queue.full():
            try:
                self._queue.get_nowait()
            except QueueEmpty:
                pass
            else:
                self.dropped += 1
                DROPPED_NOTICES_TOTAL.inc()
        self._queue.put_nowait(notice)

    async def get(self) -> Notice:
        return await self._queue.get()

    def get_nowait(self) -> Notice:
        return self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()


@dataclass(frozen=True, slots=True)
class _Announcement:
    notices: tuple[Notice, ...]


_InboxItem = Union[Event, _Announcement]


class BroadcastBridge:
    """Republish session events to every registered subscriber.

    ``publish`` never blocks: events are queued and a single dispatcher task
    translates them (once per event) and copies the resulting notices into
    each subscriber's bounded buffer, dropping that subscriber's oldest notice
    when it falls behind.
    """

    def __init__(
        self,
        *,
        queue_size: int = 100,
        qr_renderer: Callable[[str], str] = render_qr_data_url,
    ) -> None:
        self._queue_size = queue_size
        self._qr_renderer = qr_renderer
        self._subscribers: dict[int, Subscriber] = {}
        self._inbox: asyncio.Queue[_InboxItem] = asyncio.Queue()
        self._dispatcher: Optional[asyncio.Task[None]] = None
        self._failure: Optional[Notice] = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def failure(self) -> Optional[Notice]:
        return self._failure

    def start(self) -> None:
        if self._dispatcher is not None and not self._dispatcher.done():
            return
        self._dispatcher = asyncio.get_running_loop().create_task(
            self._dispatch_loop(), name="broadcast-dispatcher"
        )

    async def stop(self) -> None:
        task = self._dispatcher
        self._dispatcher = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def join(self) -> None:
        """Wait until every published item has been fanned out."""
        await self._inbox.join()

    def register(self) -> Subscriber:
        subscriber = Subscriber(queue_size=self._queue_size)
        subscriber.offer(Notice("message", CONNECTING_TEXT))
        if self._failure is not None:
            subscriber.offer(self._failure)
        self._subscribers[subscriber.id] = subscriber
        SUBSCRIBERS.set(len(self._subscribers))
        LOGGER.info(
            "event=subscriber_registered subscriber=%s total=%s",
            subscriber.id,
            len(self._subscribers),
        )
        return subscriber

    def unregister(self, subscriber: Subscriber) -> None:
        if self._subscribers.pop(subscriber.id, None) is None:
            return
        SUBSCRIBERS.set(len(self._subscribers))
        LOGGER.info(
            "event=subscriber_removed subscriber=%s dropped=%s total=%s",
            subscriber.id,
            subscriber.dropped,
            len(self._subscribers),
        )

    def publish(self, event: Event) -> None:
        self._inbox.put_nowait(event)

    def announce(self, *notices: Notice) -> None:
        self._inbox.put_nowait(_Announcement(tuple(notices)))

    def report_failure(self, text: str) -> None:
        """Broadcast a failure notice that late subscribers also receive."""
        notice = Notice("failure", text)
        self._failure = notice
        self.announce(Notice("message", text), notice)

    def clear_failure(self) -> None:
        self._failure = None

    async def _dispatch_loop(self) -> None:
        while True:
            item = await self._inbox.get()
            try:
                if isinstance(item, _Announcement):
                    notices = list(item.notices)
                else:
                    notices = await self._translate(item)
                self._fan_out(notices)
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("event=broadcast_dispatch_failed")
            finally:
                self._inbox.task_done()

    async def _translate(self, event: Event) -> list[Notice]:
        kind = event.kind
        if kind is EventKind.QR_CHALLENGE:
            notices: list[Notice] = []
            try:
                data_url = await asyncio.to_thread(self._qr_renderer, str(event.get("qr") or ""))
            except Exception:
                LOGGER.exception("event=qr_render_failed")
            else:
                notices.append(Notice("qr", data_url))
            notices.append(Notice("message", QR_TEXT))
            return notices
        if kind is EventKind.READY:
            self._failure = None
            return [Notice("ready", READY_TEXT), Notice("message", READY_TEXT)]
        if kind is EventKind.AUTHENTICATED:
            return [Notice("authenticated", AUTHENTICATED_TEXT), Notice("message", AUTHENTICATED_TEXT)]
        if kind is EventKind.AUTH_FAILED:
            return [Notice("message", AUTH_FAILURE_TEXT)]
        if kind is EventKind.DISCONNECTED:
            return [Notice("message", DISCONNECTED_TEXT)]
        return [Notice("event", event.to_dict())]

    def _fan_out(self, notices: list[Notice]) -> None:
        if not notices:
            return
        for subscriber in list(self._subscribers.values()):
            if subscriber.id not in self._subscribers:
                continue
            for notice in notices:
                try:
                    subscriber.offer(notice)
                except Exception as exc:
                    LOGGER.warning(
                        "event=broadcast_offer_failed subscriber=%s error=%s",
                        subscriber.id,
                        exc,
                    )


__all__ = [
    "BroadcastBridge",
    "Notice",
    "Subscriber",
    "render_qr_data_url",
    "CONNECTING_TEXT",
]

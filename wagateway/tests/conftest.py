from __future__ import annotations

import asyncio
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Mapping, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:  # pragma: no cover - path setup
    sys.path.insert(0, str(PROJECT_ROOT))

from config import GatewayConfig
from wagateway.broadcast import BroadcastBridge
from wagateway.engine import EventStream
from wagateway.events import Event, EventKind, parse_engine_event
from wagateway.manager import RecoveryPolicy, SessionManager, SessionState


class FakeEngine:
    """In-memory session engine recording every command it receives."""

    def __init__(self, *, reachable: bool = True, init_error: Exception | None = None) -> None:
        self.stream = EventStream()
        self.reachable = reachable
        self.init_error = init_error
        self.send_error: Exception | None = None
        self.send_gate: asyncio.Event | None = None
        self.initialize_calls = 0
        self.destroy_calls = 0
        self.sent: list[dict[str, Any]] = []
        self.reachability_checks: list[str] = []
        self.rejected_calls: list[str] = []

    def events(self):
        return self.stream.__aiter__()

    def emit(self, kind: EventKind, **payload: Any) -> None:
        self.stream.push(Event(kind, payload))

    def feed(self, raw: Mapping[str, Any]) -> Optional[Event]:
        event = parse_engine_event(raw)
        if event is None or not self.stream.push(event):
            return None
        return event

    async def initialize(self) -> None:
        self.initialize_calls += 1
        if self.init_error is not None:
            raise self.init_error

    async def destroy(self) -> None:
        self.destroy_calls += 1
        self.stream.close()

    async def _deliver(self, record: dict[str, Any]) -> dict[str, Any]:
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(record)
        return {"id": f"msg-{len(self.sent)}", "to": record["to"]}

    async def send_text(
        self, to: str, body: str, *, quoted_message_id: str | None = None
    ) -> dict[str, Any]:
        return await self._deliver(
            {"kind": "text", "to": to, "body": body, "quoted": quoted_message_id}
        )

    async def send_media(
        self,
        to: str,
        payload: str,
        content_type: str,
        caption: str | None = None,
        *,
        filename: str | None = None,
    ) -> dict[str, Any]:
        return await self._deliver(
            {
                "kind": "media",
                "to": to,
                "payload": payload,
                "content_type": content_type,
                "caption": caption,
                "filename": filename,
            }
        )

    async def is_reachable(self, to: str) -> bool:
        self.reachability_checks.append(to)
        return self.reachable

    async def reject_call(self, call_id: str) -> None:
        self.rejected_calls.append(call_id)


class EngineFactory:
    """Builds a fresh :class:`FakeEngine` per boot and remembers all of them."""

    def __init__(self) -> None:
        self.engines: list[FakeEngine] = []
        self.init_errors: list[Exception] = []
        self.reachable = True

    def __call__(self) -> FakeEngine:
        error = self.init_errors.pop(0) if self.init_errors else None
        engine = FakeEngine(reachable=self.reachable, init_error=error)
        self.engines.append(engine)
        return engine

    @property
    def current(self) -> FakeEngine:
        return self.engines[-1]


async def wait_until(predicate, *, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


async def drive_to_ready(manager: SessionManager, engine: FakeEngine) -> None:
    engine.emit(EventKind.QR_CHALLENGE, qr="2@abc")
    engine.emit(EventKind.AUTHENTICATED)
    engine.emit(EventKind.READY)
    await wait_until(lambda: manager.state is SessionState.READY)


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def engine_factory() -> EngineFactory:
    return EngineFactory()


@pytest.fixture
def qr_calls() -> list[str]:
    return []


@pytest.fixture
def bridge(qr_calls) -> BroadcastBridge:
    def _render(text: str) -> str:
        qr_calls.append(text)
        return f"data:image/png;base64,{text}"

    return BroadcastBridge(queue_size=10, qr_renderer=_render)


@pytest.fixture
def manager(engine_factory, bridge) -> SessionManager:
    return SessionManager(
        engine_factory,
        bridge,
        policy=RecoveryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0),
        sleep=_no_sleep,
    )


@pytest.fixture
def gateway_cfg() -> GatewayConfig:
    return GatewayConfig(
        port=7005,
        engine_url="http://engine.test",
        engine_token=None,
        session_id="test",
        webhook_secret="s3cret",
        engine_http_timeout=1.0,
        command_timeout=1.0,
        media_fetch_timeout=1.0,
        media_max_bytes=1024,
        media_allowed_types=(),
        recovery_max_attempts=3,
        recovery_base_delay=0.0,
        recovery_max_delay=0.0,
        subscriber_queue_size=50,
        default_country_code="62",
        ping_reply_enabled=True,
        reject_calls=True,
    )


@pytest.fixture
def make_cfg(gateway_cfg):
    def _make(**overrides: Any) -> GatewayConfig:
        return replace(gateway_cfg, **overrides)

    return _make


@pytest.fixture
def settle():
    return wait_until


@pytest.fixture
def ready():
    return drive_to_ready

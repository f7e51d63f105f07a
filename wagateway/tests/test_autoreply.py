from __future__ import annotations

import asyncio

import pytest

from wagateway.autoreply import AutoResponder, describe_call
from wagateway.events import Event, EventKind


SENDER = "6281234567890@c.us"


@pytest.mark.anyio
async def test_ping_gets_pong(manager, engine_factory, ready, settle):
    manager.add_listener(AutoResponder(manager))
    await manager.start()
    try:
        engine = engine_factory.current
        await ready(manager, engine)
        engine.emit(EventKind.MESSAGE_RECEIVED, id="m1", body="!ping", **{"from": SENDER})
        await settle(lambda: len(engine.sent) == 1)
        assert engine.sent[0] == {"kind": "text", "to": SENDER, "body": "pong", "quoted": None}
    finally:
        await manager.shutdown()


@pytest.mark.anyio
async def test_ping_reply_quotes_message(manager, engine_factory, ready, settle):
    manager.add_listener(AutoResponder(manager))
    await manager.start()
    try:
        engine = engine_factory.current
        await ready(manager, engine)
        engine.emit(EventKind.MESSAGE_RECEIVED, id="m2", body="!ping reply", **{"from": SENDER})
        await settle(lambda: len(engine.sent) == 1)
        assert engine.sent[0]["quoted"] == "m2"
    finally:
        await manager.shutdown()


@pytest.mark.anyio
async def test_own_and_other_messages_are_ignored():
    calls = []

    class _Manager:
        def ready_engine(self):  # pragma: no cover - must not be reached
            calls.append("ready_engine")
            raise AssertionError("unexpected send")

    responder = AutoResponder(_Manager())  # type: ignore[arg-type]
    await responder(Event(EventKind.MESSAGE_RECEIVED, {"body": "!ping", "from_me": True, "from": SENDER}))
    await responder(Event(EventKind.MESSAGE_RECEIVED, {"body": "hello", "from": SENDER}))
    await responder(Event(EventKind.MESSAGE_ACK, {"body": "!ping", "from": SENDER}))
    assert calls == []


@pytest.mark.anyio
async def test_ping_before_ready_is_skipped(manager, engine_factory):
    responder = AutoResponder(manager)
    await manager.start()
    try:
        await responder(Event(EventKind.MESSAGE_RECEIVED, {"body": "!ping", "from": SENDER}))
        assert engine_factory.current.sent == []
    finally:
        await manager.shutdown()


@pytest.mark.anyio
async def test_incoming_call_is_rejected_and_explained(manager, engine_factory, ready, settle):
    manager.add_listener(AutoResponder(manager, reject_calls=True))
    await manager.start()
    try:
        engine = engine_factory.current
        await ready(manager, engine)
        engine.emit(EventKind.CALL_RECEIVED, id="call-1", is_video=True, **{"from": SENDER})
        await settle(lambda: len(engine.sent) == 1)
        assert engine.rejected_calls == ["call-1"]
        assert engine.sent[0]["body"] == (
            f"[Incoming] Phone call from {SENDER}, type video call."
            " This call was automatically rejected by the script."
        )
    finally:
        await manager.shutdown()


@pytest.mark.anyio
async def test_call_not_rejected_when_disabled(manager, engine_factory, ready, settle):
    manager.add_listener(AutoResponder(manager, reject_calls=False))
    await manager.start()
    try:
        engine = engine_factory.current
        await ready(manager, engine)
        engine.emit(EventKind.CALL_RECEIVED, id="call-2", **{"from": SENDER})
        await settle(lambda: len(engine.sent) == 1)
        await asyncio.sleep(0)
        assert engine.rejected_calls == []
        assert "rejected" not in engine.sent[0]["body"]
    finally:
        await manager.shutdown()


def test_describe_group_call():
    event = Event(EventKind.CALL_RECEIVED, {"from": SENDER, "is_group": True, "from_me": True})
    assert describe_call(event, rejected=False) == (
        f"[Outgoing] Phone call from {SENDER}, type group audio call."
    )


@pytest.mark.anyio
async def test_outgoing_call_is_left_alone(manager, engine_factory, ready):
    responder = AutoResponder(manager)
    await manager.start()
    try:
        engine = engine_factory.current
        await ready(manager, engine)
        await responder(Event(EventKind.CALL_RECEIVED, {"id": "c9", "from": SENDER, "from_me": True}))
        assert engine.rejected_calls == []
        assert engine.sent == []
    finally:
        await manager.shutdown()

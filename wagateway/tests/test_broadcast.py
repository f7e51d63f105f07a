from __future__ import annotations

import base64

import pytest

from wagateway.broadcast import (
    CONNECTING_TEXT,
    BroadcastBridge,
    Notice,
    Subscriber,
    render_qr_data_url,
)
from wagateway.events import Event, EventKind


def _drain(subscriber: Subscriber) -> list[Notice]:
    notices = []
    while subscriber.pending():
        notices.append(subscriber.get_nowait())
    return notices


def test_render_qr_data_url_is_png():
    data_url = render_qr_data_url("2@abcdef,xyz")
    prefix = "data:image/png;base64,"
    assert data_url.startswith(prefix)
    raw = base64.b64decode(data_url[len(prefix):])
    assert raw[:8] == b"\x89PNG\r\n\x1a\n"


def test_notice_wire_shape():
    assert Notice("message", "hi").to_payload() == {"event": "message", "data": "hi"}


@pytest.mark.anyio
async def test_register_sends_connecting_notice(bridge):
    subscriber = bridge.register()
    assert bridge.subscriber_count == 1
    notice = subscriber.get_nowait()
    assert notice == Notice("message", CONNECTING_TEXT)


@pytest.mark.anyio
async def test_events_fan_out_in_order_to_every_subscriber(bridge, qr_calls):
    bridge.start()
    try:
        subscribers = [bridge.register() for _ in range(3)]
        for sub in subscribers:
            sub.get_nowait()

        bridge.publish(Event(EventKind.QR_CHALLENGE, {"qr": "code-1"}))
        bridge.publish(Event(EventKind.AUTHENTICATED))
        bridge.publish(Event(EventKind.MESSAGE_RECEIVED, {"body": "hi"}))
        bridge.publish(Event(EventKind.READY))
        await bridge.join()

        expected = [
            Notice("qr", "data:image/png;base64,code-1"),
            Notice("message", "QR Code received, scan please!"),
            "authenticated",
            "message",
            "event",
            "ready",
            "message",
        ]
        for sub in subscribers:
            notices = _drain(sub)
            assert notices[:2] == expected[:2]
            assert [n.event for n in notices[2:]] == expected[2:]
            assert notices[4].data == {
                "kind": "message-received",
                "payload": {"body": "hi"},
            }

        # rendered once for the event, not once per subscriber
        assert qr_calls == ["code-1"]
    finally:
        await bridge.stop()


@pytest.mark.anyio
async def test_lifecycle_failures_map_to_messages(bridge):
    bridge.start()
    try:
        sub = bridge.register()
        sub.get_nowait()
        bridge.publish(Event(EventKind.AUTH_FAILED, {"reason": "x"}))
        bridge.publish(Event(EventKind.DISCONNECTED, {"reason": "y"}))
        await bridge.join()
        assert _drain(sub) == [
            Notice("message", "Auth failure, restarting..."),
            Notice("message", "Whatsapp is disconnected!"),
        ]
    finally:
        await bridge.stop()


@pytest.mark.anyio
async def test_unregistered_subscriber_receives_nothing_more(bridge):
    bridge.start()
    try:
        kept = bridge.register()
        gone = bridge.register()
        bridge.unregister(gone)
        bridge.unregister(gone)
        assert bridge.subscriber_count == 1

        bridge.publish(Event(EventKind.READY))
        await bridge.join()
        assert gone.pending() == 1
        assert kept.pending() == 3
    finally:
        await bridge.stop()


@pytest.mark.anyio
async def test_slow_subscriber_drops_oldest():
    bridge = BroadcastBridge(queue_size=3, qr_renderer=lambda text: text)
    bridge.start()
    try:
        slow = bridge.register()
        for n in range(5):
            bridge.publish(Event(EventKind.MESSAGE_RECEIVED, {"n": n}))
        await bridge.join()

        notices = _drain(slow)
        assert [n.data["payload"]["n"] for n in notices] == [2, 3, 4]
        assert slow.dropped == 3
    finally:
        await bridge.stop()


@pytest.mark.anyio
async def test_failure_notice_is_replayed_until_ready(bridge):
    bridge.start()
    try:
        bridge.report_failure("session lost")
        await bridge.join()
        late = bridge.register()
        assert _drain(late) == [
            Notice("message", CONNECTING_TEXT),
            Notice("failure", "session lost"),
        ]

        bridge.publish(Event(EventKind.READY))
        await bridge.join()
        assert bridge.failure is None
        assert [n.event for n in _drain(bridge.register())] == ["message"]
    finally:
        await bridge.stop()


@pytest.mark.anyio
async def test_qr_render_failure_still_announces_message():
    def _broken(text: str) -> str:
        raise ValueError("cannot render")

    bridge = BroadcastBridge(queue_size=5, qr_renderer=_broken)
    bridge.start()
    try:
        sub = bridge.register()
        sub.get_nowait()
        bridge.publish(Event(EventKind.QR_CHALLENGE, {"qr": "x"}))
        await bridge.join()
        assert _drain(sub) == [Notice("message", "QR Code received, scan please!")]
    finally:
        await bridge.stop()

"""Tests for the WebSocket signaling channel."""

import logging

import pytest
from websockets.exceptions import ConnectionClosedOK

from meshcall.exceptions import TransportUnavailable
from meshcall.protocol import chat_envelope, login_envelope


@pytest.mark.asyncio
async def test_send_before_connect_is_dropped(signal_transport, websocket):
    assert signal_transport.is_open is False
    assert await signal_transport.send(login_envelope("alice")) is False
    assert websocket.sent == []


@pytest.mark.asyncio
async def test_send_when_open(signal_transport, websocket):
    await signal_transport.connect()

    assert signal_transport.is_open is True
    assert await signal_transport.send(login_envelope("alice")) is True
    assert websocket.sent == [{"type": "login", "username": "alice"}]


@pytest.mark.asyncio
async def test_send_after_close_is_dropped(signal_transport, websocket):
    await signal_transport.connect()
    await signal_transport.close()

    assert await signal_transport.send(chat_envelope("hi")) is False
    assert websocket.sent == []


@pytest.mark.asyncio
async def test_send_racing_close_is_dropped(signal_transport, websocket):
    """The socket reports open but the write fails."""
    await signal_transport.connect()

    async def closed_send(frame):
        raise ConnectionClosedOK(None, None)

    websocket.send = closed_send

    assert await signal_transport.send(chat_envelope("hi")) is False


@pytest.mark.asyncio
async def test_run_before_connect_raises(signal_transport):
    with pytest.raises(TransportUnavailable):
        await signal_transport.run()


@pytest.mark.asyncio
async def test_run_dispatches_in_arrival_order(signal_transport, websocket):
    seen = []

    async def handler(envelope):
        seen.append(envelope["userId"])

    signal_transport.on_message(handler)
    await signal_transport.connect()
    for user_id in ("u1", "u2", "u3"):
        websocket.feed({"type": "user_joined", "userId": user_id, "username": user_id})
    websocket.finish()

    await signal_transport.run()

    assert seen == ["u1", "u2", "u3"]


@pytest.mark.asyncio
async def test_handler_replaced_not_added(signal_transport, websocket):
    first, second = [], []

    async def first_handler(envelope):
        first.append(envelope)

    async def second_handler(envelope):
        second.append(envelope)

    signal_transport.on_message(first_handler)
    signal_transport.on_message(second_handler)
    await signal_transport.connect()
    websocket.feed({"type": "user_left", "userId": "u1"})
    websocket.finish()

    await signal_transport.run()

    assert first == []
    assert len(second) == 1


@pytest.mark.asyncio
async def test_malformed_frames_are_skipped(signal_transport, websocket, caplog):
    seen = []

    async def handler(envelope):
        seen.append(envelope["type"])

    signal_transport.on_message(handler)
    await signal_transport.connect()
    websocket.feed("{{{ not json")
    websocket.feed({"type": "bogus"})
    websocket.feed({"type": "chat", "content": "ok", "senderName": "bob"})
    websocket.finish()

    with caplog.at_level(logging.WARNING):
        await signal_transport.run()

    assert seen == ["chat"]
    assert "Ignoring frame" in caplog.text


@pytest.mark.asyncio
async def test_handler_error_does_not_stop_reader(signal_transport, websocket):
    seen = []

    async def handler(envelope):
        if envelope["userId"] == "bad":
            raise RuntimeError("boom")
        seen.append(envelope["userId"])

    signal_transport.on_message(handler)
    await signal_transport.connect()
    websocket.feed({"type": "user_left", "userId": "bad"})
    websocket.feed({"type": "user_left", "userId": "good"})
    websocket.finish()

    await signal_transport.run()

    assert seen == ["good"]

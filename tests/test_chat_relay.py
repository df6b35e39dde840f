import asyncio
import json

import pytest

from client.chat_relay import ChannelEvent, ChatChannelState, ChatRelay
from shared.errors import ChannelUnavailable
from shared.protocol import ChatMessage


class FakeChannel:
    """Stands in for an aiortc data channel."""

    def __init__(self, ready_state: str = "connecting") -> None:
        self.readyState = ready_state
        self.sent: list[str] = []
        self.handlers: dict[str, object] = {}

    def on(self, event: str):
        def decorator(handler):
            self.handlers[event] = handler
            return handler

        return decorator

    async def fire(self, event: str, *args) -> None:
        if event in ("open", "close"):
            self.readyState = "open" if event == "open" else "closed"
        await self.handlers[event](*args)

    def send(self, data: str) -> None:
        self.sent.append(data)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def incoming(text: str, sender_id: str = "reader-a") -> str:
    return json.dumps(
        {
            "id": "m-1",
            "sender_id": sender_id,
            "sender_name": "Reader A",
            "text": text,
            "timestamp": "2024-01-01T00:00:00+00:00",
        }
    )


@pytest.mark.anyio
async def test_send_without_open_channel_fails_without_echo() -> None:
    shown: list[ChatMessage] = []
    relay = ChatRelay("client-1", "Client One", on_message=shown.append)

    with pytest.raises(ChannelUnavailable) as info:
        await relay.send("hello")

    assert info.value.retryable is True
    assert shown == []
    assert relay.messages == []


@pytest.mark.anyio
async def test_send_echoes_locally_as_own() -> None:
    shown: list[ChatMessage] = []
    relay = ChatRelay("client-1", "Client One", on_message=shown.append)
    channel = FakeChannel()
    relay.attach(channel)
    await channel.fire("open")

    message = await relay.send("  hello there  ")

    assert message.is_own is True
    assert message.text == "hello there"
    assert shown == [message]
    wire = json.loads(channel.sent[0])
    assert wire["sender_id"] == "client-1"
    assert "is_own" not in wire


@pytest.mark.anyio
async def test_send_rejects_empty_and_oversized_text() -> None:
    relay = ChatRelay("client-1", "Client One")
    channel = FakeChannel()
    relay.attach(channel)
    await channel.fire("open")

    with pytest.raises(ValueError):
        await relay.send("   ")
    with pytest.raises(ValueError):
        await relay.send("x" * 4001)
    assert channel.sent == []


@pytest.mark.anyio
async def test_malformed_payload_is_dropped_and_relay_keeps_working() -> None:
    shown: list[ChatMessage] = []
    relay = ChatRelay("reader-a", "Reader A", on_message=shown.append)
    channel = FakeChannel()
    relay.attach(channel)
    await channel.fire("open")

    await channel.fire("message", "{not json")
    await channel.fire("message", incoming("still here", sender_id="client-1"))

    assert relay.notices[-1].level == "warning"
    assert relay.notices[-1].text == "Received an unreadable chat message"
    assert [message.text for message in shown] == ["still here"]
    assert shown[0].is_own is False
    assert relay.state == ChatChannelState.OPEN


@pytest.mark.anyio
async def test_lifecycle_notices() -> None:
    relay = ChatRelay("client-1", "Client One")

    await relay.handle_event(ChannelEvent.OPEN)
    await relay.handle_event(ChannelEvent.OPEN)
    await relay.handle_event("error", RuntimeError("sctp"))
    await relay.handle_event(ChannelEvent.CLOSE)
    await relay.handle_event(ChannelEvent.CLOSE)

    assert [(notice.level, notice.text) for notice in relay.notices] == [
        ("success", "Chat connected"),
        ("error", "Chat error"),
        ("info", "Chat disconnected"),
    ]
    assert relay.state == ChatChannelState.CLOSED


@pytest.mark.anyio
async def test_attach_to_channel_that_is_already_open() -> None:
    relay = ChatRelay("reader-a", "Reader A")
    channel = FakeChannel(ready_state="open")

    relay.attach(channel)
    await asyncio.sleep(0)

    assert relay.state == ChatChannelState.OPEN
    await relay.send("welcome")
    assert len(channel.sent) == 1


@pytest.mark.anyio
async def test_send_after_channel_closed_fails() -> None:
    relay = ChatRelay("client-1", "Client One")
    channel = FakeChannel()
    relay.attach(channel)
    await channel.fire("open")
    await channel.fire("close")
    assert channel.readyState == "closed"

    with pytest.raises(ChannelUnavailable):
        await relay.send("anyone?")

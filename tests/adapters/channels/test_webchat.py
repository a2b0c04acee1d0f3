from __future__ import annotations

import asyncio
import json

from opencraw.adapters.channels.webchat import WebchatChannel, parse_client_frame
from opencraw.core.models import OutboundMessage


class FakeSocket:
    """In-memory WebSocket; a None frame simulates the client hanging up."""

    def __init__(self):
        self.incoming: asyncio.Queue[str | bytes | None] = asyncio.Queue()
        self.sent: list[dict] = []
        self.accepted = False
        self.closed = False

    async def accept(self):
        self.accepted = True

    async def send_text(self, data):
        self.sent.append(json.loads(data))

    async def receive(self):
        frame = await self.incoming.get()
        if frame is None:
            return {"type": "websocket.disconnect", "code": 1000}
        if isinstance(frame, bytes):
            return {"type": "websocket.receive", "bytes": frame}
        return {"type": "websocket.receive", "text": frame}

    async def close(self):
        self.closed = True


def test_message_frame():
    inbound = parse_client_frame("s1", '{"content": "hello"}')
    assert inbound.kind == "message"
    assert inbound.content == "hello"
    assert inbound.channel_id == "webchat"
    assert inbound.thread_id == "s1"


def test_reaction_frame():
    inbound = parse_client_frame("s1", '{"type": "reaction", "emoji": "👍"}')
    assert inbound.kind == "reaction"
    assert inbound.content == "👍"


def test_reaction_without_emoji_is_ignored():
    assert parse_client_frame("s1", '{"type": "reaction", "emoji": " "}') is None


def test_invalid_frames_are_ignored():
    assert parse_client_frame("s1", "not json") is None
    assert parse_client_frame("s1", "[1, 2]") is None


def test_non_string_content_becomes_empty():
    assert parse_client_frame("s1", '{"content": 42}').content == ""


async def test_socket_round_trip():
    channel = WebchatChannel()
    sink: asyncio.Queue = asyncio.Queue()
    await channel.start(sink)
    socket = FakeSocket()
    task = asyncio.create_task(channel.handle_socket(socket))

    await socket.incoming.put("garbage")
    await socket.incoming.put(b"\x00\x01")
    await socket.incoming.put(json.dumps({"content": "hi"}))
    inbound = await asyncio.wait_for(sink.get(), timeout=1)

    hello = socket.sent[0]
    assert socket.accepted
    assert hello["type"] == "hello"
    assert inbound.sender_id == hello["sender_id"]
    assert channel.connection_count == 1

    await channel.send(inbound.reply_target, OutboundMessage(content="hello back"))
    assert socket.sent[-1] == {"type": "message", "content": "hello back"}

    await socket.incoming.put(None)
    await asyncio.wait_for(task, timeout=1)
    assert channel.connection_count == 0


async def test_send_to_closed_connection_is_dropped():
    await WebchatChannel().send("gone", OutboundMessage(content="hi"))


async def test_stop_closes_open_sockets():
    channel = WebchatChannel()
    await channel.start(asyncio.Queue())
    socket = FakeSocket()
    task = asyncio.create_task(channel.handle_socket(socket))
    await asyncio.sleep(0)
    await channel.stop()
    assert socket.closed
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

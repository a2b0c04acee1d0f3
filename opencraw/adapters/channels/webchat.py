"""
Built-in webchat channel.

The control-plane app mounts ``WebchatChannel.handle_socket`` at ``/ws``.
Every connection gets a fresh sender id announced in a ``hello`` frame;
client frames become inbound messages or reactions, and replies are pushed
back to the live connection of that sender.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from loguru import logger

from opencraw.core.models import InboundMessage, OutboundMessage


@dataclass
class _Connection:
    socket: WebSocket
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def parse_client_frame(sender_id: str, raw: str) -> InboundMessage | None:
    """
    Turn one client text frame into an inbound item.

    Returns None for frames that carry nothing to act on (invalid JSON,
    reactions without an emoji). Unknown frame types count as messages.
    """
    try:
        frame = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("webchat: ignoring non-JSON frame from {}", sender_id)
        return None
    if not isinstance(frame, dict):
        logger.debug("webchat: ignoring non-object frame from {}", sender_id)
        return None

    message_id = str(uuid.uuid4())
    if frame.get("type") == "reaction":
        emoji = frame.get("emoji")
        if not isinstance(emoji, str) or not emoji.strip():
            return None
        return InboundMessage(
            kind="reaction",
            message_id=message_id,
            channel_id=WebchatChannel.channel_id,
            sender_id=sender_id,
            content=emoji,
            thread_id=sender_id,
            metadata=frame,
        )

    content = frame.get("content")
    return InboundMessage(
        kind="message",
        message_id=message_id,
        channel_id=WebchatChannel.channel_id,
        sender_id=sender_id,
        content=content if isinstance(content, str) else "",
        thread_id=sender_id,
        metadata=frame,
    )


class WebchatChannel:
    """WebSocket channel served by the control-plane app."""

    channel_id = "webchat"
    supports_reactions = True

    def __init__(self) -> None:
        self._sink: asyncio.Queue[InboundMessage] | None = None
        self._connections: dict[str, _Connection] = {}

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def start(self, sink: asyncio.Queue[InboundMessage]) -> None:
        self._sink = sink
        logger.info("webchat: accepting connections on /ws")

    async def stop(self) -> None:
        for sender_id, conn in list(self._connections.items()):
            try:
                await conn.socket.close()
            except RuntimeError as e:
                logger.debug("webchat: close failed for {}: {}", sender_id, e)
        self._connections.clear()

    async def handle_socket(self, websocket: WebSocket) -> None:
        """Serve one WebSocket connection until it closes."""
        await websocket.accept()
        sender_id = str(uuid.uuid4())
        conn = _Connection(websocket)
        self._connections[sender_id] = conn
        logger.info("webchat: connection opened ({})", sender_id)
        try:
            async with conn.lock:
                await websocket.send_text(json.dumps({"type": "hello", "sender_id": sender_id}))
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break
                raw = frame.get("text")
                if raw is None:
                    logger.debug("webchat: ignoring binary frame from {}", sender_id)
                    continue
                inbound = parse_client_frame(sender_id, raw)
                if inbound is None:
                    continue
                if self._sink is None:
                    logger.warning("webchat: channel not started, dropping frame from {}", sender_id)
                    continue
                await self._sink.put(inbound)
        except WebSocketDisconnect:
            pass
        finally:
            self._connections.pop(sender_id, None)
            logger.info("webchat: connection closed ({})", sender_id)

    async def send(self, recipient_id: str, message: OutboundMessage) -> None:
        """Push a message frame; a vanished connection drops it silently."""
        conn = self._connections.get(recipient_id)
        if conn is None:
            logger.debug("webchat: no live connection for {}, dropping reply", recipient_id)
            return
        frame: dict[str, Any] = {"type": "message", "content": message.content}
        async with conn.lock:
            await conn.socket.send_text(json.dumps(frame))

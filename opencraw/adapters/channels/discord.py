"""
Discord channel adapter using discord.py.

discord.py owns the gateway connection (HELLO, IDENTIFY, heartbeats with
the last sequence number, resumes). This adapter adds mention gating for
guild channels, splits long replies at Discord's 2000-character limit, and
restarts the client with a growing delay if the connection loop exits.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import discord
from loguru import logger

from opencraw.core.errors import ChannelError
from opencraw.core.models import InboundMessage, OutboundMessage

if TYPE_CHECKING:
    from opencraw.config.schema import DiscordConfig

MESSAGE_CHARS_MAX = 2000
RECONNECT_MIN_S = 5.0
RECONNECT_MAX_S = 300.0


def gateway_intents() -> discord.Intents:
    """GUILD_MESSAGES | DIRECT_MESSAGES | MESSAGE_CONTENT (plus GUILDS for channel lookup)."""
    return discord.Intents(
        guilds=True,
        guild_messages=True,
        dm_messages=True,
        message_content=True,
    )


def mentions_user(content: str, user_id: str) -> bool:
    return f"<@{user_id}>" in content or f"<@!{user_id}>" in content


def split_content(text: str, limit: int = MESSAGE_CHARS_MAX) -> list[str]:
    """Split text into chunks of at most ``limit`` characters, preferring line breaks."""
    chunks: list[str] = []
    while len(text) > limit:
        cut = text.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(text[:cut])
        text = text[cut:].lstrip("\n")
    if text:
        chunks.append(text)
    return chunks


def message_to_inbound(message: Any, bot_user_id: str | None) -> InboundMessage | None:
    """
    Convert a discord.py message; None when it is filtered out.

    Bot authors are skipped. In guild channels the bot must be mentioned; if
    the bot's own id is still unknown, the message passes.
    """
    if message.author.bot:
        return None
    is_group = message.guild is not None
    content = message.content or ""
    if is_group and bot_user_id and not mentions_user(content, bot_user_id):
        logger.debug("discord: guild message without mention in {}", message.channel.id)
        return None
    return InboundMessage(
        kind="message",
        message_id=str(message.id),
        channel_id=DiscordChannel.channel_id,
        sender_id=str(message.author.id),
        content=content,
        thread_id=str(message.channel.id),
        is_group=is_group,
        metadata={
            "id": str(message.id),
            "channel_id": str(message.channel.id),
            "guild_id": str(message.guild.id) if message.guild is not None else None,
            "author": {"id": str(message.author.id), "bot": bool(message.author.bot)},
            "content": content,
        },
    )


class DiscordChannel:
    """
    Discord adapter.

    Args:
        config: DiscordConfig from opencraw settings.
        client: Pre-built discord.py client (tests inject one).
    """

    channel_id = "discord"
    supports_reactions = False

    def __init__(self, config: DiscordConfig, client: discord.Client | None = None) -> None:
        self._token = config.bot_token.strip()
        self._client = client or discord.Client(intents=gateway_intents())
        self._sink: asyncio.Queue[InboundMessage] | None = None
        self._task: asyncio.Task[None] | None = None
        self._client.event(self.on_ready)
        self._client.event(self.on_message)

    @property
    def bot_user_id(self) -> str | None:
        user = self._client.user
        return str(user.id) if user is not None else None

    # ── ChannelPort interface ────────────────────────────────────────────────

    async def start(self, sink: asyncio.Queue[InboundMessage]) -> None:
        if not self._token:
            raise ChannelError("discord bot token is required")
        self._sink = sink
        self._task = asyncio.create_task(self._run(), name="discord-gateway")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self._client.close()

    async def send(self, recipient_id: str, message: OutboundMessage) -> None:
        try:
            channel_id = int(recipient_id)
        except ValueError as e:
            raise ChannelError(f"invalid discord channel id: {recipient_id!r}") from e
        try:
            channel = self._client.get_channel(channel_id) or await self._client.fetch_channel(
                channel_id
            )
            if not isinstance(channel, discord.abc.Messageable):
                raise ChannelError(f"discord channel {recipient_id} does not accept messages")
            for chunk in split_content(message.content):
                await channel.send(chunk)
        except discord.HTTPException as e:
            raise ChannelError(f"discord send failed: status={e.status} {e.text}") from e

    # ── Gateway events ───────────────────────────────────────────────────────

    async def on_ready(self) -> None:
        logger.info("discord: connected as {} ({})", self._client.user, self.bot_user_id)

    async def on_message(self, message: discord.Message) -> None:
        inbound = message_to_inbound(message, self.bot_user_id)
        if inbound is None or self._sink is None:
            return
        await self._sink.put(inbound)

    async def _run(self) -> None:
        delay = RECONNECT_MIN_S
        while True:
            try:
                await self._client.start(self._token, reconnect=True)
            except discord.LoginFailure as e:
                logger.error("discord: login failed, giving up: {}", e)
                return
            except (discord.DiscordException, OSError) as e:
                logger.warning("discord: gateway error: {} (reconnecting in {}s)", e, delay)
            else:
                logger.warning("discord: gateway closed (reconnecting in {}s)", delay)
            await self._client.close()
            self._client.clear()
            await asyncio.sleep(delay)
            delay = min(delay * 2, RECONNECT_MAX_S)

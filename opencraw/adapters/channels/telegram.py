"""
Telegram channel adapter using python-telegram-bot.

Long-polls ``getUpdates`` for messages and reactions. In group chats a
message is only forwarded when it mentions the bot's username; bot-authored
messages are never forwarded.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import TYPE_CHECKING, Any

from loguru import logger
from telegram import Message, MessageReactionUpdated, Update
from telegram.error import TelegramError
from telegram.ext import Application, MessageHandler, MessageReactionHandler, filters

from opencraw.core.errors import ChannelError
from opencraw.core.models import InboundMessage, OutboundMessage

if TYPE_CHECKING:
    from opencraw.config.schema import TelegramConfig

ALLOWED_UPDATES = ["message", "message_reaction"]
LONG_POLL_SECONDS = 30


def mentions_username(text: str, username: str | None) -> bool:
    return bool(username) and f"@{username}".lower() in text.lower()


def message_to_inbound(message: Message, bot_username: str | None) -> InboundMessage | None:
    """Convert a Telegram message; None when it is filtered out."""
    sender = message.from_user
    if sender is None or not message.text:
        return None
    if sender.is_bot:
        return None
    is_group = message.chat.type != "private"
    if is_group and not mentions_username(message.text, bot_username):
        logger.debug("telegram: group message without mention in {}", message.chat.id)
        return None
    return InboundMessage(
        kind="message",
        message_id=str(message.message_id),
        channel_id=TelegramChannel.channel_id,
        sender_id=str(sender.id),
        content=message.text,
        thread_id=str(message.chat.id),
        is_group=is_group,
        metadata=message.to_dict(),
    )


def reaction_to_inbound(reaction: MessageReactionUpdated) -> InboundMessage | None:
    """Convert a reaction update; only the first emoji of the new reaction counts."""
    if reaction.user is None or not reaction.new_reaction:
        return None
    emoji = getattr(reaction.new_reaction[0], "emoji", None)
    if not emoji:
        return None
    return InboundMessage(
        kind="reaction",
        message_id=str(uuid.uuid4()),
        channel_id=TelegramChannel.channel_id,
        sender_id=str(reaction.user.id),
        content=emoji,
        thread_id=str(reaction.chat.id),
        is_group=reaction.chat.type != "private",
        metadata=reaction.to_dict(),
    )


class TelegramChannel:
    """
    Telegram adapter.

    Args:
        config: TelegramConfig from opencraw settings.
        application: Pre-built application (tests inject one).
    """

    channel_id = "telegram"
    supports_reactions = True

    def __init__(self, config: TelegramConfig, application: Application | None = None) -> None:  # type: ignore[type-arg]
        self._token = config.bot_token.strip()
        self._app = application
        self._sink: asyncio.Queue[InboundMessage] | None = None

    @property
    def bot_username(self) -> str | None:
        if self._app is None:
            return None
        try:
            return self._app.bot.username
        except RuntimeError:
            # bot not initialized yet (getMe has not run)
            return None

    # ── ChannelPort interface ────────────────────────────────────────────────

    async def start(self, sink: asyncio.Queue[InboundMessage]) -> None:
        if not self._token:
            raise ChannelError("telegram bot token is required")
        self._sink = sink
        if self._app is None:
            self._app = Application.builder().token(self._token).build()
        self._app.add_handler(MessageHandler(filters.TEXT, self._on_update))
        self._app.add_handler(MessageReactionHandler(self._on_update))
        try:
            await self._app.initialize()
            await self._app.start()
            await self._app.updater.start_polling(  # type: ignore[union-attr]
                timeout=LONG_POLL_SECONDS,
                allowed_updates=ALLOWED_UPDATES,
                error_callback=self._on_poll_error,
            )
        except TelegramError as e:
            raise ChannelError(f"telegram start failed: {e}") from e
        logger.info("telegram: polling as @{}", self.bot_username or "?")

    async def stop(self) -> None:
        if self._app is None or not self._app.running:
            return
        await self._app.updater.stop()  # type: ignore[union-attr]
        await self._app.stop()
        await self._app.shutdown()
        logger.info("telegram: stopped")

    async def send(self, recipient_id: str, message: OutboundMessage) -> None:
        if self._app is None:
            raise ChannelError("telegram channel is not started")
        if not recipient_id.strip():
            raise ChannelError("recipient_id (telegram chat id) is required")
        try:
            await self._app.bot.send_message(chat_id=recipient_id, text=message.content)
        except TelegramError as e:
            raise ChannelError(f"telegram send failed: {e}") from e

    # ── Update handling ──────────────────────────────────────────────────────

    def to_inbound(self, update: Update) -> InboundMessage | None:
        if update.message is not None:
            return message_to_inbound(update.message, self.bot_username)
        if update.message_reaction is not None:
            return reaction_to_inbound(update.message_reaction)
        return None

    async def _on_update(self, update: Update, context: Any) -> None:
        inbound = self.to_inbound(update)
        if inbound is None or self._sink is None:
            return
        await self._sink.put(inbound)

    def _on_poll_error(self, error: TelegramError) -> None:
        logger.warning("telegram: getUpdates error: {}", error)

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from telegram import Chat, Message, MessageReactionUpdated, ReactionTypeEmoji, Update, User

from opencraw.adapters.channels.telegram import (
    TelegramChannel,
    mentions_username,
    message_to_inbound,
    reaction_to_inbound,
)
from opencraw.config.schema import TelegramConfig
from opencraw.core.errors import ChannelError
from opencraw.core.models import OutboundMessage

NOW = datetime(2026, 1, 1, tzinfo=UTC)
ALICE = User(id=42, first_name="Alice", is_bot=False)
GROUP = Chat(id=-100, type=Chat.SUPERGROUP)
PRIVATE = Chat(id=42, type=Chat.PRIVATE)


def _message(text: str, chat: Chat = PRIVATE, user: User = ALICE) -> Message:
    return Message(message_id=7, date=NOW, chat=chat, from_user=user, text=text)


def test_mentions_username_is_case_insensitive():
    assert mentions_username("hi @OpenCrawBot", "opencrawbot")
    assert not mentions_username("hi there", "opencrawbot")
    assert not mentions_username("hi @", None)


def test_private_message_is_forwarded():
    inbound = message_to_inbound(_message("hello"), "opencrawbot")
    assert inbound.kind == "message"
    assert inbound.sender_id == "42"
    assert inbound.thread_id == "42"
    assert inbound.message_id == "7"
    assert inbound.is_group is False
    assert inbound.metadata["text"] == "hello"


def test_group_message_needs_mention():
    assert message_to_inbound(_message("hello", GROUP), "opencrawbot") is None
    inbound = message_to_inbound(_message("@opencrawbot hello", GROUP), "opencrawbot")
    assert inbound.is_group is True
    assert inbound.reply_target == "-100"


def test_bot_messages_are_skipped():
    bot = User(id=1, first_name="Other", is_bot=True)
    assert message_to_inbound(_message("hello", user=bot), "opencrawbot") is None


def test_reaction_becomes_reaction_inbound():
    update = MessageReactionUpdated(
        chat=GROUP,
        message_id=7,
        date=NOW,
        old_reaction=(),
        new_reaction=(ReactionTypeEmoji("👍"),),
        user=ALICE,
    )
    inbound = reaction_to_inbound(update)
    assert inbound.kind == "reaction"
    assert inbound.content == "👍"
    assert inbound.thread_id == "-100"


def test_removed_reaction_is_ignored():
    update = MessageReactionUpdated(
        chat=GROUP,
        message_id=7,
        date=NOW,
        old_reaction=(ReactionTypeEmoji("👍"),),
        new_reaction=(),
        user=ALICE,
    )
    assert reaction_to_inbound(update) is None


def test_update_dispatch_without_application():
    channel = TelegramChannel(TelegramConfig(bot_token="t"))
    assert channel.bot_username is None
    # unknown username: group messages are dropped
    assert channel.to_inbound(Update(update_id=1, message=_message("hi", GROUP))) is None
    assert channel.to_inbound(Update(update_id=2, message=_message("hi"))) is not None
    assert channel.to_inbound(Update(update_id=3)) is None


async def test_start_requires_token():
    with pytest.raises(ChannelError, match="token is required"):
        await TelegramChannel(TelegramConfig()).start(None)


async def test_send_before_start():
    with pytest.raises(ChannelError, match="not started"):
        await TelegramChannel(TelegramConfig(bot_token="t")).send("42", OutboundMessage("hi"))

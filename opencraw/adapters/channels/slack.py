"""
Slack channel adapter (Web API polling).

Polls ``conversations.history`` for each configured channel and keeps one
timestamp cursor per channel. Slack timestamps are ``seconds.fraction``
strings; they are compared numerically after padding the fraction to
microseconds, never as floats.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import OrderedDict
from typing import TYPE_CHECKING, Any

import httpx
from loguru import logger

from opencraw.core.errors import ChannelError
from opencraw.core.models import InboundMessage, OutboundMessage

if TYPE_CHECKING:
    from opencraw.config.schema import SlackConfig

API_BASE = "https://slack.com/api"
HISTORY_LIMIT_MAX = 200
HTTP_TIMEOUT_SECONDS = 30.0
THREAD_MAP_MAX = 1000

type SlackTimestamp = tuple[int, int]


def parse_slack_ts(raw: str) -> SlackTimestamp | None:
    """Parse ``"1000.0001"`` into ``(1000, 100)`` (seconds, microseconds)."""
    seconds_raw, _, fraction = raw.strip().partition(".")
    digits = (fraction or "0")[:6].ljust(6, "0")
    try:
        return int(seconds_raw), int(digits)
    except ValueError:
        return None


def ts_is_newer(ts: str, cursor: str) -> bool:
    left, right = parse_slack_ts(ts), parse_slack_ts(cursor)
    if left is None or right is None:
        return ts > cursor
    return left > right


def _sort_key(message: dict[str, Any]) -> tuple[SlackTimestamp, str]:
    ts = message.get("ts") or ""
    return parse_slack_ts(ts) or (0, 0), ts


def should_emit(message: dict[str, Any], cursor: str | None) -> bool:
    """True for a plain user message newer than ``cursor``."""
    ts = message.get("ts")
    if not ts or message.get("subtype") or message.get("bot_id"):
        return False
    if not (message.get("text") or "").strip():
        return False
    return cursor is None or ts_is_newer(ts, cursor)


class SlackChannel:
    """
    Slack adapter.

    Args:
        config: SlackConfig from opencraw settings.
        client: Pre-built HTTP client (tests inject one with a mock transport).
    """

    channel_id = "slack"
    supports_reactions = True

    def __init__(self, config: SlackConfig, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._token = config.bot_token.strip()
        self._channel_ids = list(dict.fromkeys(c.strip() for c in config.channel_ids if c.strip()))
        self._history_limit = max(1, min(config.history_limit, HISTORY_LIMIT_MAX))
        self._client = client or httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)
        self._cursors: dict[str, str] = {}
        # thread ts -> channel id, learned while polling; least recent dropped first
        self._thread_channels: OrderedDict[str, str] = OrderedDict()
        self._task: asyncio.Task[None] | None = None

    @property
    def cursors(self) -> dict[str, str]:
        return dict(self._cursors)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    # ── ChannelPort interface ────────────────────────────────────────────────

    async def start(self, sink: asyncio.Queue[InboundMessage]) -> None:
        if not self._token:
            raise ChannelError("slack bot token is required")
        if not self._channel_ids:
            raise ChannelError("slack adapter requires at least one channel id to poll")
        self._task = asyncio.create_task(self._poll_loop(sink), name="slack-poll")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self._client.aclose()

    async def send(self, recipient_id: str, message: OutboundMessage) -> None:
        """
        Post a message. ``recipient_id`` is a channel id, or a thread ts seen
        while polling, in which case the reply goes into that thread.
        """
        recipient = recipient_id.strip()
        channel = self._thread_channels.get(recipient, recipient)
        thread_ts = recipient if channel != recipient else message.reply_to_message_id
        if not channel:
            raise ChannelError("recipient_id (slack channel id) is required")
        text = message.content.strip()
        if not text:
            raise ChannelError("message content is empty")
        payload: dict[str, Any] = {"channel": channel, "text": text}
        if thread_ts:
            payload["thread_ts"] = thread_ts
        body = await self._call("POST", "chat.postMessage", json=payload)
        logger.debug("slack: posted message to {} (ts {})", channel, body.get("ts"))

    # ── Polling ──────────────────────────────────────────────────────────────

    async def _call(self, method: str, api: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(
                method, f"{API_BASE}/{api}", headers=self._headers(), **kwargs
            )
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ChannelError(f"slack {api} failed: {e}") from e
        if not response.is_success or not body.get("ok"):
            raise ChannelError(
                f"slack {api} failed: status={response.status_code} "
                f"error={body.get('error') or 'unknown'}"
            )
        return body

    async def fetch_history(self, channel: str) -> list[dict[str, Any]]:
        body = await self._call(
            "GET",
            "conversations.history",
            params={"channel": channel, "limit": str(self._history_limit), "inclusive": "true"},
        )
        return [m for m in body.get("messages") or [] if isinstance(m, dict)]

    async def seed_cursors(self) -> None:
        """Set each channel's cursor to its newest message so nothing old replays."""
        for channel in self._channel_ids:
            try:
                messages = await self.fetch_history(channel)
            except ChannelError as e:
                logger.warning("slack: seeding cursor for {} failed: {}", channel, e)
                continue
            stamps = [m["ts"] for m in messages if m.get("ts")]
            if stamps:
                self._cursors[channel] = max(stamps, key=lambda ts: parse_slack_ts(ts) or (0, 0))
        logger.info("slack: seeded {} initial cursors", len(self._cursors))

    async def poll_once(self, sink: asyncio.Queue[InboundMessage]) -> int:
        """Poll every channel once; returns the number of emitted inbounds."""
        emitted = 0
        for channel in self._channel_ids:
            try:
                messages = await self.fetch_history(channel)
            except ChannelError as e:
                logger.warning("slack: conversations.history failed for {}: {}", channel, e)
                continue
            cursor = self._cursors.get(channel)
            newest = cursor
            for message in sorted(messages, key=_sort_key):
                if not should_emit(message, cursor):
                    continue
                ts = message["ts"]
                thread_ts = message.get("thread_ts") or ts
                self._remember_thread(thread_ts, channel)
                await sink.put(
                    InboundMessage(
                        kind="message",
                        message_id=ts,
                        channel_id=self.channel_id,
                        sender_id=message.get("user") or "unknown",
                        content=message["text"],
                        thread_id=thread_ts,
                        is_group=True,
                        metadata={"slack_channel": channel, **message},
                    )
                )
                emitted += 1
                if newest is None or ts_is_newer(ts, newest):
                    newest = ts
            if newest is not None:
                self._cursors[channel] = newest
        return emitted

    def _remember_thread(self, thread_ts: str, channel: str) -> None:
        self._thread_channels[thread_ts] = channel
        self._thread_channels.move_to_end(thread_ts)
        while len(self._thread_channels) > THREAD_MAP_MAX:
            self._thread_channels.popitem(last=False)

    async def _poll_loop(self, sink: asyncio.Queue[InboundMessage]) -> None:
        if self._config.start_from_latest:
            await self.seed_cursors()
        interval = self._config.poll_interval_ms / 1000
        while True:
            emitted = await self.poll_once(sink)
            if emitted:
                logger.debug("slack: poll cycle emitted {} messages", emitted)
            await asyncio.sleep(interval)

"""
Message gateway: the single consumer of the inbound fan-in queue.

Every channel adapter pushes into one bounded ``asyncio.Queue``. The gateway
pulls items in arrival order and handles each in its own task, with at most
``max_in_flight`` tasks alive; once they are all busy the queue fills and
adapters block on ``put``. Per-session ordering comes from the session lock,
which each task acquires before its first suspension point.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass

from loguru import logger

from opencraw.core.agent import AgentLoop
from opencraw.core.commands import CommandContext, handle_command
from opencraw.core.models import InboundMessage, OutboundMessage
from opencraw.core.ports import ChannelPort
from opencraw.core.security import SecurityGate
from opencraw.core.session import SessionStore

DEFAULT_QUEUE_CAPACITY = 1024

POSITIVE_REACTIONS = frozenset({"👍", "❤️", "✅"})
NEGATIVE_REACTIONS = frozenset({"👎", "❌"})


@dataclass
class FeedbackTally:
    """Counts of positive and negative reactions seen since start."""

    positive: int = 0
    negative: int = 0

    def record(self, emoji: str) -> str | None:
        """Count a reaction. Returns "positive", "negative" or None if ignored."""
        emoji = emoji.strip()
        if emoji in POSITIVE_REACTIONS:
            self.positive += 1
            return "positive"
        if emoji in NEGATIVE_REACTIONS:
            self.negative += 1
            return "negative"
        return None


class Gateway:
    """
    Owns the inbound queue and routes each item to commands or the agent loop.

    Args:
        sessions: Session store.
        agent: Assistant loop.
        gate: Sender allowlist and tool policy.
        channels: Adapters by channel id, used for replies.
        commands: Context reported by slash commands.
        queue_capacity: Maximum number of queued inbound items.
        max_in_flight: Maximum number of items handled concurrently. Defaults
            to ``queue_capacity``.
    """

    def __init__(
        self,
        *,
        sessions: SessionStore,
        agent: AgentLoop,
        gate: SecurityGate,
        channels: Mapping[str, ChannelPort],
        commands: CommandContext,
        queue_capacity: int = DEFAULT_QUEUE_CAPACITY,
        max_in_flight: int | None = None,
    ) -> None:
        self.sessions = sessions
        self.channels = dict(channels)
        self.feedback = FeedbackTally()
        self.inbound: asyncio.Queue[InboundMessage] = asyncio.Queue(maxsize=queue_capacity)
        self._agent = agent
        self._gate = gate
        self._commands = commands
        self._tasks: set[asyncio.Task[None]] = set()
        self._slots = asyncio.Semaphore(max_in_flight or queue_capacity)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def start_channels(self) -> None:
        """Start every adapter against the shared queue. Fails fast on bad credentials."""
        for channel_id, channel in self.channels.items():
            await channel.start(self.inbound)
            logger.info("gateway: channel {} started", channel_id)

    async def stop_channels(self) -> None:
        for channel_id, channel in self.channels.items():
            try:
                await channel.stop()
            except Exception as e:
                logger.warning("gateway: stopping {} failed: {}", channel_id, e)

    async def run(self) -> None:
        """Consume the queue until cancelled; in-flight turns are cancelled on exit."""
        logger.info("gateway: consuming inbound queue (capacity {})", self.inbound.maxsize)
        try:
            while True:
                await self._slots.acquire()
                inbound = await self.inbound.get()
                task = asyncio.create_task(self._handle_logged(inbound))
                self._tasks.add(task)
                task.add_done_callback(self._release)
                self.inbound.task_done()
        finally:
            for task in list(self._tasks):
                task.cancel()
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)

    def _release(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        self._slots.release()

    async def _handle_logged(self, inbound: InboundMessage) -> None:
        try:
            await self.handle(inbound)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "gateway: failed to handle {} from {}:{}",
                inbound.message_id,
                inbound.channel_id,
                inbound.sender_id,
            )

    async def handle(self, inbound: InboundMessage) -> None:
        """Process one inbound item end to end."""
        if not self._gate.is_sender_allowed(inbound.channel_id, inbound.sender_id):
            logger.debug(
                "gateway: ignoring {}:{} (not in allowlist)", inbound.channel_id, inbound.sender_id
            )
            return

        if inbound.kind == "reaction":
            verdict = self.feedback.record(inbound.content)
            if verdict is not None:
                logger.info(
                    "gateway: {} feedback {} from {}:{}",
                    verdict,
                    inbound.content,
                    inbound.channel_id,
                    inbound.sender_id,
                )
            return

        channel = self.channels.get(inbound.channel_id)
        if channel is None:
            logger.warning("gateway: no adapter for channel {}", inbound.channel_id)
            return

        recipient = inbound.reply_target
        async with self.sessions.acquire(inbound.channel_id, inbound.sender_id) as session:
            reply = handle_command(session, inbound.content, self._commands)
            if reply is not None:
                await self._deliver(channel, recipient, reply, inbound.message_id)
                return

            session.last_user_message_id = inbound.message_id
            session.touch()

            async def notify(text: str) -> None:
                await self._deliver(channel, recipient, text, None)

            answer = await self._agent.run(session, inbound.content, notify)
            if answer.strip():
                await self._deliver(channel, recipient, answer, inbound.message_id)
            else:
                logger.debug("gateway: empty reply for {}, nothing sent", inbound.message_id)

    async def _deliver(
        self, channel: ChannelPort, recipient: str, text: str, reply_to: str | None
    ) -> None:
        try:
            await channel.send(recipient, OutboundMessage(content=text, reply_to_message_id=reply_to))
        except Exception as e:
            logger.warning("gateway: send via {} to {} failed: {}", channel.channel_id, recipient, e)

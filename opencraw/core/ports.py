"""
Port interfaces for opencraw.

These are Python Protocol classes defining the contracts that adapters must satisfy.
The core domain imports ONLY from this file (and models.py) for any external dependency.

Adapters implement these protocols without inheriting from them (structural subtyping).
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any, Protocol

from opencraw.core.models import (
    ChatMessage,
    ChatResponse,
    InboundMessage,
    OutboundMessage,
    RiskLevel,
    StreamChunk,
    ToolDefinition,
)


class LLMPort(Protocol):
    """
    Interface for language model communication.

    Implementations route to a provider family based on the model name and
    hide vendor quirks (tool-name rules, message shapes) from the core.
    """

    async def chat(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        *,
        model: str,
    ) -> ChatResponse:
        """
        Run a single-shot completion.

        Args:
            messages: The full conversation history including system prompt.
            tools: Available tool definitions.
            model: Model name; selects the provider family.

        Raises:
            LlmError: On invalid input, transport failures or malformed responses.
        """
        ...

    def chat_stream(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        *,
        model: str,
    ) -> AsyncIterator[StreamChunk]:
        """
        Run a streaming completion.

        Yields ContentDelta, ReasoningDelta, ToolCallStart, ToolCallArgumentsDelta
        and finally Done. Tool names are already mapped back to the originals.
        """
        ...


class ChannelPort(Protocol):
    """
    Interface for inbound/outbound message channels.

    A channel adapter handles the specifics of a messaging platform:
    authentication, message format conversion, and delivery. All adapters
    push into one shared queue handed to ``start``.
    """

    channel_id: str
    supports_reactions: bool

    async def start(self, sink: asyncio.Queue[InboundMessage]) -> None:
        """
        Begin ingestion into ``sink``.

        Returns once background ingestion is running. Raises ChannelError
        immediately when required credentials are missing.
        """
        ...

    async def send(self, recipient_id: str, message: OutboundMessage) -> None:
        """
        Deliver a message. Returns only if the remote accepted it.

        Raises:
            ChannelError: On a non-2xx answer or an unknown recipient.
        """
        ...

    async def stop(self) -> None:
        """Cancel background ingestion and release connections."""
        ...


class ToolPort(Protocol):
    """
    Interface for agent tools.

    Each tool exposes a name, description, JSON Schema for its parameters and
    a risk label. The executor validates arguments before calling execute().
    """

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema object describing accepted arguments
    risk_level: RiskLevel

    async def execute(self, arguments: dict[str, Any]) -> Any:
        """
        Execute the tool with already validated arguments.

        Returns:
            A JSON-serializable result.

        Raises:
            ToolError: For domain failures (invalid input, policy, I/O).
        """
        ...

"""
Core data models for opencraw.

These are plain dataclasses with no external dependencies beyond the standard
library. They represent the domain concepts shared across the entire system:
channel traffic, conversation history, tool calls and per-user sessions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal
from uuid import UUID, uuid4


def utcnow() -> datetime:
    """Return the current wall-clock time as an aware UTC datetime."""
    return datetime.now(UTC)


class RiskLevel(StrEnum):
    """Risk label attached to every tool."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ApprovalMode(StrEnum):
    """Who approves a tool call before it runs."""

    HUMAN = "human"
    AI = "ai"
    AUTO = "auto"


class ModelPinning(StrEnum):
    """How strictly a session sticks to its model override."""

    AUTO = "auto"
    STRICT = "strict"


# ── Channel traffic ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class InboundMessage:
    """A message or reaction received from a channel adapter."""

    kind: Literal["message", "reaction"]
    message_id: str
    channel_id: str
    sender_id: str
    content: str
    thread_id: str | None = None
    is_group: bool = False
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)
    received_at: datetime = field(default_factory=utcnow, compare=False)

    @property
    def reply_target(self) -> str:
        """Recipient for replies: the thread when known, otherwise the sender."""
        return self.thread_id or self.sender_id


@dataclass
class Attachment:
    """A file reference carried by an outbound message."""

    name: str
    content_type: str
    url: str


@dataclass
class OutboundMessage:
    """A message to be sent through a channel adapter."""

    content: str
    reply_to_message_id: str | None = None
    attachments: list[Attachment] = field(default_factory=list)


# ── LLM conversation ─────────────────────────────────────────────────────────


@dataclass
class ToolCall:
    """A tool invocation requested by the LLM. ``arguments`` is a JSON string."""

    id: str
    name: str
    arguments: str = ""


@dataclass
class ChatMessage:
    """A single entry of a session's conversation history."""

    role: Literal["system", "user", "assistant", "tool"]
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None  # set when role == "tool"

    def to_openai_dict(self) -> dict[str, Any]:
        """Serialize to OpenAI chat-completions message format."""
        d: dict[str, Any] = {"role": self.role}
        if self.content or self.role != "assistant" or not self.tool_calls:
            d["content"] = self.content
        else:
            d["content"] = None
        if self.tool_calls:
            d["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": tc.arguments or "{}"},
                }
                for tc in self.tool_calls
            ]
        if self.tool_call_id:
            d["tool_call_id"] = self.tool_call_id
        return d


@dataclass
class ToolDefinition:
    """Definition of a tool that can be called by the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema object
    risk_level: RiskLevel = RiskLevel.LOW

    def to_openai_dict(self) -> dict[str, Any]:
        """Serialize to OpenAI API tool format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class Usage:
    """Prompt/completion token counters."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    def add(self, other: Usage) -> None:
        """Accumulate another usage sample; negative samples are ignored."""
        self.prompt_tokens += max(other.prompt_tokens, 0)
        self.completion_tokens += max(other.completion_tokens, 0)


@dataclass
class ChatResponse:
    """Result of a single-shot chat call."""

    message: ChatMessage
    usage: Usage = field(default_factory=Usage)
    finish_reason: str = "stop"


@dataclass
class ToolResult:
    """Observation produced by executing (or refusing) one tool call."""

    tool_call_id: str
    content: str
    is_error: bool = False


# ── Streaming chunks ─────────────────────────────────────────────────────────


@dataclass
class ContentDelta:
    text: str


@dataclass
class ReasoningDelta:
    text: str


@dataclass
class ToolCallStart:
    id: str
    name: str


@dataclass
class ToolCallArgumentsDelta:
    arguments: str


@dataclass
class Done:
    usage: Usage = field(default_factory=Usage)
    finish_reason: str = "stop"


type StreamChunk = ContentDelta | ReasoningDelta | ToolCallStart | ToolCallArgumentsDelta | Done


# ── Sessions ─────────────────────────────────────────────────────────────────


@dataclass
class SessionSummary:
    """Read-only snapshot of a session, as listed by the control plane."""

    id: UUID
    channel_id: str
    sender_id: str
    created_at: datetime
    last_active: datetime
    messages: int
    model_override: str | None
    model_pinning: ModelPinning

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "channel_id": self.channel_id,
            "sender_id": self.sender_id,
            "created_at": self.created_at.isoformat(),
            "last_active": self.last_active.isoformat(),
            "messages": self.messages,
            "model_override": self.model_override,
            "model_pinning": self.model_pinning.value,
        }


@dataclass
class Session:
    """Conversational state for one ``(channel_id, sender_id)`` pair."""

    channel_id: str
    sender_id: str
    id: UUID = field(default_factory=uuid4)
    history: list[ChatMessage] = field(default_factory=list)
    show_thinking: bool = False
    show_tool_calls: bool = False
    usage_totals: Usage = field(default_factory=Usage)
    last_user_message_id: str | None = None
    last_assistant_message_id: str | None = None
    model_override: str | None = None
    model_pinning: ModelPinning = ModelPinning.AUTO
    created_at: datetime = field(default_factory=utcnow)
    last_active: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return (self.channel_id, self.sender_id)

    def touch(self) -> None:
        """Mark the session as active now."""
        self.last_active = max(utcnow(), self.created_at)

    def reset(self) -> None:
        """Drop history, usage and message ids; keep identity and preferences."""
        self.history.clear()
        self.usage_totals = Usage()
        self.last_user_message_id = None
        self.last_assistant_message_id = None
        self.touch()

    def enforce_invariants(self) -> None:
        """Normalize the model override and clamp ``last_active``."""
        override = (self.model_override or "").strip()
        self.model_override = override or None
        if self.model_override is None:
            self.model_pinning = ModelPinning.AUTO
        if self.last_active < self.created_at:
            self.last_active = self.created_at

    def summary(self) -> SessionSummary:
        return SessionSummary(
            id=self.id,
            channel_id=self.channel_id,
            sender_id=self.sender_id,
            created_at=self.created_at,
            last_active=self.last_active,
            messages=len(self.history),
            model_override=self.model_override,
            model_pinning=self.model_pinning,
        )

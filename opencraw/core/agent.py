"""
Core assistant loop for opencraw.

The loop drives one user turn to completion: it calls the LLM, executes any
requested tools in order, feeds the observations back, and stops when the
model answers without tool calls or the iteration cap is reached. It has no
knowledge of channels or providers; everything external arrives through the
injected ports.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from uuid import uuid4

from loguru import logger

from opencraw.core.errors import LlmError
from opencraw.core.models import (
    ChatMessage,
    ChatResponse,
    ContentDelta,
    Done,
    ModelPinning,
    ReasoningDelta,
    Session,
    ToolCall,
    ToolCallArgumentsDelta,
    ToolCallStart,
    ToolDefinition,
    Usage,
)
from opencraw.core.ports import LLMPort
from opencraw.core.registry import ToolRegistry

APOLOGY = "Sorry, something went wrong while talking to the language model. Please try again."
TRUNCATION_NOTICE = "Tool loop limit reached."

type Notify = Callable[[str], Awaitable[None]]


@dataclass
class AgentSettings:
    """Knobs for the assistant loop."""

    system_prompt: str
    default_model: str
    max_iterations: int = 6
    max_prompt_tokens: int = 8000
    min_recent_messages: int = 8
    max_tool_chars: int = 4000


def estimate_tokens(message: ChatMessage) -> int:
    """Rough token count: four characters per token, at least one."""
    chars = len(message.content)
    for call in message.tool_calls:
        chars += len(call.name) + len(call.arguments)
    return max(chars // 4, 1)


class AgentLoop:
    """
    The core assistant loop.

    For each user message, the loop:
    1. Appends the message to the session history
    2. Streams a completion over a token-bounded window of that history
    3. If the LLM returns tool calls, executes them sequentially and loops back
    4. If the LLM returns text, returns it as the reply

    LLM failures roll the history back to where it was before the turn, so a
    failed turn leaves no half-finished tool exchange behind.
    """

    def __init__(self, llm: LLMPort, registry: ToolRegistry, settings: AgentSettings) -> None:
        """
        Args:
            llm: The language model adapter.
            registry: The tool registry with all available tools.
            settings: System prompt, default model and loop bounds.
        """
        self._llm = llm
        self._registry = registry
        self._settings = settings

    @property
    def settings(self) -> AgentSettings:
        return self._settings

    async def run(self, session: Session, user_message: str, notify: Notify | None = None) -> str:
        """
        Process one user turn and return the reply text.

        Args:
            session: The caller's session. The caller holds its lock.
            user_message: The user's text.
            notify: Optional side channel for thinking and tool-call traces,
                used when the session asked for them.
        """
        self._ensure_system_prompt(session)
        checkpoint = len(session.history)
        session.history.append(ChatMessage(role="user", content=user_message))
        tools = self._registry.get_definitions()

        try:
            for iteration in range(1, self._settings.max_iterations + 1):
                prompt = self.build_prompt(session.history)
                logger.debug(
                    "agent: iteration {} for session {} ({} prompt messages)",
                    iteration,
                    session.id,
                    len(prompt),
                )
                response = await self._complete(session, prompt, tools, notify)
                session.usage_totals.add(response.usage)
                session.history.append(response.message)

                if not response.message.tool_calls:
                    session.last_assistant_message_id = str(uuid4())
                    return response.message.content

                for call in response.message.tool_calls:
                    await self._run_tool_call(session, call, notify)
        except LlmError as e:
            logger.warning("agent: LLM call failed for session {}: {}", session.id, e)
            del session.history[checkpoint:]
            return APOLOGY

        logger.warning(
            "agent: iteration limit {} reached for session {}",
            self._settings.max_iterations,
            session.id,
        )
        session.history.append(ChatMessage(role="assistant", content=TRUNCATION_NOTICE))
        session.last_assistant_message_id = str(uuid4())
        return TRUNCATION_NOTICE

    def _ensure_system_prompt(self, session: Session) -> None:
        history = session.history
        if history and history[0].role == "system":
            history[0].content = self._settings.system_prompt
        else:
            history.insert(0, ChatMessage(role="system", content=self._settings.system_prompt))

    def build_prompt(self, history: list[ChatMessage]) -> list[ChatMessage]:
        """
        Select the messages sent to the LLM.

        The system prompt always goes first. Then the newest messages are kept
        while they fit in ``max_prompt_tokens``, but never fewer than
        ``min_recent_messages``. Long tool outputs are truncated in the copy.
        """
        if history and history[0].role == "system":
            system, rest = history[0], history[1:]
        else:
            system, rest = None, history

        budget = self._settings.max_prompt_tokens
        if system is not None:
            budget -= estimate_tokens(system)

        selected: list[ChatMessage] = []
        for message in reversed(rest):
            message = self._truncate_tool_output(message)
            tokens = estimate_tokens(message)
            if len(selected) < self._settings.min_recent_messages or tokens <= budget:
                selected.append(message)
                budget = max(budget - tokens, 0)
                continue
            break
        selected.reverse()
        return [system, *selected] if system is not None else selected

    def _truncate_tool_output(self, message: ChatMessage) -> ChatMessage:
        limit = self._settings.max_tool_chars
        if message.role != "tool" or len(message.content) <= limit:
            return message
        dropped = len(message.content) - limit
        return ChatMessage(
            role="tool",
            content=f"{message.content[:limit]}\n...[tool output truncated: dropped {dropped} chars]",
            tool_call_id=message.tool_call_id,
        )

    async def _complete(
        self,
        session: Session,
        prompt: list[ChatMessage],
        tools: list[ToolDefinition],
        notify: Notify | None,
    ) -> ChatResponse:
        default_model = self._settings.default_model
        model = session.model_override or default_model
        try:
            return await self._stream_response(session, model, prompt, tools, notify)
        except LlmError as e:
            if (
                not e.retryable
                or session.model_pinning is ModelPinning.STRICT
                or model == default_model
            ):
                raise
            logger.warning("agent: model {} failed ({}), falling back to {}", model, e, default_model)
            return await self._stream_response(session, default_model, prompt, tools, notify)

    async def _stream_response(
        self,
        session: Session,
        model: str,
        prompt: list[ChatMessage],
        tools: list[ToolDefinition],
        notify: Notify | None,
    ) -> ChatResponse:
        """Accumulate a streamed completion into one assistant message."""
        content: list[str] = []
        reasoning: list[str] = []
        tool_calls: list[ToolCall] = []
        usage = Usage()
        finish_reason = "stop"

        try:
            async for chunk in self._llm.chat_stream(prompt, tools, model=model):
                match chunk:
                    case ContentDelta(text=text):
                        content.append(text)
                    case ReasoningDelta(text=text):
                        reasoning.append(text)
                    case ToolCallStart(id=call_id, name=name):
                        tool_calls.append(ToolCall(id=call_id, name=name))
                    case ToolCallArgumentsDelta(arguments=arguments):
                        if tool_calls:
                            tool_calls[-1].arguments += arguments
                    case Done():
                        usage = chunk.usage
                        finish_reason = chunk.finish_reason
        except LlmError as e:
            # A dropped stream that already produced plain text is kept as-is.
            if not content or tool_calls:
                raise
            logger.warning("agent: stream interrupted, keeping partial reply: {}", e)
            finish_reason = "interrupted"

        if reasoning and session.show_thinking and notify is not None:
            await notify(f"thinking: {''.join(reasoning)}")

        return ChatResponse(
            message=ChatMessage(role="assistant", content="".join(content), tool_calls=tool_calls),
            usage=usage,
            finish_reason=finish_reason,
        )

    async def _run_tool_call(self, session: Session, call: ToolCall, notify: Notify | None) -> None:
        trace = notify if session.show_tool_calls else None
        if trace is not None:
            await trace(f"tool call: {call.name} {call.arguments or '{}'}")
        result = await self._registry.execute(call)
        logger.info(
            "agent: tool {} finished (error={}, {} chars)",
            call.name,
            result.is_error,
            len(result.content),
        )
        session.history.append(
            ChatMessage(role="tool", content=result.content, tool_call_id=call.id)
        )
        if trace is not None:
            await trace(f"tool result: {call.name} {result.content}")

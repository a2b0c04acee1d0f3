"""
Slash-command handling.

Any inbound whose trimmed content starts with ``/`` is answered here without
calling the LLM. ``handle_command`` returns the reply text, or None when the
message is an ordinary user turn.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass, field

from opencraw.core.models import Session
from opencraw.core.session import match_model

SUPPORTED_COMMANDS: dict[str, str] = {
    "/help": "Show available commands",
    "/new": "Start a fresh conversation",
    "/status": "Show runtime/model status",
    "/think": "Toggle thinking visibility",
    "/verbose": "Toggle tool-call visibility",
    "/usage": "Show token usage totals",
    "/model": "Inspect or set active model",
}

_CLEAR_TOKENS = frozenset({"clear", "reset", "unset"})
_MODEL_USAGE = "Usage: /model | /model use <model_name> | /model clear"
_MODEL_USE_USAGE = "Usage: /model use <model_name>"


@dataclass
class CommandContext:
    """Process-wide facts that commands report on."""

    default_model: str
    available_models: Sequence[str] = ()
    channels: Sequence[str] = ()
    started_at: float = field(default_factory=time.monotonic)

    def uptime_seconds(self) -> int:
        return int(time.monotonic() - self.started_at)


def help_text() -> str:
    return "Supported: " + " ".join(SUPPORTED_COMMANDS)


def _parse(content: str) -> tuple[str, list[str]] | None:
    trimmed = content.strip()
    if not trimmed.startswith("/"):
        return None
    head, *args = trimmed.split()
    # Telegram appends the bot name in groups: /status@my_bot
    command = head.split("@", 1)[0].lower()
    return command, args


def handle_command(session: Session, content: str, ctx: CommandContext) -> str | None:
    """
    Run a slash command against ``session``.

    Args:
        session: The caller's session; mutated by /new, /think, /verbose, /model.
        content: Raw inbound text.
        ctx: Models, channels and uptime to report.

    Returns:
        Reply text to send verbatim, or None for a normal user turn.
    """
    parsed = _parse(content)
    if parsed is None:
        return None
    command, args = parsed

    if command == "/model":
        reply = _handle_model(session, args, ctx)
    elif command in SUPPORTED_COMMANDS and args:
        reply = f"Usage: {command}"
    elif command == "/help":
        reply = help_text()
    elif command == "/new":
        session.reset()
        reply = "Session reset."
    elif command == "/think":
        session.show_thinking = not session.show_thinking
        reply = f"show_thinking = {str(session.show_thinking).lower()}"
    elif command == "/verbose":
        session.show_tool_calls = not session.show_tool_calls
        reply = f"show_tool_calls = {str(session.show_tool_calls).lower()}"
    elif command == "/usage":
        totals = session.usage_totals
        reply = (
            f"prompt_tokens={totals.prompt_tokens} completion_tokens={totals.completion_tokens}"
        )
    elif command == "/status":
        channels = ",".join(ctx.channels) or "none"
        reply = (
            f"model={session.model_override or ctx.default_model}\n"
            f"default_model={ctx.default_model}\n"
            f"channels={channels}\n"
            f"uptime_seconds={ctx.uptime_seconds()}"
        )
    else:
        reply = f'Unknown command "{command}". {help_text()}'

    session.touch()
    return reply


def _handle_model(session: Session, args: list[str], ctx: CommandContext) -> str:
    if not args or (len(args) == 1 and args[0].lower() == "list"):
        return _model_summary(session, ctx)
    action = args[0].lower()
    if len(args) == 1 and action in _CLEAR_TOKENS:
        session.model_override = None
        session.enforce_invariants()
        return f"model override cleared; using default model {ctx.default_model}"
    if action in ("use", "set"):
        if len(args) == 1:
            return _MODEL_USE_USAGE
        return _set_override(session, " ".join(args[1:]), ctx)
    if len(args) == 1:
        return _set_override(session, args[0], ctx)
    return _MODEL_USAGE


def _set_override(session: Session, requested: str, ctx: CommandContext) -> str:
    requested = requested.strip()
    if not requested:
        return _MODEL_USE_USAGE
    canonical = match_model(requested, ctx.available_models)
    if canonical is None:
        available = ",".join(ctx.available_models)
        return f'unknown model "{requested}". available_models={available}'
    session.model_override = canonical
    return f"model override set to {canonical}"


def _model_summary(session: Session, ctx: CommandContext) -> str:
    return (
        f"active_model={session.model_override or ctx.default_model}\n"
        f"default_model={ctx.default_model}\n"
        f"available_models={','.join(ctx.available_models)}"
    )

"""
Tool registry and executor for the agent loop.

Adapters register their tools here; the agent loop queries the registry
for available tool definitions and hands every tool call to ``execute``.
Execution never raises: each failure becomes a JSON error observation.
"""

from __future__ import annotations

import json
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import best_match
from loguru import logger

from opencraw.core.errors import (
    ExecutionFailedError,
    InvalidArgumentsError,
    ToolError,
    ToolIoError,
)
from opencraw.core.models import ToolCall, ToolDefinition, ToolResult
from opencraw.core.ports import ToolPort
from opencraw.core.security import SecurityGate


def parse_arguments(raw: str) -> dict[str, Any]:
    """Decode a tool call's JSON argument string into an object."""
    if not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidArgumentsError(f"arguments are not valid JSON: {e.msg}") from e
    if not isinstance(value, dict):
        raise InvalidArgumentsError("arguments must be a JSON object")
    return value


class ToolRegistry:
    """Maintains a collection of tools and dispatches execution requests."""

    def __init__(self, gate: SecurityGate | None = None) -> None:
        self._tools: dict[str, ToolPort] = {}
        self._validators: dict[str, Draft202012Validator] = {}
        self._gate = gate or SecurityGate()

    def register(self, tool: ToolPort) -> None:
        """Register a tool. Raises ValueError on duplicate names."""
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        Draft202012Validator.check_schema(tool.parameters)
        self._tools[tool.name] = tool
        self._validators[tool.name] = Draft202012Validator(tool.parameters)

    def get(self, name: str) -> ToolPort | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def get_definitions(self) -> list[ToolDefinition]:
        """Return definitions for all registered tools."""
        return [
            ToolDefinition(
                name=t.name,
                description=t.description,
                parameters=t.parameters,
                risk_level=t.risk_level,
            )
            for t in self._tools.values()
        ]

    async def execute(self, call: ToolCall) -> ToolResult:
        """
        Run one tool call through lookup, parsing, policy, validation and execution.

        Args:
            call: The tool call as proposed by the LLM (original tool name).

        Returns:
            ToolResult whose content is the JSON-encoded result or error.
        """
        try:
            output = await self._run(call)
        except ToolError as e:
            logger.debug("tool {} failed: {}", call.name, e)
            return _error_result(call.id, e)
        except OSError as e:
            return _error_result(call.id, ToolIoError(str(e)))
        except Exception as e:
            logger.exception("tool {} raised unexpectedly", call.name)
            return _error_result(call.id, ExecutionFailedError(str(e) or type(e).__name__))
        return ToolResult(
            tool_call_id=call.id,
            content=json.dumps(output, ensure_ascii=False, default=str),
        )

    async def _run(self, call: ToolCall) -> Any:
        tool = self._tools.get(call.name)
        if tool is None:
            raise InvalidArgumentsError(f"unknown tool '{call.name}'")
        arguments = parse_arguments(call.arguments)
        self._gate.check_tool_call(call.id, tool.name, tool.risk_level, arguments)
        error = best_match(self._validators[tool.name].iter_errors(arguments))
        if error is not None:
            location = "/".join(str(p) for p in error.absolute_path) or "<root>"
            raise InvalidArgumentsError(f"{location}: {error.message}")
        return await tool.execute(arguments)


def _error_result(tool_call_id: str, error: ToolError) -> ToolResult:
    return ToolResult(
        tool_call_id=tool_call_id,
        content=json.dumps(error.to_observation(), ensure_ascii=False),
        is_error=True,
    )

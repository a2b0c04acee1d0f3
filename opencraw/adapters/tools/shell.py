"""
Shell command execution tool.

Runs commands through ``/bin/sh -lc`` with the working directory confined to
the sandbox root. Each run is bounded by a timeout, and captured output is
truncated.
"""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path
from typing import Any

from opencraw.adapters.tools.filesystem import resolve_in_root
from opencraw.core.errors import ExecutionFailedError, InvalidArgumentsError
from opencraw.core.models import RiskLevel

DEFAULT_TIMEOUT_SECONDS = 30.0
OUTPUT_CHARS_MAX = 32_000


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}\n...[truncated {len(text) - limit} chars]"


class ShellTool:
    """Executes shell commands inside the sandbox root."""

    name = "shell_execute"
    description = (
        "Execute a shell command in the sandbox directory. "
        "Returns stdout, stderr and the exit code."
    )
    parameters = {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "command": {"type": "string", "description": "The shell command to execute."},
            "working_directory": {
                "type": "string",
                "description": "Directory relative to the sandbox root (default: root).",
            },
        },
        "required": ["command"],
    }
    risk_level = RiskLevel.HIGH

    def __init__(
        self,
        root: Path,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        output_chars_max: int = OUTPUT_CHARS_MAX,
    ) -> None:
        self._root = root
        self._timeout = timeout
        self._output_chars_max = output_chars_max

    async def execute(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Run the command and return stdout, stderr and exit code."""
        command = arguments["command"]
        if not command.strip():
            raise InvalidArgumentsError("command must not be empty")
        cwd = resolve_in_root(self._root, arguments.get("working_directory") or ".")
        cwd.mkdir(parents=True, exist_ok=True)

        proc = await asyncio.create_subprocess_exec(
            "/bin/sh",
            "-lc",
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            raise ExecutionFailedError("shell command timed out") from None

        return {
            "stdout": _truncate(stdout.decode(errors="replace"), self._output_chars_max),
            "stderr": _truncate(stderr.decode(errors="replace"), self._output_chars_max),
            "exit_code": proc.returncode if proc.returncode is not None else -1,
        }

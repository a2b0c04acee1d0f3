"""
Sandboxed filesystem tool: read, write, list and search.

All paths are relative to the configured root. Absolute paths and any
``..`` component are refused before the filesystem is touched.
"""

from __future__ import annotations

import asyncio
import os
import re
from pathlib import Path, PurePosixPath
from typing import Any

from opencraw.core.errors import (
    ExecutionFailedError,
    InvalidArgumentsError,
    UnauthorizedError,
)
from opencraw.core.models import RiskLevel

FILE_BYTES_MAX = 1_000_000
SEARCH_RESULTS_MAX = 200
SEARCH_STEPS_MAX = 50_000


def resolve_in_root(root: Path, user_path: str) -> Path:
    """
    Resolve a user-supplied relative path under ``root``.

    Raises:
        UnauthorizedError: Absolute path, ``..`` component, or a symlink that
            leads outside the root.
    """
    rel = PurePosixPath(user_path)
    if rel.is_absolute() or Path(user_path).is_absolute():
        raise UnauthorizedError("absolute paths are not allowed")
    if ".." in rel.parts:
        raise UnauthorizedError("path traversal is not allowed")
    candidate = root / rel
    real_root = root.resolve()
    if not candidate.resolve().is_relative_to(real_root):
        raise UnauthorizedError("path escapes the sandbox root")
    return candidate


class FilesystemTool:
    """File access confined to one root directory."""

    name = "filesystem"
    description = "Read and write files within a configured root directory."
    parameters = {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "action": {
                "type": "string",
                "enum": ["read_file", "write_file", "list_dir", "search_files"],
            },
            "path": {"type": "string", "description": "Path relative to the root."},
            "content": {"type": "string", "description": "Text to write (write_file)."},
            "pattern": {
                "type": "string",
                "description": "Regex matched against file names (search_files).",
            },
        },
        "required": ["action", "path"],
    }
    risk_level = RiskLevel.MEDIUM

    def __init__(
        self,
        root: Path,
        file_bytes_max: int = FILE_BYTES_MAX,
        search_results_max: int = SEARCH_RESULTS_MAX,
        search_steps_max: int = SEARCH_STEPS_MAX,
    ) -> None:
        self._root = root
        self._file_bytes_max = file_bytes_max
        self._search_results_max = search_results_max
        self._search_steps_max = search_steps_max

    async def execute(self, arguments: dict[str, Any]) -> dict[str, Any]:
        action = arguments["action"]
        path = resolve_in_root(self._root, arguments["path"])
        match action:
            case "read_file":
                return {"content": await asyncio.to_thread(self._read, path)}
            case "write_file":
                if "content" not in arguments:
                    raise InvalidArgumentsError("content is required for write_file")
                await asyncio.to_thread(self._write, path, arguments["content"])
                return {"status": "ok"}
            case "list_dir":
                return {"entries": await asyncio.to_thread(self._list, path)}
            case "search_files":
                pattern = arguments.get("pattern") or ".*"
                try:
                    regex = re.compile(pattern)
                except re.error as e:
                    raise InvalidArgumentsError(f"invalid regex: {e}") from e
                return {"matches": await asyncio.to_thread(self._search, path, regex)}
            case _:
                raise InvalidArgumentsError(f"unknown action: {action}")

    def _read(self, path: Path) -> str:
        with path.open("rb") as f:
            data = f.read(self._file_bytes_max + 1)
            if len(data) > self._file_bytes_max:
                size = os.fstat(f.fileno()).st_size
                raise ExecutionFailedError(
                    f"file too large: {size} bytes (max {self._file_bytes_max})"
                )
        return data.decode("utf-8", errors="replace")

    def _write(self, path: Path, content: str) -> None:
        data = content.encode("utf-8")
        if len(data) > self._file_bytes_max:
            raise ExecutionFailedError(
                f"content too large: {len(data)} bytes (max {self._file_bytes_max})"
            )
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def _list(self, path: Path) -> list[str]:
        entries: list[str] = []
        with os.scandir(path) as it:
            for entry in it:
                entries.append(entry.name)
                if len(entries) >= self._search_results_max:
                    break
        return sorted(entries)

    def _search(self, path: Path, regex: re.Pattern[str]) -> list[str]:
        matches: list[str] = []
        stack = [path]
        steps = 0
        while stack:
            steps += 1
            if steps >= self._search_steps_max:
                break
            directory = stack.pop()
            try:
                it = os.scandir(directory)
            except OSError:
                continue
            with it:
                for entry in it:
                    if entry.is_dir(follow_symlinks=False):
                        stack.append(Path(entry.path))
                        continue
                    if not entry.is_file(follow_symlinks=False):
                        continue
                    if regex.search(entry.name):
                        matches.append(Path(entry.path).relative_to(self._root).as_posix())
                        if len(matches) >= self._search_results_max:
                            return matches
        return matches

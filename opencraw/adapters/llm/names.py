"""
Reversible tool-name sanitization for OpenAI-family endpoints.

OpenAI only accepts tool names matching ``^[A-Za-z0-9_-]+$`` (at most 64
characters). Registered tools may use other characters, so names are
rewritten on the way out and mapped back on the way in.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable

TOOL_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_INVALID_CHARS = re.compile(r"[^A-Za-z0-9_-]")

OPENAI_MAX_TOOL_NAME = 64
ANTHROPIC_MAX_TOOL_NAME = 128


def _basic(name: str, max_length: int) -> str:
    return _INVALID_CHARS.sub("_", name)[:max_length] or "tool"


class ToolNameMap:
    """
    Forward (original → sanitized) and reverse maps for one request.

    Names are assigned in the order given. A sanitized name that is already
    taken gets ``_N`` appended, where N counts the collisions on that base.
    """

    def __init__(self, names: Iterable[str], max_length: int = OPENAI_MAX_TOOL_NAME) -> None:
        self._max_length = max_length
        self.forward: dict[str, str] = {}
        self.reverse: dict[str, str] = {}
        collisions: Counter[str] = Counter()
        for name in names:
            if name in self.forward:
                continue
            base = _basic(name, max_length)
            candidate = base
            while candidate in self.reverse:
                collisions[base] += 1
                suffix = f"_{collisions[base]}"
                candidate = base[: max_length - len(suffix)] + suffix
            self.forward[name] = candidate
            self.reverse[candidate] = name

    def sanitize(self, name: str) -> str:
        """Outbound name; unknown names (e.g. from old history) get the basic rewrite."""
        mapped = self.forward.get(name)
        return mapped if mapped is not None else _basic(name, self._max_length)

    def restore(self, name: str) -> str:
        """Original name for a sanitized one; unknown names pass through."""
        return self.reverse.get(name, name)

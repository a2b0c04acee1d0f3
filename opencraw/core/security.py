"""
Security gate: sender allowlist and per-tool approval policy.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from opencraw.core.errors import UnauthorizedError
from opencraw.core.models import ApprovalMode, RiskLevel

WEBCHAT_CHANNEL_ID = "webchat"

SHELL_TOOL = "shell_execute"
BROWSER_TOOL = "browser"
FILESYSTEM_TOOL = "filesystem"

_RISK_DEFAULTS = {
    RiskLevel.LOW: ApprovalMode.AUTO,
    RiskLevel.MEDIUM: ApprovalMode.AI,
    RiskLevel.HIGH: ApprovalMode.HUMAN,
}


@dataclass
class SecurityGate:
    """
    Evaluates who may talk to the assistant and which tool calls may run.

    Human-gated calls are refused unless their tool-call id was cleared in
    advance through ``pre_clear``.
    """

    allow_all_senders: bool = False
    allowed_users: Sequence[str] = ()
    shell_approval: ApprovalMode = ApprovalMode.AUTO
    browser_approval: ApprovalMode = ApprovalMode.AI
    filesystem_write_approval: ApprovalMode = ApprovalMode.AI
    _cleared: set[str] = field(default_factory=set, repr=False)

    def is_sender_allowed(self, channel_id: str, sender_id: str) -> bool:
        """Webchat is always allowed; other senders need the allowlist."""
        if channel_id == WEBCHAT_CHANNEL_ID or self.allow_all_senders:
            return True
        allowed = set(self.allowed_users)
        return sender_id in allowed or f"{channel_id}:{sender_id}" in allowed

    def approval_mode(
        self, tool_name: str, risk: RiskLevel, arguments: Mapping[str, Any]
    ) -> ApprovalMode:
        """Resolve the approval mode for one proposed call."""
        if tool_name == SHELL_TOOL:
            return self.shell_approval
        if tool_name == BROWSER_TOOL:
            return self.browser_approval
        if tool_name == FILESYSTEM_TOOL:
            if arguments.get("action") == "write_file":
                return self.filesystem_write_approval
            return ApprovalMode.AUTO
        return _RISK_DEFAULTS[risk]

    def pre_clear(self, tool_call_id: str) -> None:
        """Record a human approval for a specific upcoming tool call."""
        self._cleared.add(tool_call_id)

    def check_tool_call(
        self,
        tool_call_id: str,
        tool_name: str,
        risk: RiskLevel,
        arguments: Mapping[str, Any],
    ) -> ApprovalMode:
        """
        Apply the approval policy to a tool call.

        Returns:
            The mode that permitted the call.

        Raises:
            UnauthorizedError: The call needs a human approval that is missing.
        """
        mode = self.approval_mode(tool_name, risk, arguments)
        if mode is ApprovalMode.HUMAN:
            if tool_call_id in self._cleared:
                self._cleared.discard(tool_call_id)
                return mode
            logger.info("security: denied {} ({}), human approval required", tool_name, risk)
            raise UnauthorizedError(f"tool '{tool_name}' requires human approval")
        return mode

"""
Error taxonomy shared by the core and its adapters.

Tool errors never escape the assistant loop: the executor turns them into
``tool`` observations. LLM errors surface to the loop, which decides whether
to fall back to another model or to apologise to the user.
"""

from __future__ import annotations

# ── Tool errors ──────────────────────────────────────────────────────────────


class ToolError(Exception):
    """Base class for failures raised while running a tool."""

    kind = "execution_failed"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"

    def to_observation(self) -> dict[str, str]:
        """Render the JSON object the LLM sees as the tool result."""
        return {"error": str(self), "kind": self.kind}


class InvalidArgumentsError(ToolError):
    kind = "invalid_arguments"


class UnauthorizedError(ToolError):
    kind = "unauthorized"


class ExecutionFailedError(ToolError):
    kind = "execution_failed"


class ToolIoError(ToolError):
    kind = "io"


# ── LLM errors ───────────────────────────────────────────────────────────────


class LlmError(Exception):
    """Base class for LLM client failures. All but invalid input are retryable."""

    retryable = True


class InvalidInputError(LlmError):
    """The request could not be built (bad model, duplicate tools, ...)."""

    retryable = False


class HttpError(LlmError):
    """Transport failure or non-2xx answer from the provider."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ResponseFormatError(LlmError):
    """The provider answered with an unexpected payload shape."""


class StreamParseError(LlmError):
    """A streamed event could not be decoded."""


# ── Channel errors ───────────────────────────────────────────────────────────


class ChannelError(RuntimeError):
    """A channel adapter could not start or the remote refused a send."""

"""Structured error types for mcp_e2e.

Callers can catch specific error types instead of inspecting subprocess or
litellm exceptions:

    from mcp_e2e.errors import ProviderConnectionError, ProtocolError

    try:
        await client.connect()
    except ProviderConnectionError:
        # The provider never came up: the scenario cannot run
        ...

Two families live here. Connection/transport/protocol/backend errors are
raised by the boundaries (provider subprocess and completion backend).
``RunAborted`` subclasses are the terminal outcomes of a conversation: each
carries the report marker that makes the run count as failed.
"""

from __future__ import annotations

from typing import Any


class E2EError(Exception):
    """Base for all mcp_e2e errors."""

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class ProviderConnectionError(E2EError, ConnectionError):
    """Tool provider could not be started or failed its handshake."""


class TransportError(E2EError):
    """Stream to the provider closed, broke, or timed out mid-request."""


class ProtocolError(E2EError):
    """Provider answered with a JSON-RPC error envelope."""

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        original: Exception | None = None,
    ) -> None:
        super().__init__(message, original=original)
        self.code = code


class BackendError(E2EError):
    """Completion backend failed: non-success status, unreachable, or malformed reply."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
        original: Exception | None = None,
    ) -> None:
        super().__init__(message, original=original)
        self.status_code = status_code
        self.retryable = retryable


class ToolFailure(E2EError):
    """A tool call failed. Recovered inside the conversation with a corrective message."""

    def __init__(
        self,
        message: str,
        *,
        tool_name: str = "",
        reason: str = "",
        original: Exception | None = None,
    ) -> None:
        super().__init__(message, original=original)
        self.tool_name = tool_name
        self.reason = reason


class PreconditionViolation(ToolFailure):
    """The call was rejected before reaching the provider because the run state cannot satisfy it."""


# ---------------------------------------------------------------------------
# Terminal run outcomes
# ---------------------------------------------------------------------------


class RunAborted(E2EError):
    """Base for outcomes that stop a conversation for good."""

    marker: str = "MCP execution failed:"


class LoopDetected(RunAborted):
    """The same failure repeated up to the configured ceiling."""

    marker = "FAILED: Same error repeated"


class TurnsExhausted(RunAborted):
    """The turn ceiling was reached before the task finished."""

    marker = "FAILED: Reached maximum turns"


class TimeBudgetExceeded(RunAborted):
    """The wall-clock budget (or its soft threshold) ran out."""

    marker = "Timeout reached after"


# Fragments of a backend error body that point at a model without tool support.
_NO_TOOLS_PATTERNS = [
    "does not support tools",
    "tools is not supported",
    "tool use is not supported",
]

# Substrings that make a backend failure worth retrying.
_RETRYABLE_PATTERNS = [
    "rate limit",
    "rate_limit",
    "timeout",
    "timed out",
    "connection reset",
    "connection error",
    "connection refused",
    "service unavailable",
    "internal server error",
    "server error",
    "overloaded",
    "http 500",
    "http 502",
    "http 503",
    "temporary failure",
]


def _litellm_error_types(module: Any, names: tuple[str, ...]) -> tuple[type[BaseException], ...]:
    """Resolve optional litellm exception classes without static attribute coupling."""
    out: list[type[BaseException]] = []
    for name in names:
        candidate = getattr(module, name, None)
        if isinstance(candidate, type) and issubclass(candidate, BaseException):
            out.append(candidate)
    return tuple(out)


def is_retryable_backend_error(error: Exception) -> bool:
    """Decide whether a backend failure is transient.

    Uses litellm exception types first, then falls back to string matching.
    """
    if isinstance(error, BackendError):
        return error.retryable

    import litellm as _lt

    permanent_types = _litellm_error_types(
        _lt,
        (
            "AuthenticationError",
            "PermissionDeniedError",
            "NotFoundError",
            "BadRequestError",
            "ContentPolicyViolationError",
        ),
    )
    if permanent_types and isinstance(error, permanent_types):
        return False

    transient_types = _litellm_error_types(
        _lt,
        (
            "RateLimitError",
            "InternalServerError",
            "ServiceUnavailableError",
            "APIConnectionError",
            "Timeout",
        ),
    )
    if transient_types and isinstance(error, transient_types):
        return True

    error_str = str(error).lower()
    if any(p in error_str for p in _NO_TOOLS_PATTERNS):
        return False
    return any(p in error_str for p in _RETRYABLE_PATTERNS)


def wrap_backend_error(error: Exception) -> BackendError:
    """Wrap an exception from the completion call in a BackendError.

    If the error is already a BackendError, returns it unchanged.
    """
    if isinstance(error, BackendError):
        return error

    message = str(error)
    if any(p in message.lower() for p in _NO_TOOLS_PATTERNS):
        message = (
            f"{message}. The selected model does not support tool calling; "
            "configure a tool-capable model (e.g. llama3.1, llama3.2, qwen2.5, mistral)."
        )

    status_code = getattr(error, "status_code", None)
    return BackendError(
        message,
        status_code=status_code if isinstance(status_code, int) else None,
        retryable=is_retryable_backend_error(error),
        original=error,
    )

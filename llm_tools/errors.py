"""Structured error types for llm_tools.

Only failures that end an exchange surface as exceptions. Tool execution
errors and unknown tool names never do: they come back to the model as
error-flagged tool results so it can adapt.

    from llm_tools.errors import MaxToolIterationsError, NoToolsAvailableError

    try:
        result = await orchestrator.achat(messages, tags=["math"])
    except NoToolsAvailableError:
        # Nothing registered for these tags, the model was never called
        ...
    except MaxToolIterationsError as exc:
        logger.warning("gave up after %d iterations", exc.max_iterations)
"""

from __future__ import annotations

from typing import Any, Iterable


class ToolOrchestratorError(Exception):
    """Base for all llm_tools errors."""

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class NoToolsAvailableError(ToolOrchestratorError):
    """No tool (nor the search meta-tool) is visible for the requested tags."""

    def __init__(self, tags: Iterable[str]) -> None:
        self.tags = list(tags)
        super().__init__(f"No tools available for tags: {', '.join(self.tags) or '<none>'}")


class MaxToolIterationsError(ToolOrchestratorError):
    """The agentic loop hit its iteration bound without a final answer."""

    def __init__(self, max_iterations: int, tool_calls: list[str] | None = None) -> None:
        self.max_iterations = max_iterations
        self.tool_calls = list(tool_calls or [])
        super().__init__(
            f"Exceeded max tool iterations ({max_iterations}); "
            f"last tools called: {', '.join(self.tool_calls[-5:]) or '<none>'}"
        )


class ServerConfigError(ToolOrchestratorError):
    """A remote tool server is misconfigured (missing command/url, bad transport)."""

    def __init__(self, server: str, message: str) -> None:
        self.server = server
        super().__init__(f"mcp server {server!r}: {message}")


class RemoteServerInitError(ToolOrchestratorError):
    """A remote tool server could not be started, initialized or listed."""

    def __init__(self, server: str, original: Exception | None = None) -> None:
        self.server = server
        detail = f": {type(original).__name__}: {original}" if original is not None else ""
        super().__init__(f"Failed to initialize mcp server {server!r}{detail}", original=original)


class RemoteTransportError(ToolOrchestratorError):
    """The connection to a remote tool server broke mid-call."""


# ---------------------------------------------------------------------------
# Model transport errors
# ---------------------------------------------------------------------------


class LLMError(ToolOrchestratorError):
    """Base for failures raised by the model transport."""


class LLMRateLimitError(LLMError):
    """Transient rate limit (429)."""


class LLMAuthError(LLMError):
    """Authentication failed (401/403)."""


class LLMContentFilterError(LLMError):
    """Content policy violation, request was blocked."""


class LLMTransientError(LLMError):
    """Server error (500/502/503), timeout, connection."""


class LLMModelNotFoundError(LLMError):
    """Model doesn't exist (404)."""


def _litellm_error_types(module: Any, names: tuple[str, ...]) -> tuple[type[BaseException], ...]:
    """Resolve optional litellm exception classes without static attribute coupling."""
    out: list[type[BaseException]] = []
    for name in names:
        candidate = getattr(module, name, None)
        if isinstance(candidate, type) and issubclass(candidate, BaseException):
            out.append(candidate)
    return tuple(out)


def classify_error(error: Exception) -> type[LLMError]:
    """Classify a model transport exception into an LLMError subtype.

    Uses litellm exception types first, falls back to string matching.
    """
    import litellm as _lt

    checks: list[tuple[tuple[str, ...], type[LLMError]]] = [
        (("AuthenticationError", "PermissionDeniedError"), LLMAuthError),
        (("NotFoundError",), LLMModelNotFoundError),
        (("ContentPolicyViolationError",), LLMContentFilterError),
        (("RateLimitError",), LLMRateLimitError),
        (
            ("InternalServerError", "ServiceUnavailableError", "APIConnectionError", "Timeout"),
            LLMTransientError,
        ),
    ]
    for names, cls in checks:
        types = _litellm_error_types(_lt, names)
        if types and isinstance(error, types):
            return cls

    error_str = str(error).lower()
    if "401" in error_str or "403" in error_str or "unauthorized" in error_str:
        return LLMAuthError
    if "404" in error_str or "not found" in error_str:
        return LLMModelNotFoundError
    if "rate" in error_str and "limit" in error_str:
        return LLMRateLimitError
    if any(p in error_str for p in ("timeout", "timed out", "connection", "502", "503")):
        return LLMTransientError
    return LLMError


def wrap_error(error: Exception) -> LLMError:
    """Wrap an exception in the matching LLMError subclass (idempotent)."""
    if isinstance(error, LLMError):
        return error
    cls = classify_error(error)
    return cls(str(error), original=error)


# ---------------------------------------------------------------------------
# Remote transport classification
# ---------------------------------------------------------------------------

# JSON-RPC code the mcp SDK uses when the peer connection goes away.
_MCP_CONNECTION_CLOSED = -32000


def is_transport_error(error: BaseException) -> bool:
    """True when ``error`` means the remote connection is unusable.

    Tool-level failures (bad arguments, server-side exceptions reported as
    JSON-RPC errors) are not transport errors and never trigger a reconnect.
    """
    if isinstance(error, (RemoteTransportError, ConnectionError, EOFError, BrokenPipeError)):
        return True
    if isinstance(error, OSError):
        return True

    import anyio
    import httpx

    if isinstance(
        error,
        (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream, httpx.TransportError),
    ):
        return True

    from mcp.shared.exceptions import McpError

    if isinstance(error, McpError):
        code = getattr(getattr(error, "error", None), "code", None)
        return code == _MCP_CONNECTION_CLOSED
    return False

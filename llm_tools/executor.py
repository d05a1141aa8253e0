"""Runs one tool call against a local registration or a remote server.

Nothing raised while running a tool escapes :meth:`ToolInvocationExecutor.invoke`:
bad JSON, argument mismatches, executor exceptions and remote failures
(after the manager's single reconnect retry) all come back as
``is_error=True`` results the model can read and react to.
"""

from __future__ import annotations

import asyncio
import inspect
import json as _json
import logging
import time
from typing import Any, Callable

from llm_tools.config import DEFAULT_TOOL_RESULT_MAX_LENGTH
from llm_tools.mcp_manager import RemoteConnectionManager
from llm_tools.models import ToolCallRecord, ToolCallRequest, ToolCallResult, ToolRegistration
from llm_tools.resolver import CandidateSet
from llm_tools.tool_index import SEARCH_TOOL_NAME

logger = logging.getLogger(__name__)

LOCAL_SERVER = "__local__"


def _truncate(text: str, max_length: int) -> str:
    """Truncate text if it exceeds max_length, appending a notice."""
    if len(text) <= max_length:
        return text
    return text[:max_length] + f"\n... [truncated at {max_length} chars]"


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    try:
        return _json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def decode_arguments(raw: str) -> dict[str, Any]:
    """Decode a tool call's JSON arguments. Empty input means no arguments."""
    if not raw or not raw.strip():
        return {}
    arguments = _json.loads(raw)
    if arguments is None:
        return {}
    if not isinstance(arguments, dict):
        raise ValueError(f"arguments must be a JSON object, got {type(arguments).__name__}")
    return arguments


def check_arguments(registration: ToolRegistration, arguments: dict[str, Any]) -> list[str]:
    """Problems with ``arguments`` for this tool; empty when they can be passed through.

    Unknown names are checked against the executor's signature (tools
    taking ``**kwargs`` accept anything); missing names against both the
    signature and the spec's ``required`` list.
    """
    problems: list[str] = []
    required = set(registration.spec.required_parameters())
    accepted: set[str] | None = None
    try:
        sig = inspect.signature(registration.executor)
    except (TypeError, ValueError):
        sig = None
    if sig is not None:
        accepted = set()
        for name, param in sig.parameters.items():
            if param.kind == inspect.Parameter.VAR_KEYWORD:
                accepted = None
                break
            if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.POSITIONAL_ONLY):
                continue
            accepted.add(name)
            if param.default is inspect.Parameter.empty:
                required.add(name)

    if accepted is not None:
        unknown = sorted(k for k in arguments if k not in accepted)
        if unknown:
            problems.append("unsupported args: " + ", ".join(unknown))
    missing = sorted(r for r in required if r not in arguments)
    if missing:
        problems.append("missing required args: " + ", ".join(missing))
    if problems and accepted is not None:
        problems.append("allowed args: " + ", ".join(sorted(accepted)))
    return problems


async def _run(fn: Callable[..., Any], arguments: dict[str, Any]) -> Any:
    if asyncio.iscoroutinefunction(fn):
        return await fn(**arguments)
    result = fn(**arguments)
    if inspect.isawaitable(result):
        result = await result
    return result


class ToolInvocationExecutor:
    """Resolves a ToolCallRequest to local or remote execution."""

    def __init__(
        self,
        remote: RemoteConnectionManager | None = None,
        *,
        max_result_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH,
    ) -> None:
        self.remote = remote
        self.max_result_length = max_result_length

    def is_return_direct(self, name: str, candidates: CandidateSet) -> bool:
        registration = candidates.local.get(name)
        if registration is not None:
            return registration.return_direct
        if name in candidates.remote and self.remote is not None:
            return self.remote.is_return_direct(name)
        return False

    def server_for(self, name: str, candidates: CandidateSet) -> str | None:
        if name in candidates.local:
            return LOCAL_SERVER
        if name in candidates.remote and self.remote is not None:
            return self.remote.owner_of(name)
        return None

    def _not_found(self, request: ToolCallRequest, candidates: CandidateSet) -> str:
        message = f"Error: Tool '{request.name}' not found."
        if candidates.search_enabled:
            message += f" Use {SEARCH_TOOL_NAME} to discover available tools."
        return message

    async def invoke(
        self,
        request: ToolCallRequest,
        candidates: CandidateSet,
        records: list[ToolCallRecord] | None = None,
    ) -> ToolCallResult:
        """Execute ``request`` and return its normalized result. Never raises for tool failures."""
        t0 = time.monotonic()
        server = self.server_for(request.name, candidates)
        record = ToolCallRecord(tool=request.name, server=server, arguments=request.arguments)
        raw, is_error = await self._invoke(request, candidates, server)
        content = _truncate(raw, self.max_result_length)
        if is_error:
            record.error = content
            logger.warning("Tool %s failed: %s", request.name, content[:300])
        else:
            record.result = content
        record.latency_s = round(time.monotonic() - t0, 3)
        if records is not None:
            records.append(record)
        return ToolCallResult(id=request.id, name=request.name, content=content, is_error=is_error, raw=raw)

    async def _invoke(
        self,
        request: ToolCallRequest,
        candidates: CandidateSet,
        server: str | None,
    ) -> tuple[str, bool]:
        if server is None:
            return self._not_found(request, candidates), True

        try:
            arguments = decode_arguments(request.arguments)
        except ValueError as e:
            logger.error(
                "Failed to parse tool call arguments for %s: %s", request.name, request.arguments[:200],
            )
            return f"Error: Invalid JSON arguments for tool '{request.name}': {e}", True

        if server == LOCAL_SERVER:
            registration = candidates.local[request.name]
            problems = check_arguments(registration, arguments)
            if problems:
                return f"Error: Validation error for tool '{request.name}': {'; '.join(problems)}", True
            try:
                raw = await _run(registration.executor, arguments)
            except Exception as e:
                return f"Error executing tool '{request.name}': {type(e).__name__}: {e}", True
            return _to_text(raw), False

        if self.remote is None:
            return f"Error executing tool '{request.name}' on server '{server}': no remote servers configured", True
        try:
            result = await self.remote.call_tool(request.name, arguments)
        except Exception as e:
            return f"Error executing tool '{request.name}' on server '{server}': {type(e).__name__}: {e}", True
        return result.content, result.is_error

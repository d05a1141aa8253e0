"""Agentic tool-calling orchestrator over litellm and MCP.

Local Python tools are registered under tags; remote MCP servers contribute
their tools; the model sees the tools matching a request's tags and may
search hidden ones by meaning.

Usage:
    from llm_tools import ToolOrchestrator, Visibility

    orchestrator = ToolOrchestrator("gpt-4o-mini")

    @orchestrator.tool(tags=["math"])
    def add(a: int, b: int) -> int:
        "Add two integers."
        return a + b

    result = orchestrator.chat("What is 17 + 25?", tags=["math"])
    print(result.content)

    # Async, with remote servers and tool search
    from llm_tools import RemoteServerConfig, litellm_embedder

    servers = [RemoteServerConfig(name="fs", transport_type="stdio", command="mcp-fs")]
    async with ToolOrchestrator(
        "gpt-4o-mini", servers=servers, embed_fn=litellm_embedder("text-embedding-3-small"),
    ) as orch:
        result = await orch.achat(messages, tags=["files"], exclude_tags=["admin"])
"""

import logging as _logging
import os as _os
from pathlib import Path as _Path

_DEFAULT_KEYS_FILE = _Path.home() / ".secrets" / "api_keys.env"
_log = _logging.getLogger(__name__)


def _load_api_keys() -> int:
    """Load API keys from env file into os.environ on import.

    Reads from LLM_TOOLS_KEYS_FILE env var, or ~/.secrets/api_keys.env.
    Skips comments, empty lines, and keys already set in the environment.
    Returns the number of keys loaded.
    """
    keys_file = _Path(_os.environ.get("LLM_TOOLS_KEYS_FILE", str(_DEFAULT_KEYS_FILE)))
    if not keys_file.is_file():
        return 0
    loaded = 0
    for line in keys_file.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[7:]
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip().strip("\"'")
        if key and key not in _os.environ:
            _os.environ[key] = value
            loaded += 1
    if loaded:
        _log.debug("llm_tools: loaded %d API keys from %s", loaded, keys_file)
    return loaded


_load_api_keys()

from llm_tools.agent_loop import AgenticLoopEngine
from llm_tools.client import LLMCallResult, acall_model, litellm_transport
from llm_tools.config import (
    LoadedConfig,
    OrchestratorConfig,
    RemoteServerConfig,
    load_config,
    parse_flat_server_config,
)
from llm_tools.embeddings import cosine_similarity, litellm_embedder
from llm_tools.errors import (
    LLMAuthError,
    LLMContentFilterError,
    LLMError,
    LLMModelNotFoundError,
    LLMRateLimitError,
    LLMTransientError,
    MaxToolIterationsError,
    NoToolsAvailableError,
    RemoteServerInitError,
    RemoteTransportError,
    ServerConfigError,
    ToolOrchestratorError,
)
from llm_tools.executor import ToolInvocationExecutor
from llm_tools.mcp_manager import RemoteConnectionManager, RemoteToolResult, ServerState
from llm_tools.models import (
    ExchangeResult,
    FinishReason,
    IterationState,
    ToolCallRecord,
    ToolCallRequest,
    ToolCallResult,
    ToolParameter,
    ToolRegistration,
    ToolSpecification,
    Visibility,
)
from llm_tools.orchestrator import ToolOrchestrator, make_registration, tool
from llm_tools.registry import ToolRegistry, default_registry
from llm_tools.resolver import CandidateResolver, CandidateSet, ToolExclusion
from llm_tools.schema import spec_from_callable, spec_from_flat_parameters, spec_from_mcp_tool
from llm_tools.tool_index import SEARCH_TOOL_NAME, ScoredTool, SemanticToolIndex

__all__ = [
    "AgenticLoopEngine",
    "CandidateResolver",
    "CandidateSet",
    "ExchangeResult",
    "FinishReason",
    "IterationState",
    "LLMAuthError",
    "LLMCallResult",
    "LLMContentFilterError",
    "LLMError",
    "LLMModelNotFoundError",
    "LLMRateLimitError",
    "LLMTransientError",
    "LoadedConfig",
    "MaxToolIterationsError",
    "NoToolsAvailableError",
    "OrchestratorConfig",
    "RemoteConnectionManager",
    "RemoteServerConfig",
    "RemoteServerInitError",
    "RemoteToolResult",
    "RemoteTransportError",
    "SEARCH_TOOL_NAME",
    "ScoredTool",
    "SemanticToolIndex",
    "ServerConfigError",
    "ServerState",
    "ToolCallRecord",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolExclusion",
    "ToolInvocationExecutor",
    "ToolOrchestrator",
    "ToolOrchestratorError",
    "ToolParameter",
    "ToolRegistration",
    "ToolRegistry",
    "ToolSpecification",
    "Visibility",
    "acall_model",
    "cosine_similarity",
    "default_registry",
    "litellm_embedder",
    "litellm_transport",
    "load_config",
    "make_registration",
    "parse_flat_server_config",
    "spec_from_callable",
    "spec_from_flat_parameters",
    "spec_from_mcp_tool",
    "tool",
]

"""Typed runtime configuration for llm_tools.

Two layers:

- :class:`OrchestratorConfig`: loop/search/reconnect policy, resolved once
  (``from_env`` or explicitly) and passed to the orchestrator.
- :class:`RemoteServerConfig`: one entry per remote MCP tool server.

Both can be loaded from a YAML file::

    orchestrator:
      max_tool_iterations: 20
      search_min_score: 0.6
    mcp_servers:
      fs:
        transport_type: stdio
        command: npx
        args: ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"]
      weather:
        transport_type: streamable_http
        url: http://localhost:8080/mcp
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from llm_tools.errors import ServerConfigError

logger = logging.getLogger(__name__)

MAX_TOOL_ITERATIONS_ENV = "LLM_TOOLS_MAX_TOOL_ITERATIONS"
SEARCH_MAX_RESULTS_ENV = "LLM_TOOLS_SEARCH_MAX_RESULTS"
SEARCH_MIN_SCORE_ENV = "LLM_TOOLS_SEARCH_MIN_SCORE"
MCP_RECONNECT_ENV = "LLM_TOOLS_MCP_RECONNECT"
TOOL_RESULT_MAX_LENGTH_ENV = "LLM_TOOLS_TOOL_RESULT_MAX_LENGTH"

DEFAULT_MAX_TOOL_ITERATIONS: int = 50
DEFAULT_SEARCH_MAX_RESULTS: int = 5
DEFAULT_SEARCH_MIN_SCORE: float = 0.5
DEFAULT_TOOL_RESULT_MAX_LENGTH: int = 50_000
DEFAULT_MCP_TIMEOUT: float = 60.0

TransportType = Literal["stdio", "streamable_http", "sse"]

_TRANSPORT_ALIASES: dict[str, str] = {
    "stdio": "stdio",
    "streamable_http": "streamable_http",
    "streamablehttp": "streamable_http",
    "http": "streamable_http",
    "sse": "sse",
}


def _csv_list(value: Any) -> Any:
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return value


_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        value = minimum - 1
    if value < minimum:
        logger.warning("Invalid %s=%r; expected integer >= %d. Defaulting to %d.", name, raw, minimum, default)
        return default
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; expected a number. Defaulting to %s.", name, raw, default)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if not value:
        return default
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    logger.warning("Invalid %s=%r; expected on/off boolean. Defaulting to %s.", name, raw, default)
    return default


@dataclass(frozen=True)
class OrchestratorConfig:
    """Loop, search and reconnect policy for one orchestrator."""

    max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS
    search_max_results: int = DEFAULT_SEARCH_MAX_RESULTS
    search_min_score: float = DEFAULT_SEARCH_MIN_SCORE
    mcp_reconnect: bool = True
    tool_result_max_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH

    def __post_init__(self) -> None:
        if self.max_tool_iterations < 1:
            raise ValueError(f"max_tool_iterations must be >= 1, got {self.max_tool_iterations}")
        if self.search_max_results < 1:
            raise ValueError(f"search_max_results must be >= 1, got {self.search_max_results}")

    @classmethod
    def from_env(cls) -> OrchestratorConfig:
        return cls(
            max_tool_iterations=_env_int(MAX_TOOL_ITERATIONS_ENV, DEFAULT_MAX_TOOL_ITERATIONS),
            search_max_results=_env_int(SEARCH_MAX_RESULTS_ENV, DEFAULT_SEARCH_MAX_RESULTS),
            search_min_score=_env_float(SEARCH_MIN_SCORE_ENV, DEFAULT_SEARCH_MIN_SCORE),
            mcp_reconnect=_env_bool(MCP_RECONNECT_ENV, True),
            tool_result_max_length=_env_int(TOOL_RESULT_MAX_LENGTH_ENV, DEFAULT_TOOL_RESULT_MAX_LENGTH),
        )

    @classmethod
    def from_mapping(cls, data: dict[str, Any] | None) -> OrchestratorConfig:
        """Build from a config-file section; unknown keys are ignored with a warning."""
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning("Ignoring unknown orchestrator options: %s", ", ".join(unknown))
        return cls(**{k: v for k, v in data.items() if k in known})


class RemoteServerConfig(BaseModel):
    """Connection settings for one remote MCP tool server."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str
    transport_type: TransportType = Field(default="stdio", alias="transportType")
    command: str | None = None
    args: list[str] = []
    env: dict[str, str] | None = Field(default=None, alias="environment")
    cwd: str | None = None
    url: str | None = None
    headers: dict[str, str] | None = None
    timeout: float = DEFAULT_MCP_TIMEOUT
    log_requests: bool = Field(default=False, alias="logRequests")
    log_responses: bool = Field(default=False, alias="logResponses")
    protocol_versions: list[str] | None = Field(default=None, alias="protocolVersions")

    @field_validator("transport_type", mode="before")
    @classmethod
    def _normalize_transport(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _TRANSPORT_ALIASES.get(value.strip().lower(), value)
        return value

    @field_validator("args", "protocol_versions", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        return _csv_list(value)

    @classmethod
    def build(cls, name: str, data: dict[str, Any]) -> RemoteServerConfig:
        """Validate one server entry, raising ServerConfigError on any problem."""
        try:
            cfg = cls.model_validate({**data, "name": name})
        except ValidationError as e:
            raise ServerConfigError(name, _short_validation_message(e)) from e
        cfg.check()
        return cfg

    def check(self) -> None:
        if self.transport_type == "stdio" and not self.command:
            raise ServerConfigError(self.name, "command is required for stdio transport")
        if self.transport_type in ("streamable_http", "sse") and not self.url:
            raise ServerConfigError(self.name, f"url is required for {self.transport_type} transport")
        if self.timeout <= 0:
            raise ServerConfigError(self.name, f"timeout must be positive, got {self.timeout}")


def _short_validation_message(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def parse_flat_server_config(flat: dict[str, Any]) -> list[RemoteServerConfig]:
    """Group ``<server>.<property>`` keys into server configs.

    ``command`` may carry its arguments comma-separated
    (``npx,-y,@scope/server``); ``environment.<KEY>`` entries become the
    process environment. Keys without a server prefix are ignored.
    """
    groups: dict[str, dict[str, Any]] = {}
    for key, value in flat.items():
        server, dot, prop = key.partition(".")
        if not dot or not server or not prop:
            logger.warning(
                "Ignoring invalid mcp server property key %r. Expected <serverName>.<property>", key,
            )
            continue
        props = groups.setdefault(server, {})
        if prop.startswith("environment."):
            props.setdefault("environment", {})[prop[len("environment."):]] = str(value)
        else:
            props[prop] = value

    configs: list[RemoteServerConfig] = []
    for server, props in groups.items():
        if "transportType" not in props and "transport_type" not in props:
            raise ServerConfigError(server, "transportType is required")
        command = props.get("command")
        if isinstance(command, str) and "," in command:
            head, *rest = [c.strip() for c in command.split(",") if c.strip()]
            props["command"] = head
            props["args"] = rest + list(_csv_list(props.get("args") or []))
        configs.append(RemoteServerConfig.build(server, props))
    return configs


def servers_from_mapping(data: dict[str, Any] | None) -> list[RemoteServerConfig]:
    """Build server configs from a ``{name: {...}}`` mapping."""
    configs: list[RemoteServerConfig] = []
    for name, props in (data or {}).items():
        if not isinstance(props, dict):
            raise ServerConfigError(str(name), "server entry must be a mapping")
        configs.append(RemoteServerConfig.build(str(name), props))
    return configs


@dataclass(frozen=True)
class LoadedConfig:
    orchestrator: OrchestratorConfig
    servers: list[RemoteServerConfig]
    embedding_model: str | None = None


def load_config(path: str | Path) -> LoadedConfig:
    """Load orchestrator + server configuration from a YAML file."""
    p = Path(path)
    data = yaml.safe_load(p.read_text()) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{p}: top-level YAML must be a mapping")
    return LoadedConfig(
        orchestrator=OrchestratorConfig.from_mapping(data.get("orchestrator")),
        servers=servers_from_mapping(data.get("mcp_servers")),
        embedding_model=data.get("embedding_model"),
    )

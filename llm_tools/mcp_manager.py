"""Long-lived connections to remote MCP tool servers.

One :class:`RemoteConnectionManager` owns a connection per configured
server, converts each server's tools into ToolSpecifications and routes
``call_tool`` to the owning server. When a call fails at the transport
level (server process died, HTTP stream dropped) and reconnect is enabled,
that one server is torn down, rebuilt from its stored config, re-listed
and the call retried once.

Usage::

    async with RemoteConnectionManager(servers, reconnect=True) as manager:
        specs = manager.tools_for()
        result = await manager.call_tool("read_file", {"path": "/tmp/x"})

Per-server lifecycle::

    UNINITIALIZED → CONNECTING → READY → DEGRADED → RECONNECTING → READY
                                                               ↘ CLOSED
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Iterable

from llm_tools.config import RemoteServerConfig
from llm_tools.errors import (
    RemoteServerInitError,
    RemoteTransportError,
    ServerConfigError,
    ToolOrchestratorError,
    is_transport_error,
)
from llm_tools.models import ToolSpecification
from llm_tools.schema import mcp_tool_is_return_direct, spec_from_mcp_tool

logger = logging.getLogger(__name__)


class ServerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    READY = "ready"
    DEGRADED = "degraded"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass
class RemoteServerConnection:
    """Live state of one remote server. ``generation`` bumps on every reconnect."""

    config: RemoteServerConfig
    state: ServerState = ServerState.UNINITIALIZED
    session: Any = None
    stack: AsyncExitStack | None = None
    tool_names: list[str] = field(default_factory=list)
    generation: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def name(self) -> str:
        return self.config.name


@dataclass(frozen=True)
class RemoteToolResult:
    content: str
    is_error: bool = False


# ---------------------------------------------------------------------------
# Transport + session
# ---------------------------------------------------------------------------


def _import_mcp() -> tuple[Any, ...]:
    """Lazily import mcp client components.

    Returns:
        (ClientSession, StdioServerParameters, stdio_client, streamablehttp_client, sse_client)
    """
    try:
        from mcp import ClientSession, StdioServerParameters
        from mcp.client.sse import sse_client
        from mcp.client.stdio import stdio_client
        from mcp.client.streamable_http import streamablehttp_client
    except ImportError:
        raise ImportError(
            "mcp package is required for remote tool servers. Install with: pip install mcp"
        ) from None
    return ClientSession, StdioServerParameters, stdio_client, streamablehttp_client, sse_client


async def _open_transport(config: RemoteServerConfig, stack: AsyncExitStack) -> tuple[Any, Any]:
    """Enter the transport context for ``config`` and return (read, write) streams."""
    _, StdioServerParameters, stdio_client, streamablehttp_client, sse_client = _import_mcp()

    if config.transport_type == "stdio":
        params = StdioServerParameters(
            command=config.command,
            args=list(config.args),
            env=config.env,
            cwd=config.cwd,
        )
        streams = await stack.enter_async_context(stdio_client(params))
    elif config.transport_type == "streamable_http":
        streams = await stack.enter_async_context(
            streamablehttp_client(
                config.url,
                headers=config.headers,
                timeout=timedelta(seconds=config.timeout),
            )
        )
    elif config.transport_type == "sse":
        streams = await stack.enter_async_context(
            sse_client(config.url, headers=config.headers, timeout=config.timeout)
        )
    else:
        raise ServerConfigError(config.name, f"unknown transport type {config.transport_type!r}")
    return streams[0], streams[1]


async def _open_session(config: RemoteServerConfig, stack: AsyncExitStack) -> Any:
    """Open transport + ClientSession and run the MCP ``initialize`` handshake."""
    ClientSession = _import_mcp()[0]
    read_stream, write_stream = await _open_transport(config, stack)
    session = await stack.enter_async_context(
        ClientSession(
            read_stream,
            write_stream,
            read_timeout_seconds=timedelta(seconds=config.timeout),
        )
    )
    init_result = await asyncio.wait_for(session.initialize(), timeout=config.timeout)
    if config.protocol_versions:
        negotiated = getattr(init_result, "protocolVersion", None)
        if negotiated not in config.protocol_versions:
            raise ServerConfigError(
                config.name,
                f"server negotiated protocol version {negotiated!r}, "
                f"supported: {', '.join(config.protocol_versions)}",
            )
    return session


def _result_text(result: Any) -> str:
    parts: list[str] = []
    for item in getattr(result, "content", None) or []:
        text = getattr(item, "text", None)
        parts.append(text if isinstance(text, str) else str(item))
    return "\n".join(parts)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class RemoteConnectionManager:
    """Owns every remote server connection and the tool → server routing maps."""

    def __init__(
        self,
        servers: Iterable[RemoteServerConfig] = (),
        *,
        reconnect: bool = True,
    ) -> None:
        self.reconnect = reconnect
        self._configs = list(servers)
        self._connections: dict[str, RemoteServerConnection] = {}
        # Copy-on-write maps, swapped whole under _maps_lock.
        self._maps_lock = threading.Lock()
        self._tool_to_server: dict[str, str] = {}
        self._specs: dict[str, ToolSpecification] = {}
        self._return_direct: frozenset[str] = frozenset()

    async def __aenter__(self) -> RemoteConnectionManager:
        await self.initialize(self._configs)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # -- lifecycle ---------------------------------------------------------

    async def initialize(self, servers: Iterable[RemoteServerConfig]) -> None:
        """Connect every server and list its tools. Any failure is fatal."""
        servers = list(servers)
        try:
            for config in servers:
                if config.name in self._connections:
                    raise ServerConfigError(config.name, "duplicate server name")
                config.check()
                conn = RemoteServerConnection(config=config)
                self._connections[config.name] = conn
                await self._connect(conn)
        except BaseException:
            await self.close()
            raise
        logger.info(
            "RemoteConnectionManager: %d servers, %d tools",
            len(self._connections), len(self._specs),
        )

    async def _connect(self, conn: RemoteServerConnection) -> None:
        conn.state = ServerState.CONNECTING
        stack = AsyncExitStack()
        await stack.__aenter__()
        try:
            session = await _open_session(conn.config, stack)
            tools_result = await session.list_tools()
        except ToolOrchestratorError as e:
            await _close_stack(conn.name, stack)
            conn.state = ServerState.CLOSED
            if isinstance(e, RemoteServerInitError):
                raise
            raise RemoteServerInitError(conn.name, e) from e
        except Exception as e:
            await _close_stack(conn.name, stack)
            conn.state = ServerState.CLOSED
            raise RemoteServerInitError(conn.name, e) from e

        tools = list(tools_result.tools or [])
        conn.tool_names = self._replace_server_tools(conn.name, tools)
        conn.session = session
        conn.stack = stack
        conn.state = ServerState.READY
        logger.info(
            "Initialized mcp server %r with %d tools: %s",
            conn.name, len(tools), [t.name for t in tools],
        )

    def _replace_server_tools(self, server: str, tools: list[Any]) -> list[str]:
        """Drop ``server``'s old entries, add the new ones. First registration of a name wins."""
        with self._maps_lock:
            tool_to_server = {n: s for n, s in self._tool_to_server.items() if s != server}
            specs = {n: sp for n, sp in self._specs.items() if n in tool_to_server}
            return_direct = {n for n in self._return_direct if n in tool_to_server}
            owned: list[str] = []
            for tool in tools:
                if tool.name in tool_to_server:
                    logger.warning(
                        "Duplicate mcp tool %r from server %r (already from %r), using first registered",
                        tool.name, server, tool_to_server[tool.name],
                    )
                    continue
                tool_to_server[tool.name] = server
                specs[tool.name] = spec_from_mcp_tool(tool)
                if mcp_tool_is_return_direct(tool):
                    return_direct.add(tool.name)
                owned.append(tool.name)
            self._tool_to_server = tool_to_server
            self._specs = specs
            self._return_direct = frozenset(return_direct)
        return owned

    async def close(self) -> None:
        for conn in list(self._connections.values()):
            if conn.stack is not None:
                await _close_stack(conn.name, conn.stack)
            conn.stack = None
            conn.session = None
            conn.state = ServerState.CLOSED
        self._connections.clear()
        with self._maps_lock:
            self._tool_to_server = {}
            self._specs = {}
            self._return_direct = frozenset()

    async def reconnect_server(self, server: str, failed_generation: int | None = None) -> Any:
        """Replace ``server``'s connection and return the new session.

        Serialized per server. When another caller already replaced the
        connection that failed for us (``failed_generation`` is stale), the
        current session is returned without reconnecting again.
        """
        conn = self._connections.get(server)
        if conn is None:
            raise RemoteTransportError(f"Cannot reconnect: unknown mcp server {server!r}")
        async with conn.lock:
            if (
                failed_generation is not None
                and conn.generation != failed_generation
                and conn.state is ServerState.READY
            ):
                logger.debug("mcp server %r already reconnected by another caller", server)
                return conn.session

            logger.info("Reconnecting mcp server %r", server)
            conn.state = ServerState.DEGRADED
            old_stack, conn.stack, conn.session = conn.stack, None, None
            if old_stack is not None:
                await _close_stack(server, old_stack)

            conn.state = ServerState.RECONNECTING
            try:
                await self._connect(conn)
            except RemoteServerInitError:
                logger.error("Failed to reconnect mcp server %r", server, exc_info=True)
                raise
            conn.generation += 1
            logger.info(
                "Reconnected mcp server %r with %d tools: %s",
                server, len(conn.tool_names), conn.tool_names,
            )
            return conn.session

    # -- queries -----------------------------------------------------------

    @property
    def server_names(self) -> list[str]:
        return list(self._connections.keys())

    def state_of(self, server: str) -> ServerState:
        conn = self._connections.get(server)
        return conn.state if conn is not None else ServerState.UNINITIALIZED

    def owner_of(self, tool_name: str) -> str | None:
        return self._tool_to_server.get(tool_name)

    def is_return_direct(self, tool_name: str) -> bool:
        return tool_name in self._return_direct

    def tools_for(self, exclude_servers: Iterable[str] = ()) -> list[ToolSpecification]:
        """Specs of every known remote tool whose server is not excluded."""
        excluded = set(exclude_servers)
        with self._maps_lock:
            owners = self._tool_to_server
            return [spec for name, spec in self._specs.items() if owners.get(name) not in excluded]

    # -- calls -------------------------------------------------------------

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> RemoteToolResult:
        """Call ``name`` on its owning server, reconnecting once on transport failure."""
        server = self.owner_of(name)
        if server is None:
            raise KeyError(f"Tool {name!r} is not provided by any mcp server")
        conn = self._connections[server]
        generation = conn.generation
        try:
            return await self._call(conn, conn.session, name, arguments)
        except Exception as e:
            if not is_transport_error(e):
                raise
            if not self.reconnect:
                logger.warning("Transport error calling tool %r on %r (reconnect disabled): %s", name, server, e)
                raise
            logger.info("Transport error calling tool %r on %r, attempting reconnect: %s", name, server, e)
            session = await self.reconnect_server(server, failed_generation=generation)
            return await self._call(conn, session, name, arguments)

    async def _call(
        self,
        conn: RemoteServerConnection,
        session: Any,
        name: str,
        arguments: dict[str, Any],
    ) -> RemoteToolResult:
        if session is None:
            raise RemoteTransportError(f"mcp server {conn.name!r} is not connected ({conn.state.value})")
        if conn.config.log_requests:
            logger.info("mcp request %s.%s %s", conn.name, name, arguments)
        t0 = time.monotonic()
        result = await session.call_tool(name, arguments)
        text = _result_text(result)
        is_error = bool(getattr(result, "isError", False))
        if conn.config.log_responses:
            logger.info(
                "mcp response %s.%s error=%s latency=%.3fs %s",
                conn.name, name, is_error, time.monotonic() - t0, text[:500],
            )
        return RemoteToolResult(content=text, is_error=is_error)


async def _close_stack(server: str, stack: AsyncExitStack) -> None:
    try:
        await stack.aclose()
    except Exception as e:
        logger.debug("Error closing mcp client for server %r: %s", server, e)

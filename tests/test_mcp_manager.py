"""Tests for the remote connection manager. All mocked (no real MCP servers).

Tests cover:
- initialize(): tool discovery, routing maps, return-direct set, duplicate names
- initialize() failures: RemoteServerInitError, protocol version mismatch, cleanup
- call_tool(): forwarding, text extraction, isError results
- reconnect: enabled / disabled / retry failing / non-transport errors / concurrent callers
- transports: stdio, streamable_http, sse
"""

# mock-ok: MCP servers require subprocess lifecycle; unit tests must mock

from __future__ import annotations

import asyncio
import logging
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from llm_tools.config import RemoteServerConfig
from llm_tools.errors import RemoteServerInitError, ServerConfigError
from llm_tools.mcp_manager import RemoteConnectionManager, ServerState


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _make_tool(name: str, desc: str = "tool", return_direct: bool = False) -> MagicMock:
    t = MagicMock()
    t.name = name
    t.description = desc
    t.inputSchema = {"type": "object", "properties": {"path": {"type": "string"}}}
    t.annotations = {"returnDirect": True} if return_direct else None
    t.meta = None
    return t


def _make_tool_result(text: str, is_error: bool = False) -> MagicMock:
    content_item = MagicMock()
    content_item.text = text
    result = MagicMock()
    result.content = [content_item]
    result.isError = is_error
    return result


def _make_session(tools: list[MagicMock], reply: str = "ok", protocol: str = "2025-03-26") -> AsyncMock:
    session = AsyncMock()
    session.initialize = AsyncMock(return_value=MagicMock(protocolVersion=protocol))
    session.list_tools = AsyncMock(return_value=MagicMock(tools=tools))
    session.call_tool = AsyncMock(return_value=_make_tool_result(reply))
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    return session


def _transport_cm(streams: tuple[Any, ...] = ("read", "write")) -> AsyncMock:
    cm = AsyncMock()
    cm.__aenter__ = AsyncMock(return_value=streams)
    cm.__aexit__ = AsyncMock(return_value=False)
    return cm


class FakeMcp:
    """Stand-in for the tuple returned by ``_import_mcp``."""

    def __init__(self, sessions: list[AsyncMock]) -> None:
        self.ClientSession = MagicMock(side_effect=sessions)
        self.StdioServerParameters = MagicMock()
        self.stdio_client = MagicMock(return_value=_transport_cm())
        self.streamablehttp_client = MagicMock(return_value=_transport_cm(("read", "write", lambda: "sid")))
        self.sse_client = MagicMock(return_value=_transport_cm())

    def as_tuple(self) -> tuple[Any, ...]:
        return (
            self.ClientSession,
            self.StdioServerParameters,
            self.stdio_client,
            self.streamablehttp_client,
            self.sse_client,
        )


def _stdio(name: str, **kwargs: Any) -> RemoteServerConfig:
    return RemoteServerConfig(name=name, transport_type="stdio", command="python", args=[f"{name}.py"], **kwargs)


async def _start(
    servers: list[RemoteServerConfig],
    sessions: list[AsyncMock],
    reconnect: bool = True,
) -> tuple[RemoteConnectionManager, FakeMcp]:
    fake = FakeMcp(sessions)
    manager = RemoteConnectionManager(servers, reconnect=reconnect)
    with patch("llm_tools.mcp_manager._import_mcp", return_value=fake.as_tuple()):
        await manager.initialize(servers)
    return manager, fake


# ---------------------------------------------------------------------------
# initialize
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestInitialize:
    async def test_discovers_tools(self) -> None:
        fs = _make_session([_make_tool("read_file"), _make_tool("write_file")])
        web = _make_session([_make_tool("fetch", return_direct=True)])
        manager, fake = await _start([_stdio("fs"), _stdio("web")], [fs, web])

        assert manager.server_names == ["fs", "web"]
        assert manager.owner_of("read_file") == "fs"
        assert manager.owner_of("fetch") == "web"
        assert manager.owner_of("missing") is None
        assert [s.name for s in manager.tools_for()] == ["read_file", "write_file", "fetch"]
        assert [s.name for s in manager.tools_for(["fs"])] == ["fetch"]
        assert manager.is_return_direct("fetch") is True
        assert manager.is_return_direct("read_file") is False
        assert manager.state_of("fs") is ServerState.READY
        assert manager.state_of("nope") is ServerState.UNINITIALIZED
        fs.initialize.assert_awaited_once()
        fake.StdioServerParameters.assert_any_call(
            command="python", args=["fs.py"], env=None, cwd=None,
        )

    async def test_spec_conversion(self) -> None:
        manager, _ = await _start([_stdio("fs")], [_make_session([_make_tool("read_file", "Read a file")])])
        (spec,) = manager.tools_for()
        assert spec.description == "Read a file"
        assert spec.parameter_names() == ["path"]

    async def test_duplicate_first_wins(self, caplog: pytest.LogCaptureFixture) -> None:
        a = _make_session([_make_tool("search")], reply="from a")
        b = _make_session([_make_tool("search"), _make_tool("other")], reply="from b")
        with caplog.at_level(logging.WARNING, logger="llm_tools.mcp_manager"):
            manager, _ = await _start([_stdio("a"), _stdio("b")], [a, b])

        assert manager.owner_of("search") == "a"
        assert [s.name for s in manager.tools_for()] == ["search", "other"]
        assert "Duplicate mcp tool 'search'" in caplog.text
        result = await manager.call_tool("search", {})
        assert result.content == "from a"

    async def test_failure_names_server_and_cleans_up(self) -> None:
        ok = _make_session([_make_tool("read_file")])
        broken = _make_session([])
        broken.initialize = AsyncMock(side_effect=ConnectionRefusedError("refused"))
        fake = FakeMcp([ok, broken])
        manager = RemoteConnectionManager([_stdio("fs"), _stdio("web")])

        with patch("llm_tools.mcp_manager._import_mcp", return_value=fake.as_tuple()):
            with pytest.raises(RemoteServerInitError) as exc_info:
                await manager.initialize([_stdio("fs"), _stdio("web")])

        assert exc_info.value.server == "web"
        assert isinstance(exc_info.value.original, ConnectionRefusedError)
        ok.__aexit__.assert_awaited()
        assert manager.tools_for() == []
        assert manager.server_names == []

    async def test_protocol_version_mismatch(self) -> None:
        session = _make_session([_make_tool("read_file")], protocol="2024-11-05")
        with pytest.raises(RemoteServerInitError, match="protocol version"):
            await _start([_stdio("fs", protocol_versions=["2025-03-26"])], [session])

    async def test_protocol_version_accepted(self) -> None:
        session = _make_session([_make_tool("read_file")], protocol="2025-03-26")
        manager, _ = await _start([_stdio("fs", protocol_versions=["2025-03-26", "2024-11-05"])], [session])
        assert manager.state_of("fs") is ServerState.READY

    async def test_duplicate_server_name(self) -> None:
        with pytest.raises(ServerConfigError, match="duplicate server name"):
            await _start([_stdio("fs"), _stdio("fs")], [_make_session([]), _make_session([])])

    async def test_context_manager_closes(self) -> None:
        session = _make_session([_make_tool("read_file")])
        fake = FakeMcp([session])
        with patch("llm_tools.mcp_manager._import_mcp", return_value=fake.as_tuple()):
            async with RemoteConnectionManager([_stdio("fs")]) as manager:
                assert manager.owner_of("read_file") == "fs"
        session.__aexit__.assert_awaited_once()
        assert manager.tools_for() == []


@pytest.mark.asyncio
class TestTransports:
    async def test_streamable_http(self) -> None:
        cfg = RemoteServerConfig(
            name="web", transport_type="streamable_http", url="http://localhost:8080/mcp",
            headers={"Authorization": "Bearer x"}, timeout=5,
        )
        _, fake = await _start([cfg], [_make_session([_make_tool("fetch")])])
        fake.streamablehttp_client.assert_called_once()
        args, kwargs = fake.streamablehttp_client.call_args
        assert args == ("http://localhost:8080/mcp",)
        assert kwargs["headers"] == {"Authorization": "Bearer x"}
        assert kwargs["timeout"].total_seconds() == 5
        fake.ClientSession.assert_called_once()
        assert fake.ClientSession.call_args.args == ("read", "write")

    async def test_sse(self) -> None:
        cfg = RemoteServerConfig(name="events", transport_type="sse", url="http://localhost:9000/sse")
        _, fake = await _start([cfg], [_make_session([_make_tool("watch")])])
        fake.sse_client.assert_called_once_with("http://localhost:9000/sse", headers=None, timeout=60.0)
        fake.stdio_client.assert_not_called()


# ---------------------------------------------------------------------------
# call_tool + reconnect
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestCallTool:
    async def test_forwards_and_extracts_text(self) -> None:
        session = _make_session([_make_tool("read_file")], reply="file contents")
        manager, _ = await _start([_stdio("fs")], [session])
        result = await manager.call_tool("read_file", {"path": "/tmp/x"})
        assert result.content == "file contents"
        assert result.is_error is False
        session.call_tool.assert_awaited_once_with("read_file", {"path": "/tmp/x"})

    async def test_is_error_result(self) -> None:
        session = _make_session([_make_tool("read_file")])
        session.call_tool = AsyncMock(return_value=_make_tool_result("no such file", is_error=True))
        manager, _ = await _start([_stdio("fs")], [session])
        result = await manager.call_tool("read_file", {"path": "/nope"})
        assert result.is_error is True
        assert result.content == "no such file"

    async def test_unknown_tool(self) -> None:
        manager, _ = await _start([_stdio("fs")], [_make_session([_make_tool("read_file")])])
        with pytest.raises(KeyError):
            await manager.call_tool("write_file", {})

    async def test_request_logging(self, caplog: pytest.LogCaptureFixture) -> None:
        session = _make_session([_make_tool("read_file")], reply="contents")
        manager, _ = await _start([_stdio("fs", log_requests=True, log_responses=True)], [session])
        with caplog.at_level(logging.INFO, logger="llm_tools.mcp_manager"):
            await manager.call_tool("read_file", {"path": "/tmp/x"})
        assert "mcp request fs.read_file" in caplog.text
        assert "mcp response fs.read_file" in caplog.text

    async def test_reconnect_once_and_retry_on_new_connection(self) -> None:
        old = _make_session([_make_tool("read_file")])
        old.call_tool = AsyncMock(side_effect=ConnectionResetError("pipe closed"))
        new = _make_session([_make_tool("read_file")], reply="after reconnect")
        manager, fake = await _start([_stdio("fs")], [old, new])

        with patch("llm_tools.mcp_manager._import_mcp", return_value=fake.as_tuple()):
            result = await manager.call_tool("read_file", {"path": "/tmp/x"})

        assert result.content == "after reconnect"
        assert fake.ClientSession.call_count == 2
        old.call_tool.assert_awaited_once()
        old.__aexit__.assert_awaited()
        new.call_tool.assert_awaited_once_with("read_file", {"path": "/tmp/x"})
        assert manager.state_of("fs") is ServerState.READY

    async def test_reconnect_disabled_propagates(self) -> None:
        old = _make_session([_make_tool("read_file")])
        old.call_tool = AsyncMock(side_effect=ConnectionResetError("pipe closed"))
        manager, fake = await _start([_stdio("fs")], [old, _make_session([])], reconnect=False)

        with patch("llm_tools.mcp_manager._import_mcp", return_value=fake.as_tuple()):
            with pytest.raises(ConnectionResetError):
                await manager.call_tool("read_file", {})

        assert fake.ClientSession.call_count == 1

    async def test_retry_failure_propagates_after_one_reconnect(self) -> None:
        old = _make_session([_make_tool("read_file")])
        old.call_tool = AsyncMock(side_effect=ConnectionResetError("pipe closed"))
        new = _make_session([_make_tool("read_file")])
        new.call_tool = AsyncMock(side_effect=BrokenPipeError("still broken"))
        manager, fake = await _start([_stdio("fs")], [old, new, _make_session([])])

        with patch("llm_tools.mcp_manager._import_mcp", return_value=fake.as_tuple()):
            with pytest.raises(BrokenPipeError):
                await manager.call_tool("read_file", {})

        assert fake.ClientSession.call_count == 2

    async def test_non_transport_error_does_not_reconnect(self) -> None:
        session = _make_session([_make_tool("read_file")])
        session.call_tool = AsyncMock(side_effect=ValueError("bad path"))
        manager, fake = await _start([_stdio("fs")], [session, _make_session([])])

        with patch("llm_tools.mcp_manager._import_mcp", return_value=fake.as_tuple()):
            with pytest.raises(ValueError):
                await manager.call_tool("read_file", {})

        assert fake.ClientSession.call_count == 1

    async def test_failed_reconnect_closes_server(self) -> None:
        old = _make_session([_make_tool("read_file")])
        old.call_tool = AsyncMock(side_effect=ConnectionResetError("pipe closed"))
        new = _make_session([])
        new.initialize = AsyncMock(side_effect=OSError("spawn failed"))
        manager, fake = await _start([_stdio("fs")], [old, new])

        with patch("llm_tools.mcp_manager._import_mcp", return_value=fake.as_tuple()):
            with pytest.raises(RemoteServerInitError):
                await manager.call_tool("read_file", {})

        assert manager.state_of("fs") is ServerState.CLOSED

    async def test_reconnect_replaces_only_that_servers_tools(self) -> None:
        fs_old = _make_session([_make_tool("read_file"), _make_tool("stat")])
        fs_old.call_tool = AsyncMock(side_effect=EOFError())
        web = _make_session([_make_tool("fetch")])
        fs_new = _make_session([_make_tool("read_file"), _make_tool("write_file", return_direct=True)])
        manager, fake = await _start([_stdio("fs"), _stdio("web")], [fs_old, web, fs_new])

        with patch("llm_tools.mcp_manager._import_mcp", return_value=fake.as_tuple()):
            await manager.call_tool("read_file", {})

        assert manager.owner_of("stat") is None
        assert manager.owner_of("write_file") == "fs"
        assert manager.is_return_direct("write_file") is True
        assert manager.owner_of("fetch") == "web"
        assert sorted(s.name for s in manager.tools_for()) == ["fetch", "read_file", "write_file"]
        web.call_tool.assert_not_awaited()

    async def test_concurrent_failures_reconnect_once(self) -> None:
        async def _broken(name: str, arguments: dict[str, Any]) -> Any:
            await asyncio.sleep(0)
            raise ConnectionResetError("pipe closed")

        old = _make_session([_make_tool("read_file")])
        old.call_tool = AsyncMock(side_effect=_broken)
        new = _make_session([_make_tool("read_file")], reply="fresh")
        manager, fake = await _start([_stdio("fs")], [old, new, _make_session([])])

        with patch("llm_tools.mcp_manager._import_mcp", return_value=fake.as_tuple()):
            results = await asyncio.gather(
                manager.call_tool("read_file", {"n": 1}),
                manager.call_tool("read_file", {"n": 2}),
            )

        assert [r.content for r in results] == ["fresh", "fresh"]
        assert fake.ClientSession.call_count == 2
        assert new.call_tool.await_count == 2

    async def test_close(self) -> None:
        session = _make_session([_make_tool("read_file")])
        manager, _ = await _start([_stdio("fs")], [session])
        await manager.close()
        session.__aexit__.assert_awaited_once()
        assert manager.owner_of("read_file") is None
        assert manager.server_names == []

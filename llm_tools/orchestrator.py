"""Facade that wires registry, remote servers, search and the agent loop.

Usage:
    from llm_tools import ToolOrchestrator

    orchestrator = ToolOrchestrator("gpt-4o-mini")

    @orchestrator.tool(tags=["math"])
    def add(a: int, b: int) -> int:
        return a + b

    # Sync
    result = orchestrator.chat("What is 17 + 25?", tags=["math"])
    print(result.content)

    # Async, with long-lived remote servers
    async with ToolOrchestrator("gpt-4o-mini", servers=servers) as orch:
        result = await orch.achat(messages, tags=["math"], exclude_servers=["slow"])
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from typing import Any, Callable, Iterable, Sequence

from llm_tools.agent_loop import AgenticLoopEngine
from llm_tools.client import LLMCallResult, ModelTransport, litellm_transport
from llm_tools.config import OrchestratorConfig, RemoteServerConfig
from llm_tools.embeddings import EmbedFn
from llm_tools.errors import ToolOrchestratorError
from llm_tools.executor import ToolInvocationExecutor
from llm_tools.mcp_manager import RemoteConnectionManager
from llm_tools.models import (
    ExchangeResult,
    ToolCallable,
    ToolCallResult,
    ToolRegistration,
    ToolSpecification,
    Visibility,
)
from llm_tools.registry import ToolRegistry, default_registry
from llm_tools.resolver import CandidateResolver, CandidateSet, ToolExclusion
from llm_tools.schema import spec_from_callable, spec_from_flat_parameters
from llm_tools.tool_index import SemanticToolIndex

logger = logging.getLogger(__name__)


def make_registration(
    fn: ToolCallable,
    *,
    tags: str | Iterable[str],
    name: str | None = None,
    description: str | None = None,
    parameters: dict[str, str] | None = None,
    spec: ToolSpecification | None = None,
    visibility: Visibility | str = Visibility.EXPOSED,
    return_direct: bool = False,
) -> ToolRegistration:
    """Bind ``fn`` to a spec and tags.

    The spec is, in order of preference: ``spec`` as given, built from the
    flat ``parameters`` map (with ``description``), or inspected from
    ``fn``'s signature and docstring.
    """
    if spec is None:
        if parameters is not None:
            spec = spec_from_flat_parameters(description or "", parameters, name=name)
        else:
            spec = spec_from_callable(fn, name=name, description=description)
    tag_list = [t.strip() for t in tags.split(",")] if isinstance(tags, str) else list(tags)
    return ToolRegistration(
        spec=spec,
        executor=fn,
        tags=tuple(t for t in tag_list if t),
        visibility=Visibility(visibility),
        return_direct=return_direct,
    )


def tool(
    *,
    tags: str | Iterable[str],
    registry: ToolRegistry | None = None,
    **options: Any,
) -> Callable[[ToolCallable], ToolCallable]:
    """Decorator registering a function as a tool (default registry unless given).

    The function is returned unchanged; its registration is attached as
    ``fn.tool_registration``.
    """

    def decorator(fn: ToolCallable) -> ToolCallable:
        registration = make_registration(fn, tags=tags, **options)
        (registry if registry is not None else default_registry()).register_tool(registration)
        fn.tool_registration = registration  # type: ignore[attr-defined]
        return fn

    return decorator


class ToolOrchestrator:
    """One configured orchestrator; each :meth:`achat` call is an independent exchange."""

    def __init__(
        self,
        model: str | ModelTransport,
        *,
        registry: ToolRegistry | None = None,
        servers: Sequence[RemoteServerConfig] = (),
        embed_fn: EmbedFn | None = None,
        config: OrchestratorConfig | None = None,
        **call_kwargs: Any,
    ) -> None:
        self.config = config or OrchestratorConfig.from_env()
        self.transport: ModelTransport = (
            litellm_transport(model, **call_kwargs) if isinstance(model, str) else model
        )
        self.registry = registry if registry is not None else default_registry()
        self.servers = list(servers)
        self.remote = (
            RemoteConnectionManager(self.servers, reconnect=self.config.mcp_reconnect)
            if self.servers else None
        )
        self.index = SemanticToolIndex(
            self.registry,
            embed_fn,
            max_results=self.config.search_max_results,
            min_score=self.config.search_min_score,
        )
        self.resolver = CandidateResolver(self.registry, self.remote, self.index)
        self.executor = ToolInvocationExecutor(
            self.remote, max_result_length=self.config.tool_result_max_length,
        )
        self.engine = AgenticLoopEngine(
            self.transport,
            self.executor,
            self.index,
            max_tool_iterations=self.config.max_tool_iterations,
        )
        self._started = False

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Connect remote servers. Fails fast with RemoteServerInitError."""
        if self._started:
            return
        if self.remote is not None:
            await self.remote.initialize(self.servers)
        self._started = True

    async def close(self) -> None:
        if self.remote is not None:
            await self.remote.close()
        self._started = False

    async def __aenter__(self) -> ToolOrchestrator:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # -- tools -------------------------------------------------------------

    def register_tool(self, fn: ToolCallable, *, tags: str | Iterable[str], **options: Any) -> ToolRegistration:
        registration = make_registration(fn, tags=tags, **options)
        self.registry.register_tool(registration)
        return registration

    def unregister_tool(self, registration: ToolRegistration) -> None:
        self.registry.unregister_tool(registration)

    def tool(self, *, tags: str | Iterable[str], **options: Any) -> Callable[[ToolCallable], ToolCallable]:
        return tool(tags=tags, registry=self.registry, **options)

    # -- exchanges ---------------------------------------------------------

    def resolve(
        self,
        tags: str | Iterable[str],
        *,
        exclude_tags: str | Iterable[str] | None = None,
        exclude_servers: str | Iterable[str] | None = None,
    ) -> CandidateSet:
        """Candidate tools for a request, without calling the model."""
        return self.resolver.resolve(tags, ToolExclusion.parse(exclude_tags, exclude_servers))

    async def achat(
        self,
        messages: str | list[dict[str, Any]],
        tags: str | Iterable[str],
        *,
        exclude_tags: str | Iterable[str] | None = None,
        exclude_servers: str | Iterable[str] | None = None,
    ) -> ExchangeResult:
        """Run one exchange. A list of messages is extended in place.

        Raises:
            NoToolsAvailableError: nothing visible for ``tags`` (model not called).
            MaxToolIterationsError: the iteration bound was reached.
        """
        if not self._started:
            await self.start()
        history = [{"role": "user", "content": messages}] if isinstance(messages, str) else messages
        candidates = self.resolve(tags, exclude_tags=exclude_tags, exclude_servers=exclude_servers)
        logger.debug("Exchange with %d candidate tools: %s", len(candidates), candidates.names())
        return await self.engine.run(history, candidates)

    async def aexecute_tool_calls(
        self,
        tool_calls: list[dict[str, Any]],
        messages: list[dict[str, Any]],
        tags: str | Iterable[str],
        *,
        content: str = "",
        exclude_tags: str | Iterable[str] | None = None,
        exclude_servers: str | Iterable[str] | None = None,
    ) -> list[ToolCallResult]:
        """Execute one stored round of OpenAI-format tool calls and extend ``messages``."""
        if not self._started:
            await self.start()
        candidates = self.resolve(tags, exclude_tags=exclude_tags, exclude_servers=exclude_servers)
        turn = LLMCallResult(content=content, tool_calls=tool_calls, finish_reason="tool_calls")
        return await self.engine.execute_tool_calls(turn, messages, candidates)

    def chat(
        self,
        messages: str | list[dict[str, Any]],
        tags: str | Iterable[str],
        **kwargs: Any,
    ) -> ExchangeResult:
        """Sync wrapper for :meth:`achat`.

        Remote connections live on an event loop, so when this orchestrator
        has not been started in async code the servers are connected for
        this call only and closed afterwards.

        Raises ToolOrchestratorError when remote servers were already started
        in async code; use :meth:`achat` there.
        """
        self._check_sync_use()
        return _run_sync(self._scoped(self.achat(messages, tags, **kwargs)))

    def execute_tool_calls(
        self,
        tool_calls: list[dict[str, Any]],
        messages: list[dict[str, Any]],
        tags: str | Iterable[str],
        **kwargs: Any,
    ) -> list[ToolCallResult]:
        """Sync wrapper for :meth:`aexecute_tool_calls`."""
        self._check_sync_use()
        return _run_sync(self._scoped(self.aexecute_tool_calls(tool_calls, messages, tags, **kwargs)))

    def _check_sync_use(self) -> None:
        # Started sessions belong to the loop that started them.
        if self._started and self.remote is not None:
            raise ToolOrchestratorError(
                "Sync calls are not supported after remote servers were started in async code; use achat()"
            )

    async def _scoped(self, coro: Any) -> Any:
        if self._started:
            return await coro
        try:
            return await coro
        finally:
            await self.close()


def _run_sync(coro: Any) -> Any:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)

"""The agentic loop: model turn → tool calls → model turn … → answer.

Per exchange::

    AwaitingModel → Done
                  → ExecutingTools → AwaitingModel
                                   → ShortCircuited        (all calls return-direct)
                                   → MaxIterationsExceeded (MaxToolIterationsError)

The engine owns no shared state: history and the CandidateSet belong to
the caller's exchange and are mutated in place.
"""

from __future__ import annotations

import logging
from typing import Any

from llm_tools.client import LLMCallResult, ModelTransport
from llm_tools.config import DEFAULT_MAX_TOOL_ITERATIONS
from llm_tools.errors import MaxToolIterationsError
from llm_tools.executor import ToolInvocationExecutor, decode_arguments
from llm_tools.models import (
    ExchangeResult,
    FinishReason,
    IterationState,
    ToolCallRecord,
    ToolCallRequest,
    ToolCallResult,
    assistant_message,
)
from llm_tools.resolver import CandidateSet
from llm_tools.tool_index import SEARCH_TOOL_NAME, SemanticToolIndex, format_search_result

logger = logging.getLogger(__name__)

_STOP = "stop"


class AgenticLoopEngine:
    """Drives one exchange until the model answers, a return-direct tool answers, or the bound is hit."""

    def __init__(
        self,
        transport: ModelTransport,
        executor: ToolInvocationExecutor,
        index: SemanticToolIndex | None = None,
        *,
        max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS,
        search_max_results: int | None = None,
        search_min_score: float | None = None,
    ) -> None:
        if max_tool_iterations < 1:
            raise ValueError(f"max_tool_iterations must be >= 1, got {max_tool_iterations}")
        self.transport = transport
        self.executor = executor
        self.index = index
        self.max_tool_iterations = max_tool_iterations
        self.search_max_results = search_max_results
        self.search_min_score = search_min_score

    async def run(self, messages: list[dict[str, Any]], candidates: CandidateSet) -> ExchangeResult:
        """Run the loop over ``messages`` (extended in place) with ``candidates``.

        Raises:
            MaxToolIterationsError: the model kept requesting tools for
                ``max_tool_iterations`` turns.
        """
        state = IterationState()
        records: list[ToolCallRecord] = []

        while True:
            turn = await self.transport(messages, candidates.to_openai())
            if not turn.tool_calls or turn.finish_reason == _STOP:
                state.finish_reason = FinishReason.STOP.value
                messages.append({"role": "assistant", "content": turn.content})
                logger.info(
                    "Exchange finished after %d tool iterations (%d tool calls)",
                    state.iterations, len(state.tool_calls),
                )
                return self._result(turn.content, state, records)

            results = await self.execute_tool_calls(turn, messages, candidates, state=state, records=records)

            answer = self._return_direct_answer(results, candidates)
            if answer is not None:
                state.return_direct = True
                state.finish_reason = FinishReason.RETURN_DIRECT.value
                logger.info(
                    "Return-direct tool answered after %d tool iterations: %s",
                    state.iterations + 1, [r.name for r in results],
                )
                state.iterations += 1
                return self._result(answer, state, records)

            state.iterations += 1
            logger.debug("Tool iteration %d done: %s", state.iterations, [r.name for r in results])
            if state.iterations >= self.max_tool_iterations:
                raise MaxToolIterationsError(self.max_tool_iterations, state.tool_calls)

    async def execute_tool_calls(
        self,
        turn: LLMCallResult,
        messages: list[dict[str, Any]],
        candidates: CandidateSet,
        *,
        state: IterationState | None = None,
        records: list[ToolCallRecord] | None = None,
    ) -> list[ToolCallResult]:
        """Run one round of tool calls from ``turn`` and extend ``messages``.

        Appends the assistant turn, then one tool message per call in the
        order the model emitted them. Usable on its own by callers that
        drive the conversation themselves.
        """
        requests = [ToolCallRequest.from_openai(tc) for tc in turn.tool_calls]
        messages.append(assistant_message(turn.content, requests))
        results: list[ToolCallResult] = []
        for request in requests:
            if self._is_search(request.name, candidates):
                result = await self._search(request, candidates, records)
            else:
                result = await self.executor.invoke(request, candidates, records)
            if state is not None:
                state.tool_calls.append(request.name)
            messages.append(result.to_message())
            results.append(result)
        return results

    # -- search meta-tool --------------------------------------------------

    @staticmethod
    def _is_search(name: str, candidates: CandidateSet) -> bool:
        return name == SEARCH_TOOL_NAME and candidates.search_enabled

    async def _search(
        self,
        request: ToolCallRequest,
        candidates: CandidateSet,
        records: list[ToolCallRecord] | None,
    ) -> ToolCallResult:
        record = ToolCallRecord(tool=request.name, server=None, arguments=request.arguments)
        content, is_error = await self._run_search(request, candidates)
        if is_error:
            record.error = content
        else:
            record.result = content
        if records is not None:
            records.append(record)
        return ToolCallResult(id=request.id, name=request.name, content=content, is_error=is_error)

    async def _run_search(self, request: ToolCallRequest, candidates: CandidateSet) -> tuple[str, bool]:
        if self.index is None or not self.index.available:
            return "Error: Tool search is not available.", True
        try:
            arguments = decode_arguments(request.arguments)
        except ValueError as e:
            return f"Error: Invalid JSON arguments for tool '{request.name}': {e}", True
        query = arguments.get("query")
        if not isinstance(query, str) or not query.strip():
            return "Error: Missing required argument 'query'.", True
        try:
            matches = await self.index.search(
                query,
                candidates.tags,
                max_results=self.search_max_results,
                min_score=self.search_min_score,
            )
        except Exception as e:
            logger.warning("Tool search for %r failed: %s", query, e)
            return f"Error searching tools: {type(e).__name__}: {e}", True
        added = candidates.add_discovered(m.registration for m in matches)
        logger.info("Tool search %r found %s (new: %s)", query, [m.registration.name for m in matches], added)
        return format_search_result(query, matches), False

    # -- helpers -----------------------------------------------------------

    def _return_direct_answer(self, results: list[ToolCallResult], candidates: CandidateSet) -> str | None:
        """The last result's untruncated text when every non-search call was return-direct and none failed."""
        direct = [r for r in results if not self._is_search(r.name, candidates)]
        if not direct:
            return None
        for result in direct:
            if result.is_error or not self.executor.is_return_direct(result.name, candidates):
                return None
        last = direct[-1]
        return last.raw if last.raw is not None else last.content

    @staticmethod
    def _result(content: str | None, state: IterationState, records: list[ToolCallRecord]) -> ExchangeResult:
        return ExchangeResult(
            content=content,
            finish_reason=state.finish_reason or FinishReason.STOP.value,
            iterations=state.iterations,
            tool_calls=list(state.tool_calls),
            return_direct=state.return_direct,
            records=records,
        )

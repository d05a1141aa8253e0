"""Semantic search over searchable tools, and the meta-tool that exposes it.

Searchable tools are never offered to the model directly. When any exist
for a request's tags (and an embedding function is configured) the model
gets one extra tool, ``search_available_tools``; calling it runs
:meth:`SemanticToolIndex.search` and merges the hits into the exchange's
candidate set.
"""

from __future__ import annotations

import inspect
import logging
import threading
import weakref
from dataclasses import dataclass
from typing import Iterable

from llm_tools.embeddings import EmbedFn, Vector, cosine_similarity
from llm_tools.models import ToolParameter, ToolRegistration, ToolSpecification
from llm_tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

SEARCH_TOOL_NAME = "search_available_tools"

DEFAULT_SEARCH_MAX_RESULTS: int = 5
DEFAULT_SEARCH_MIN_SCORE: float = 0.5


def build_search_tool_spec() -> ToolSpecification:
    return ToolSpecification.from_parameters(
        SEARCH_TOOL_NAME,
        "Search for available tools based on a natural language query. "
        "Use this when you need to find a tool to accomplish a specific task. "
        "Returns a list of tools that match your query, which you can then use.",
        [
            ToolParameter(
                name="query",
                type="string",
                required=True,
                description=(
                    "A natural language description of the capability you're looking for. "
                    "For example: 'find user information', 'calculate financial data', "
                    "'query database records'"
                ),
            ),
        ],
    )


def searchable_text(spec: ToolSpecification) -> str:
    """Text embedded for a tool: name, description and parameter names."""
    text = f"Tool: {spec.name}\nDescription: {spec.description}"
    names = spec.parameter_names()
    if names:
        text += "\nParameters: " + " ".join(names)
    return text


@dataclass(frozen=True)
class ScoredTool:
    registration: ToolRegistration
    score: float


class SemanticToolIndex:
    """Embedding-based nearest-neighbour lookup over a registry's searchable tools."""

    def __init__(
        self,
        registry: ToolRegistry,
        embed_fn: EmbedFn | None = None,
        *,
        max_results: int = DEFAULT_SEARCH_MAX_RESULTS,
        min_score: float = DEFAULT_SEARCH_MIN_SCORE,
    ) -> None:
        self.registry = registry
        self.embed_fn = embed_fn
        self.max_results = max_results
        self.min_score = min_score
        self._cache: weakref.WeakKeyDictionary[ToolRegistration, tuple[str, Vector]] = (
            weakref.WeakKeyDictionary()
        )
        self._cache_lock = threading.Lock()

    @property
    def available(self) -> bool:
        return self.embed_fn is not None

    def has_searchable(self, tags: Iterable[str]) -> bool:
        """True when search could surface anything for ``tags``."""
        return self.available and self.registry.has_searchable(tags)

    async def _embed(self, text: str) -> Vector:
        if self.embed_fn is None:
            raise RuntimeError("Tool search needs an embedding function")
        vector = self.embed_fn(text)
        if inspect.isawaitable(vector):
            vector = await vector
        return vector

    async def _tool_vector(self, registration: ToolRegistration) -> Vector:
        text = searchable_text(registration.spec)
        with self._cache_lock:
            cached = self._cache.get(registration)
        if cached is not None and cached[0] == text:
            return cached[1]
        vector = await self._embed(text)
        with self._cache_lock:
            self._cache[registration] = (text, vector)
        return vector

    async def search(
        self,
        query: str,
        tags: Iterable[str],
        max_results: int | None = None,
        min_score: float | None = None,
    ) -> list[ScoredTool]:
        """Searchable tools under ``tags`` scoring ≥ ``min_score``, best first."""
        if self.embed_fn is None:
            return []
        limit = self.max_results if max_results is None else max_results
        threshold = self.min_score if min_score is None else min_score
        if limit <= 0:
            return []

        candidates = self.registry.searchable_for_tags(list(tags))
        if not candidates:
            return []

        query_vector = await self._embed(query)
        scored: list[ScoredTool] = []
        for reg in candidates:
            score = cosine_similarity(query_vector, await self._tool_vector(reg))
            if score >= threshold:
                scored.append(ScoredTool(reg, score))

        scored.sort(key=lambda s: s.score, reverse=True)
        results: list[ScoredTool] = []
        names: set[str] = set()
        for match in scored:
            if match.registration.name in names:
                continue
            names.add(match.registration.name)
            results.append(match)
            if len(results) >= limit:
                break
        logger.debug(
            "Tool search %r over %d candidates: %s",
            query, len(candidates), [(m.registration.name, round(m.score, 3)) for m in results],
        )
        return results


def format_search_result(query: str, matches: list[ScoredTool]) -> str:
    """Render search hits as the tool result the model reads."""
    if not matches:
        return f"No matching tools found for query: '{query}'. Try a different search query."
    lines = [f"Found {len(matches)} matching tool(s):", ""]
    for match in matches:
        spec = match.registration.spec
        lines.append(f"**{spec.name}**: {spec.description}")
        names = spec.parameter_names()
        if names:
            lines.append(f"  Parameters: {', '.join(names)}")
        lines.append("")
    lines.append("You can now use these tools to complete your task.")
    return "\n".join(lines)

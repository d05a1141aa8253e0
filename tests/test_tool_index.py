"""Tests for the semantic tool index and the search meta-tool."""

from __future__ import annotations

from typing import Callable

import pytest

from llm_tools.embeddings import cosine_similarity
from llm_tools.models import ToolParameter, ToolRegistration, ToolSpecification, Visibility
from llm_tools.registry import ToolRegistry
from llm_tools.tool_index import (
    SEARCH_TOOL_NAME,
    ScoredTool,
    SemanticToolIndex,
    build_search_tool_spec,
    format_search_result,
    searchable_text,
)

QUERY_VECTOR = [1.0, 0.0, 0.0]


def _embedder(vectors: dict[str, list[float]], calls: list[str] | None = None) -> Callable[[str], list[float]]:
    """Embed tool texts by the first tool name they mention; anything else is the query."""

    def embed(text: str) -> list[float]:
        if calls is not None:
            calls.append(text)
        for name, vector in vectors.items():
            if f"Tool: {name}\n" in text:
                return vector
        return QUERY_VECTOR

    return embed


def _searchable(name: str, *tags: str, description: str = "") -> ToolRegistration:
    return ToolRegistration(
        ToolSpecification(name=name, description=description or f"{name} tool"),
        lambda: name,
        tags=tags or ("t",),
        visibility=Visibility.SEARCHABLE,
    )


def _index(vectors: dict[str, list[float]], **kwargs: object) -> tuple[SemanticToolIndex, ToolRegistry]:
    registry = ToolRegistry()
    for name in vectors:
        registry.register_tool(_searchable(name))
    return SemanticToolIndex(registry, _embedder(vectors), **kwargs), registry  # type: ignore[arg-type]


VECTORS = {
    "alpha": [1.0, 0.0, 0.0],  # 1.0
    "beta": [1.0, 1.0, 0.0],  # ~0.707
    "gamma": [1.0, 3.0, 0.0],  # ~0.316
    "delta": [0.0, 1.0, 0.0],  # 0.0
}


class TestCosineSimilarity:
    def test_identical(self) -> None:
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_orthogonal(self) -> None:
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_zero_vector(self) -> None:
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_dimension_mismatch(self) -> None:
        with pytest.raises(ValueError):
            cosine_similarity([1.0], [1.0, 2.0])


@pytest.mark.asyncio
class TestSearch:
    async def test_threshold_and_order(self) -> None:
        index, _ = _index(VECTORS)
        results = await index.search("anything", ["t"], max_results=10, min_score=0.3)
        assert [r.registration.name for r in results] == ["alpha", "beta", "gamma"]
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)
        assert all(s >= 0.3 for s in scores)

    @pytest.mark.parametrize("min_score", [0.0, 0.31, 0.5, 0.71, 0.99, 1.0])
    async def test_every_result_meets_min_score(self, min_score: float) -> None:
        index, _ = _index(VECTORS)
        results = await index.search("q", ["t"], max_results=10, min_score=min_score)
        assert all(r.score >= min_score for r in results)
        assert [r.score for r in results] == sorted((r.score for r in results), reverse=True)

    async def test_defaults_from_constructor(self) -> None:
        index, _ = _index(VECTORS, max_results=5, min_score=0.5)
        results = await index.search("q", ["t"])
        assert [r.registration.name for r in results] == ["alpha", "beta"]

    async def test_max_results_truncates(self) -> None:
        index, _ = _index(VECTORS)
        results = await index.search("q", ["t"], max_results=1, min_score=0.0)
        assert [r.registration.name for r in results] == ["alpha"]

    async def test_filters_by_tag(self) -> None:
        registry = ToolRegistry()
        registry.register_tool(_searchable("alpha", "user"))
        registry.register_tool(_searchable("beta", "billing"))
        index = SemanticToolIndex(registry, _embedder(VECTORS), min_score=0.0)
        results = await index.search("q", ["billing"])
        assert [r.registration.name for r in results] == ["beta"]

    async def test_ignores_exposed_tools(self) -> None:
        registry = ToolRegistry()
        registry.register_tool(ToolRegistration(ToolSpecification(name="alpha"), lambda: 1, tags=("t",)))
        index = SemanticToolIndex(registry, _embedder(VECTORS), min_score=0.0)
        assert await index.search("q", ["t"]) == []
        assert index.has_searchable(["t"]) is False

    async def test_deduplicates_names(self) -> None:
        registry = ToolRegistry()
        registry.register_tool(_searchable("alpha", "t"))
        registry.register_tool(_searchable("alpha", "t"))
        index = SemanticToolIndex(registry, _embedder(VECTORS), min_score=0.0)
        results = await index.search("q", ["t"])
        assert [r.registration.name for r in results] == ["alpha"]

    async def test_no_embedding_function(self) -> None:
        registry = ToolRegistry()
        registry.register_tool(_searchable("alpha"))
        index = SemanticToolIndex(registry)
        assert index.available is False
        assert index.has_searchable(["t"]) is False
        assert await index.search("q", ["t"]) == []
        with pytest.raises(RuntimeError, match="embedding function"):
            await index._embed("q")

    async def test_async_embed_function(self) -> None:
        sync_embed = _embedder(VECTORS)

        async def embed(text: str) -> list[float]:
            return sync_embed(text)

        registry = ToolRegistry()
        registry.register_tool(_searchable("alpha"))
        index = SemanticToolIndex(registry, embed, min_score=0.5)
        results = await index.search("q", ["t"])
        assert [r.registration.name for r in results] == ["alpha"]

    async def test_tool_embeddings_cached(self) -> None:
        calls: list[str] = []
        registry = ToolRegistry()
        registry.register_tool(_searchable("alpha"))
        registry.register_tool(_searchable("beta"))
        index = SemanticToolIndex(registry, _embedder(VECTORS, calls), min_score=0.0)

        await index.search("first", ["t"])
        assert len(calls) == 3
        await index.search("second", ["t"])
        assert len(calls) == 4
        assert calls[-1] == "second"


class TestSearchTool:
    def test_meta_tool_spec(self) -> None:
        spec = build_search_tool_spec()
        assert spec.name == SEARCH_TOOL_NAME == "search_available_tools"
        assert spec.parameters["required"] == ["query"]
        assert spec.parameters["properties"]["query"]["type"] == "string"

    def test_searchable_text(self) -> None:
        spec = ToolSpecification.from_parameters(
            "getUserById", "Get a user by id", [ToolParameter("userId", required=True)],
        )
        assert searchable_text(spec) == "Tool: getUserById\nDescription: Get a user by id\nParameters: userId"

    def test_searchable_text_without_parameters(self) -> None:
        assert searchable_text(ToolSpecification(name="ping", description="Ping")) == "Tool: ping\nDescription: Ping"

    def test_format_matches(self) -> None:
        reg = ToolRegistration(
            ToolSpecification.from_parameters("getUserById", "Get a user", [ToolParameter("userId")]),
            lambda userId: userId,
        )
        text = format_search_result("find user", [ScoredTool(reg, 0.9)])
        assert text.startswith("Found 1 matching tool(s):")
        assert "**getUserById**: Get a user" in text
        assert "Parameters: userId" in text
        assert text.endswith("You can now use these tools to complete your task.")

    def test_format_no_matches(self) -> None:
        assert format_search_result("xyz", []) == (
            "No matching tools found for query: 'xyz'. Try a different search query."
        )

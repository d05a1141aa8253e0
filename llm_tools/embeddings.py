"""Embedding function and similarity used by the semantic tool index.

The index only needs ``embed(text) -> vector`` (sync or async) and a
cosine score. :func:`litellm_embedder` provides the default embed function
for any litellm embedding model:

    index = SemanticToolIndex(registry, litellm_embedder("text-embedding-3-small"))
"""

from __future__ import annotations

import logging
import math
from typing import Any, Awaitable, Callable, Sequence, Union

import litellm

from llm_tools.errors import wrap_error

logger = logging.getLogger(__name__)

Vector = Sequence[float]
EmbedFn = Callable[[str], Union[Vector, Awaitable[Vector]]]


def cosine_similarity(a: Vector, b: Vector) -> float:
    """Cosine similarity of two vectors, 0.0 if either is all zeros."""
    if len(a) != len(b):
        raise ValueError(f"Vector dimensions differ: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


def _first_embedding(response: Any) -> list[float]:
    item = response.data[0]
    vector = item["embedding"] if isinstance(item, dict) else item.embedding
    return [float(v) for v in vector]


def litellm_embedder(
    model: str,
    *,
    dimensions: int | None = None,
    timeout: int = 60,
    api_base: str | None = None,
    **kwargs: Any,
) -> Callable[[str], Awaitable[list[float]]]:
    """Build an async embed function backed by ``litellm.aembedding``."""
    call_kwargs: dict[str, Any] = {"model": model, "timeout": timeout, **kwargs}
    if dimensions is not None:
        call_kwargs["dimensions"] = dimensions
    if api_base is not None:
        call_kwargs["api_base"] = api_base

    async def _embed(text: str) -> list[float]:
        try:
            response = await litellm.aembedding(input=[text], **call_kwargs)
        except Exception as e:
            raise wrap_error(e) from e
        vector = _first_embedding(response)
        logger.debug("Embedded %d chars with %s (dim=%d)", len(text), model, len(vector))
        return vector

    return _embed

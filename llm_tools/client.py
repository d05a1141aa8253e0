"""Default model transport: one chat-completion turn via litellm.

The agent loop only needs ``await transport(messages, tools) -> LLMCallResult``.
:func:`litellm_transport` binds a model name (and call options) into such a
callable; any other callable with the same shape can be injected instead.

    transport = litellm_transport("gpt-4o-mini", timeout=30)
    result = await transport([{"role": "user", "content": "hi"}], [])
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import litellm

from llm_tools.errors import wrap_error

logger = logging.getLogger(__name__)

# Silence litellm's noisy default logging
litellm.suppress_debug_info = True


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@dataclass
class LLMCallResult:
    """One assistant turn returned by the model transport.

    Attributes:
        content: The text response from the model
        tool_calls: Tool calls in OpenAI format, empty if none were requested
        finish_reason: "stop", "tool_calls", "length", ... Empty string if unavailable.
        usage: Token counts (prompt_tokens, completion_tokens, total_tokens)
        cost: Cost in USD for this call
        model: The model string that was used
        raw_response: The full litellm response object. Excluded from repr.
    """

    content: str
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    finish_reason: str = ""
    usage: dict[str, Any] = field(default_factory=dict)
    cost: float = 0.0
    model: str = ""
    raw_response: Any = field(default=None, repr=False)


ModelTransport = Callable[[list[dict[str, Any]], list[dict[str, Any]]], Awaitable[LLMCallResult]]


# ---------------------------------------------------------------------------
# Retry infrastructure
# ---------------------------------------------------------------------------

_RETRYABLE_PATTERNS = [
    "rate limit",
    "rate_limit",
    "timeout",
    "timed out",
    "connection reset",
    "connection error",
    "service unavailable",
    "internal server error",
    "overloaded",
    "http 500",
    "http 502",
    "http 503",
    "http 529",
    "temporary failure",
]


def _is_retryable(error: Exception) -> bool:
    """Check if an error is transient and worth retrying."""
    error_str = str(error).lower()
    return any(p in error_str for p in _RETRYABLE_PATTERNS)


def exponential_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Exponential backoff with jitter, capped at *max_delay*."""
    delay = base_delay * (2 ** attempt)
    jitter = random.uniform(0.5, 1.5)
    return min(delay * jitter, max_delay)


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def _extract_usage(response: Any) -> dict[str, Any]:
    usage = getattr(response, "usage", None)
    if usage is None:
        return {}
    return {
        "prompt_tokens": getattr(usage, "prompt_tokens", 0),
        "completion_tokens": getattr(usage, "completion_tokens", 0),
        "total_tokens": getattr(usage, "total_tokens", 0),
    }


def _compute_cost(response: Any) -> float:
    try:
        return float(litellm.completion_cost(completion_response=response))
    except Exception:
        logger.debug("completion_cost unavailable for this response")
        return 0.0


def _extract_tool_calls(message: Any) -> list[dict[str, Any]]:
    """Extract tool calls from response message into plain dicts."""
    if not getattr(message, "tool_calls", None):
        return []
    result: list[dict[str, Any]] = []
    for tc in message.tool_calls:
        result.append({
            "id": tc.id,
            "type": getattr(tc, "type", None) or "function",
            "function": {
                "name": tc.function.name,
                "arguments": tc.function.arguments,
            },
        })
    return result


def _build_result_from_response(response: Any, model: str) -> LLMCallResult:
    choice = response.choices[0]
    result = LLMCallResult(
        content=choice.message.content or "",
        tool_calls=_extract_tool_calls(choice.message),
        finish_reason=choice.finish_reason or "",
        usage=_extract_usage(response),
        cost=_compute_cost(response),
        model=model,
        raw_response=response,
    )
    logger.debug(
        "LLM call: model=%s tokens=%s cost=$%.6f finish=%s tool_calls=%d",
        model, result.usage.get("total_tokens"), result.cost, result.finish_reason, len(result.tool_calls),
    )
    return result


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------


async def acall_model(
    model: str,
    messages: list[dict[str, Any]],
    tools: list[dict[str, Any]] | None = None,
    *,
    timeout: int = 60,
    num_retries: int = 2,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    api_base: str | None = None,
    **kwargs: Any,
) -> LLMCallResult:
    """One chat-completion turn, retried on transient errors.

    Final failures are raised as :class:`~llm_tools.errors.LLMError` subclasses.
    """
    call_kwargs: dict[str, Any] = {"model": model, "messages": messages, "timeout": timeout, **kwargs}
    if tools:
        call_kwargs["tools"] = tools
    if api_base is not None:
        call_kwargs["api_base"] = api_base

    last_error: Exception | None = None
    for attempt in range(num_retries + 1):
        try:
            response = await litellm.acompletion(**call_kwargs)
            return _build_result_from_response(response, model)
        except Exception as e:
            last_error = e
            if attempt < num_retries and _is_retryable(e):
                delay = exponential_backoff(attempt, base_delay, max_delay)
                logger.warning(
                    "LLM call failed (attempt %d/%d), retrying in %.1fs: %s",
                    attempt + 1, num_retries + 1, delay, e,
                )
                await asyncio.sleep(delay)
                continue
            raise wrap_error(e) from e
    raise wrap_error(last_error)  # type: ignore[arg-type]  # unreachable


def litellm_transport(model: str, **call_kwargs: Any) -> ModelTransport:
    """Bind ``model`` and call options into a ModelTransport."""

    async def _transport(messages: list[dict[str, Any]], tools: list[dict[str, Any]]) -> LLMCallResult:
        return await acall_model(model, messages, tools, **call_kwargs)

    return _transport

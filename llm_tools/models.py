"""Data types shared by the registry, resolver, executor and agent loop.

Conversation messages stay plain OpenAI-format dicts (the shape litellm
consumes); everything the orchestrator reasons about is a dataclass here.
"""

from __future__ import annotations

import json as _json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable


class Visibility(str, Enum):
    """How a registered tool reaches the model."""

    EXPOSED = "exposed"
    """Always offered when one of its tags is requested."""
    SEARCHABLE = "searchable"
    """Hidden until the search meta-tool surfaces it."""


class FinishReason(str, Enum):
    STOP = "stop"
    TOOL_CALLS = "tool_calls"
    RETURN_DIRECT = "return_direct"


@dataclass(frozen=True)
class ToolParameter:
    """One named input of a tool."""

    name: str
    type: str = "string"
    required: bool = False
    description: str | None = None
    enum: tuple[str, ...] | None = None

    def to_schema(self) -> dict[str, Any]:
        schema: dict[str, Any]
        if self.enum:
            schema = {"type": "string", "enum": list(self.enum)}
        else:
            schema = {"type": self.type}
        if self.description:
            schema["description"] = self.description
        return schema


@dataclass(frozen=True)
class ToolSpecification:
    """Name, description and JSON-schema parameters of a tool.

    ``parameters`` is treated as read-only once built; builders in
    :mod:`llm_tools.schema` always hand over a fresh dict.
    """

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}},
        hash=False,
        compare=False,
    )

    @classmethod
    def from_parameters(
        cls,
        name: str,
        description: str,
        parameters: list[ToolParameter],
    ) -> ToolSpecification:
        properties = {p.name: p.to_schema() for p in parameters}
        schema: dict[str, Any] = {"type": "object", "properties": properties}
        required = [p.name for p in parameters if p.required]
        if required:
            schema["required"] = required
        return cls(name=name, description=description, parameters=schema)

    def parameter_names(self) -> list[str]:
        properties = self.parameters.get("properties") or {}
        return list(properties.keys()) if isinstance(properties, dict) else []

    def required_parameters(self) -> list[str]:
        required = self.parameters.get("required") or []
        return [r for r in required if isinstance(r, str)]

    def to_openai(self) -> dict[str, Any]:
        """Render as an OpenAI function-calling tool (litellm ``tools=`` entry)."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": _json.loads(_json.dumps(self.parameters)),
            },
        }


ToolCallable = Callable[..., Any]
"""Local tool executor: sync or async, called with the decoded arguments as kwargs."""


@dataclass(eq=False)
class ToolRegistration:
    """A ToolSpecification bound to its executor, tags and visibility.

    Registrations compare by identity: registering the same spec twice
    (for instance from two routes) yields two distinct registrations.
    """

    spec: ToolSpecification
    executor: ToolCallable
    tags: tuple[str, ...] = ()
    visibility: Visibility = Visibility.EXPOSED
    return_direct: bool = False

    def __post_init__(self) -> None:
        self.tags = tuple(self.tags)
        self.visibility = Visibility(self.visibility)

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def exposed(self) -> bool:
        return self.visibility is Visibility.EXPOSED


@dataclass(frozen=True)
class ToolCallRequest:
    """A single tool call requested by the model. ``arguments`` is raw JSON."""

    id: str
    name: str
    arguments: str = "{}"

    @classmethod
    def from_openai(cls, tool_call: dict[str, Any]) -> ToolCallRequest:
        fn = tool_call.get("function") or {}
        arguments = fn.get("arguments", "{}")
        if not isinstance(arguments, str):
            arguments = _json.dumps(arguments)
        return cls(
            id=str(tool_call.get("id") or ""),
            name=str(fn.get("name") or ""),
            arguments=arguments or "{}",
        )

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class ToolCallResult:
    """Normalized outcome of one tool call: always text, optionally an error.

    ``content`` is what goes back to the model (possibly truncated); ``raw``
    keeps the full text for return-direct answers.
    """

    id: str
    name: str
    content: str
    is_error: bool = False
    raw: str | None = field(default=None, repr=False, compare=False)

    def to_message(self) -> dict[str, Any]:
        return {
            "role": "tool",
            "tool_call_id": self.id,
            "name": self.name,
            "content": self.content,
        }


def assistant_message(content: str, tool_calls: list[ToolCallRequest]) -> dict[str, Any]:
    """Build the assistant turn appended to history before tool results."""
    message: dict[str, Any] = {"role": "assistant", "content": content or None}
    if tool_calls:
        message["tool_calls"] = [tc.to_openai() for tc in tool_calls]
    return message


@dataclass
class ToolCallRecord:
    """Audit record of one executed tool call."""

    tool: str
    server: str | None
    arguments: str
    result: str | None = None
    error: str | None = None
    latency_s: float = 0.0


@dataclass
class IterationState:
    """Mutable per-exchange loop state."""

    iterations: int = 0
    tool_calls: list[str] = field(default_factory=list)
    return_direct: bool = False
    finish_reason: str | None = None


@dataclass
class ExchangeResult:
    """What one agentic exchange produced."""

    content: str | None
    finish_reason: str
    iterations: int = 0
    tool_calls: list[str] = field(default_factory=list)
    return_direct: bool = False
    records: list[ToolCallRecord] = field(default_factory=list)

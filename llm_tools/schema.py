"""Builders that turn tool declarations into ToolSpecifications.

Three sources feed the orchestrator:

- flat parameter maps (``{"location": "string", "location.required": "true"}``),
  the configuration-file way of declaring a local tool;
- typed Python callables, inspected via signature + docstring;
- tools listed by a remote MCP server.
"""

from __future__ import annotations

import inspect
import logging
import re
from typing import Any, Callable, Optional, Union, get_args, get_origin, get_type_hints

from llm_tools.models import ToolParameter, ToolSpecification

logger = logging.getLogger(__name__)

# Python type → JSON Schema type
_TYPE_MAP: dict[type, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
}

_FLAT_PARAM_TYPES = frozenset({"string", "integer", "number", "boolean"})

RETURN_DIRECT_KEYS = ("returnDirect", "return_direct")


# ---------------------------------------------------------------------------
# Flat parameter maps
# ---------------------------------------------------------------------------


def derive_tool_name(description: str) -> str:
    """Camel-case a description into a tool name: "get user by id" → "getUserById"."""
    words = [w for w in re.split(r"[\s\-]+", description.strip()) if w]
    if not words:
        raise ValueError("Cannot derive a tool name from an empty description")
    head, *rest = words
    name = head + "".join(w[:1].upper() + w[1:] for w in rest)
    return re.sub(r"[^A-Za-z0-9_]", "", name)


def parse_flat_parameters(parameters: dict[str, str]) -> list[ToolParameter]:
    """Parse ``name=type`` / ``name.description`` / ``name.required`` / ``name.enum`` keys.

    Unknown types fall back to ``string``; unknown sub-properties are ignored.
    Declaration order of first appearance is preserved.
    """
    meta: dict[str, dict[str, Any]] = {}
    for key, value in parameters.items():
        param_name, _, prop = key.partition(".")
        entry = meta.setdefault(param_name, {"type": "string"})
        if not prop:
            entry["type"] = str(value).strip().lower()
        elif prop == "description":
            entry["description"] = str(value)
        elif prop == "required":
            entry["required"] = str(value).strip().lower() == "true"
        elif prop == "enum":
            entry["enum"] = tuple(v.strip() for v in str(value).split(",") if v.strip())
        else:
            logger.debug("Ignoring unknown parameter property %r", key)

    out: list[ToolParameter] = []
    for name, entry in meta.items():
        type_name = entry["type"]
        if type_name not in _FLAT_PARAM_TYPES:
            logger.debug("Unknown parameter type %r for %r, using string", type_name, name)
            type_name = "string"
        out.append(ToolParameter(
            name=name,
            type=type_name,
            required=entry.get("required", False),
            description=entry.get("description"),
            enum=entry.get("enum"),
        ))
    return out


def spec_from_flat_parameters(
    description: str,
    parameters: dict[str, str] | None = None,
    name: str | None = None,
) -> ToolSpecification:
    """Build a spec from a description and an optional flat parameter map."""
    if not description:
        raise ValueError("A tool needs at least a description")
    tool_name = name or derive_tool_name(description)
    return ToolSpecification.from_parameters(
        tool_name, description, parse_flat_parameters(parameters or {}),
    )


# ---------------------------------------------------------------------------
# Python callables
# ---------------------------------------------------------------------------


def _type_to_json_schema(tp: Any) -> dict[str, Any]:
    """Convert a Python type annotation to a JSON Schema fragment.

    Supports: str, int, float, bool, list[X], dict, Optional[X].
    Raises ValueError for unsupported types.
    """
    origin = get_origin(tp)
    args = get_args(tp)

    if origin is Union:
        non_none = [a for a in args if a is not type(None)]
        if len(non_none) == 1:
            return _type_to_json_schema(non_none[0])

    if origin is list:
        schema: dict[str, Any] = {"type": "array"}
        if args:
            schema["items"] = _type_to_json_schema(args[0])
        return schema

    if origin is dict or tp is dict:
        return {"type": "object"}

    if tp in _TYPE_MAP:
        return {"type": _TYPE_MAP[tp]}

    raise ValueError(
        f"Unsupported type annotation: {tp!r}. "
        f"Supported: str, int, float, bool, list[X], dict, Optional[X]."
    )


def spec_from_callable(
    fn: Callable[..., Any],
    name: Optional[str] = None,
    description: Optional[str] = None,
) -> ToolSpecification:
    """Build a spec from a typed function's signature and docstring.

    Every parameter must be annotated (raises ValueError otherwise).
    Parameters without defaults are required. The description defaults to
    the first docstring line.
    """
    sig = inspect.signature(fn)
    try:
        hints = get_type_hints(fn)
    except Exception:
        hints = {}

    properties: dict[str, Any] = {}
    required: list[str] = []
    for param_name, param in sig.parameters.items():
        if param_name in ("self", "cls"):
            continue
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        if param_name not in hints:
            raise ValueError(
                f"Parameter {param_name!r} of {fn.__name__!r} has no type annotation. "
                f"All parameters must be typed for schema generation."
            )
        prop = _type_to_json_schema(hints[param_name])
        if param.default is not inspect.Parameter.empty:
            prop["default"] = param.default
        else:
            required.append(param_name)
        properties[param_name] = prop

    if description is None:
        description = ""
        if fn.__doc__:
            description = fn.__doc__.strip().split("\n")[0].strip()

    parameters: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        parameters["required"] = required
    return ToolSpecification(
        name=name or fn.__name__,
        description=description,
        parameters=parameters,
    )


# ---------------------------------------------------------------------------
# Remote (MCP) tools
# ---------------------------------------------------------------------------


def spec_from_mcp_tool(tool: Any) -> ToolSpecification:
    """Convert an MCP ``Tool`` (name, description, inputSchema) to a spec.

    Only ``type``, ``properties`` and ``required`` of the input schema are
    carried over; a missing schema becomes an empty object schema.
    """
    raw = getattr(tool, "inputSchema", None)
    parameters: dict[str, Any] = {"type": "object", "properties": {}}
    if isinstance(raw, dict):
        parameters["type"] = raw.get("type") or "object"
        properties = raw.get("properties")
        if isinstance(properties, dict):
            parameters["properties"] = dict(properties)
        required = raw.get("required")
        if isinstance(required, list):
            parameters["required"] = list(required)
    return ToolSpecification(
        name=tool.name,
        description=getattr(tool, "description", None) or "",
        parameters=parameters,
    )


def mcp_tool_is_return_direct(tool: Any) -> bool:
    """True only when the tool explicitly declares ``returnDirect: true``.

    A missing annotation (or ``_meta`` entry) means not direct.
    """
    for holder in (getattr(tool, "annotations", None), getattr(tool, "meta", None)):
        if holder is None:
            continue
        for key in RETURN_DIRECT_KEYS:
            if isinstance(holder, dict):
                value = holder.get(key)
            else:
                value = getattr(holder, key, None)
            if value is True:
                return True
    return False

"""Command-line access to the orchestrator.

Usage:
    python -m llm_tools tools --config tools.yaml --tags math,user
    python -m llm_tools tools --config tools.yaml --tags math --exclude-servers weather
    python -m llm_tools tools --import myapp.tools --tags math --format json

    python -m llm_tools chat --config tools.yaml --model gpt-4o-mini --tags math "What is 17 + 25?"

``--import`` loads Python modules whose ``@tool`` decorators register local
tools in the default registry. ``--config`` is a YAML file with
``orchestrator:``, ``mcp_servers:`` and optionally ``embedding_model:``.
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import logging
import sys
from typing import Any

from llm_tools.config import LoadedConfig, OrchestratorConfig, load_config
from llm_tools.embeddings import litellm_embedder
from llm_tools.errors import ToolOrchestratorError
from llm_tools.orchestrator import ToolOrchestrator


def _load(args: argparse.Namespace) -> LoadedConfig:
    for module in args.imports or []:
        importlib.import_module(module)
    if args.config:
        return load_config(args.config)
    return LoadedConfig(orchestrator=OrchestratorConfig.from_env(), servers=[])


def _build(args: argparse.Namespace, loaded: LoadedConfig, model: Any) -> ToolOrchestrator:
    embed_model = getattr(args, "embedding_model", None) or loaded.embedding_model
    return ToolOrchestrator(
        model,
        servers=loaded.servers,
        embed_fn=litellm_embedder(embed_model) if embed_model else None,
        config=loaded.orchestrator,
    )


async def _unused_transport(messages: list[dict[str, Any]], tools: list[dict[str, Any]]) -> Any:
    raise RuntimeError("the tools command never calls the model")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _list_tools(args: argparse.Namespace) -> list[dict[str, Any]]:
    orchestrator = _build(args, _load(args), _unused_transport)
    async with orchestrator:
        candidates = orchestrator.resolve(
            args.tags, exclude_tags=args.exclude_tags, exclude_servers=args.exclude_servers,
        )
        rows = []
        for spec in candidates.specs:
            if spec.name in candidates.local:
                source = "local"
            elif spec.name in candidates.remote and orchestrator.remote is not None:
                source = orchestrator.remote.owner_of(spec.name) or "remote"
            else:
                source = "search"
            rows.append({
                "name": spec.name,
                "source": source,
                "return_direct": orchestrator.executor.is_return_direct(spec.name, candidates),
                "parameters": spec.parameter_names(),
                "description": spec.description,
            })
        return rows


def cmd_tools(args: argparse.Namespace) -> None:
    rows = asyncio.run(_list_tools(args))

    if args.format == "json":
        print(json.dumps(rows, indent=2))
        return

    print(f"{'Tool':<32} {'Source':<16} {'Direct':>6}  Parameters")
    print("-" * 80)
    for row in rows:
        direct = "yes" if row["return_direct"] else ""
        print(f"{row['name']:<32} {row['source']:<16} {direct:>6}  {', '.join(row['parameters'])}")
    print(f"\n{len(rows)} tools")


async def _chat(args: argparse.Namespace) -> Any:
    orchestrator = _build(args, _load(args), args.model)
    async with orchestrator:
        return await orchestrator.achat(
            args.prompt,
            args.tags,
            exclude_tags=args.exclude_tags,
            exclude_servers=args.exclude_servers,
        )


def cmd_chat(args: argparse.Namespace) -> None:
    result = asyncio.run(_chat(args))
    print(result.content or "")
    if args.verbose:
        print(
            f"\n[finish={result.finish_reason} iterations={result.iterations} "
            f"tools={','.join(result.tool_calls) or '-'}]",
            file=sys.stderr,
        )


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", help="YAML config with orchestrator / mcp_servers sections")
    p.add_argument("--import", dest="imports", action="append", metavar="MODULE", help="Module registering local tools (repeatable)")
    p.add_argument("--tags", required=True, help="Comma-separated tags selecting tools")
    p.add_argument("--exclude-tags", help="Comma-separated tags to drop for this request")
    p.add_argument("--exclude-servers", help="Comma-separated mcp servers to drop for this request")
    p.add_argument("--embedding-model", help="litellm embedding model for tool search")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="llm_tools",
        description="Agentic tool-calling orchestrator",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, ...)")
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # tools
    tools_p = sub.add_parser("tools", help="List the candidate tools for a request")
    _add_common(tools_p)
    tools_p.add_argument("--format", choices=["table", "json"], default="table", help="Output format")

    # chat
    chat_p = sub.add_parser("chat", help="Run one exchange and print the answer")
    _add_common(chat_p)
    chat_p.add_argument("--model", required=True, help="litellm model string")
    chat_p.add_argument("--verbose", "-v", action="store_true", help="Print loop summary to stderr")
    chat_p.add_argument("prompt", help="User message")

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    try:
        if args.command == "tools":
            cmd_tools(args)
        elif args.command == "chat":
            cmd_chat(args)
    except ToolOrchestratorError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()

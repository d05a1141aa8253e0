"""Per-exchange candidate tool resolution.

Computes the tool set offered to the model for one request from the
registry's exposed tools, the remote servers' tools and (when searchable
tools exist) the search meta-tool. Exclusions apply to a single exchange
and never touch the registry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from llm_tools.errors import NoToolsAvailableError
from llm_tools.mcp_manager import RemoteConnectionManager
from llm_tools.models import ToolRegistration, ToolSpecification
from llm_tools.registry import ToolRegistry
from llm_tools.tool_index import SEARCH_TOOL_NAME, SemanticToolIndex, build_search_tool_spec

logger = logging.getLogger(__name__)


def _split(value: str | Iterable[str] | None) -> frozenset[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        value = value.split(",")
    return frozenset(v.strip() for v in value if v and v.strip())


@dataclass(frozen=True)
class ToolExclusion:
    """Tags and remote server names dropped for one exchange."""

    tags: frozenset[str] = frozenset()
    servers: frozenset[str] = frozenset()

    @classmethod
    def parse(
        cls,
        tags: str | Iterable[str] | None = None,
        servers: str | Iterable[str] | None = None,
    ) -> ToolExclusion:
        """Build from comma-separated strings or iterables."""
        return cls(tags=_split(tags), servers=_split(servers))

    def __bool__(self) -> bool:
        return bool(self.tags or self.servers)


@dataclass
class CandidateSet:
    """Tools available to the model during one exchange.

    Grows when the search meta-tool discovers tools. Names are unique:
    the first spec added under a name wins.
    """

    tags: list[str] = field(default_factory=list)
    specs: list[ToolSpecification] = field(default_factory=list)
    local: dict[str, ToolRegistration] = field(default_factory=dict)
    remote: set[str] = field(default_factory=set)
    search_enabled: bool = False

    def names(self) -> list[str]:
        return [s.name for s in self.specs]

    def __contains__(self, name: object) -> bool:
        return any(s.name == name for s in self.specs)

    def __len__(self) -> int:
        return len(self.specs)

    def _add_spec(self, spec: ToolSpecification) -> bool:
        if spec.name in self:
            logger.warning("Duplicate tool name %r in candidate set, keeping first", spec.name)
            return False
        self.specs.append(spec)
        return True

    def add_local(self, registration: ToolRegistration) -> bool:
        if not self._add_spec(registration.spec):
            return False
        self.local[registration.name] = registration
        return True

    def add_remote(self, spec: ToolSpecification) -> bool:
        if not self._add_spec(spec):
            return False
        self.remote.add(spec.name)
        return True

    def add_discovered(self, registrations: Iterable[ToolRegistration]) -> list[str]:
        """Merge search hits; returns the names that were new to this exchange."""
        added: list[str] = []
        for reg in registrations:
            if reg.name in self:
                continue
            self.specs.append(reg.spec)
            self.local[reg.name] = reg
            added.append(reg.name)
        return added

    def to_openai(self) -> list[dict]:
        return [s.to_openai() for s in self.specs]


class CandidateResolver:
    """Builds the CandidateSet for a request."""

    def __init__(
        self,
        registry: ToolRegistry,
        remote: RemoteConnectionManager | None = None,
        index: SemanticToolIndex | None = None,
    ) -> None:
        self.registry = registry
        self.remote = remote
        self.index = index

    def resolve(
        self,
        tags: str | Iterable[str],
        exclusion: ToolExclusion | None = None,
    ) -> CandidateSet:
        """Resolve the candidate set or raise NoToolsAvailableError."""
        requested = [t.strip() for t in tags.split(",")] if isinstance(tags, str) else list(tags)
        requested = [t for t in requested if t]
        exclusion = exclusion or ToolExclusion()
        effective = [t for t in requested if t not in exclusion.tags]

        candidates = CandidateSet(tags=effective)
        for reg in self.registry.lookup_exposed(effective):
            if reg.tags and set(reg.tags) <= exclusion.tags:
                continue
            candidates.add_local(reg)

        if self.remote is not None:
            for spec in self.remote.tools_for(exclusion.servers):
                candidates.add_remote(spec)

        if self.index is not None and self.index.has_searchable(effective):
            search_spec = build_search_tool_spec()
            if SEARCH_TOOL_NAME in candidates:
                logger.warning("A tool named %r shadows the search meta-tool", SEARCH_TOOL_NAME)
            else:
                candidates.specs.append(search_spec)
                candidates.search_enabled = True

        if not candidates:
            raise NoToolsAvailableError(requested)

        logger.debug(
            "Resolved %d candidate tools for tags=%s (excluded tags=%s, servers=%s): %s",
            len(candidates), effective, sorted(exclusion.tags), sorted(exclusion.servers),
            candidates.names(),
        )
        return candidates

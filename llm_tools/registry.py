"""Tag-indexed registry of local tools.

Routes (or whatever owns a tool) register on start and unregister on stop,
possibly while requests are being served, so every mutation and every
lookup goes through one re-entrant lock and readers always get snapshots.

Usage::

    registry = ToolRegistry()
    reg = ToolRegistration(spec, add, tags=("math",))
    registry.register_tool(reg)
    registry.lookup_exposed(["math"])   # [reg]
    registry.unregister_tool(reg)
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable

from llm_tools.models import ToolRegistration, Visibility

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Thread-safe mapping of tag → registrations in registration order."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._by_tag: dict[str, list[ToolRegistration]] = {}

    def register(self, tag: str, registration: ToolRegistration) -> None:
        with self._lock:
            entries = self._by_tag.setdefault(tag, [])
            if any(e is registration for e in entries):
                return
            entries.append(registration)
        logger.debug(
            "Registered %s tool %r under tag %r",
            registration.visibility.value, registration.name, tag,
        )

    def unregister(self, tag: str, registration: ToolRegistration) -> None:
        with self._lock:
            entries = self._by_tag.get(tag)
            if not entries:
                return
            remaining = [e for e in entries if e is not registration]
            if remaining:
                self._by_tag[tag] = remaining
            else:
                del self._by_tag[tag]
        logger.debug("Unregistered tool %r from tag %r", registration.name, tag)

    def register_tool(self, registration: ToolRegistration) -> None:
        """Register under every tag the registration carries."""
        if not registration.tags:
            raise ValueError(f"Tool {registration.name!r} has no tags to register under")
        for tag in registration.tags:
            self.register(tag, registration)

    def unregister_tool(self, registration: ToolRegistration) -> None:
        for tag in registration.tags:
            self.unregister(tag, registration)

    def _matching(self, tags: Iterable[str], visibility: Visibility) -> list[ToolRegistration]:
        seen: set[int] = set()
        out: list[ToolRegistration] = []
        with self._lock:
            for tag in tags:
                for reg in self._by_tag.get(tag, ()):
                    if reg.visibility is not visibility or id(reg) in seen:
                        continue
                    seen.add(id(reg))
                    out.append(reg)
        return out

    def lookup_exposed(self, tags: Iterable[str]) -> list[ToolRegistration]:
        """Exposed registrations carrying any of ``tags``, in request-tag then registration order."""
        return self._matching(tags, Visibility.EXPOSED)

    def searchable_for_tags(self, tags: Iterable[str]) -> list[ToolRegistration]:
        return self._matching(tags, Visibility.SEARCHABLE)

    def has_searchable(self, tags: Iterable[str]) -> bool:
        with self._lock:
            return any(
                reg.visibility is Visibility.SEARCHABLE
                for tag in tags
                for reg in self._by_tag.get(tag, ())
            )

    def tags(self) -> list[str]:
        with self._lock:
            return list(self._by_tag.keys())

    def clear(self) -> None:
        with self._lock:
            self._by_tag.clear()


_default_registry: ToolRegistry | None = None
_default_lock = threading.Lock()


def default_registry() -> ToolRegistry:
    """Process-wide registry for callers that do not manage their own."""
    global _default_registry  # noqa: PLW0603
    with _default_lock:
        if _default_registry is None:
            _default_registry = ToolRegistry()
        return _default_registry

"""Dependency resolution for cache invalidation.

An entry declares the keys it depends on when it is set. Removing a key
must also remove every entry that depends on it, and everything that depends
on those, and so on. The dependency graph may contain cycles; each internal
key is visited at most once per resolution, so a walk always terminates.

Example:
    cache.set("user:1", user)
    cache.set("profile:1", profile, depends_on=["user:1"])
    cache.set("feed:1", feed, depends_on=["profile:1"])

    cache.remove("user:1")  # removes all three entries
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from collections.abc import Callable, Iterable, Mapping

from imcache.entry import CacheEntry
from imcache.selectors import Pattern, Plain, Selector, SelectorLike, as_selector

logger = logging.getLogger(__name__)

KeyDeriver = Callable[[str], str]


class DependencyResolver:
    """Computes the set of internal keys a removal must delete."""

    def __init__(self, derive: KeyDeriver):
        self._derive = derive

    def match(self, entries: Mapping[str, CacheEntry], selector: SelectorLike) -> set[str]:
        """Internal keys selected directly, without following dependencies."""
        selector = as_selector(selector)
        if isinstance(selector, Plain):
            internal_key = self._derive(selector.key)
            return {internal_key} if internal_key in entries else set()
        return {key for key, entry in entries.items() if selector.matches(entry.logical_key)}

    def resolve(self, entries: Mapping[str, CacheEntry], selector: SelectorLike) -> set[str]:
        """Transitive closure of the selected entries and their dependents.

        Returns an empty set when nothing matches. Order is not meaningful.
        """
        seeds = self.match(entries, selector)
        if not seeds:
            return set()

        by_key, by_pattern = self._index_dependents(entries.items())

        resolved: set[str] = set()
        queue: deque[str] = deque(seeds)
        while queue:
            internal_key = queue.popleft()
            if internal_key in resolved:
                continue
            resolved.add(internal_key)

            removed = entries[internal_key]
            dependents = set(by_key.get(internal_key, ()))
            for pattern, dependent in by_pattern:
                if pattern.matches(removed.logical_key):
                    dependents.add(dependent)

            queue.extend(key for key in dependents if key not in resolved)

        if len(resolved) > len(seeds):
            logger.debug(
                f"Resolved {len(seeds)} selected entries to {len(resolved)} "
                f"including dependents"
            )
        return resolved

    def _index_dependents(
        self, items: Iterable[tuple[str, CacheEntry]]
    ) -> tuple[dict[str, set[str]], list[tuple[Pattern, str]]]:
        """Reverse the declared dependencies.

        Plain dependencies are keyed by the internal key they derive to;
        pattern dependencies are kept as a list and tested per removed entry.
        """
        by_key: dict[str, set[str]] = defaultdict(set)
        by_pattern: list[tuple[Pattern, str]] = []
        for dependent, entry in items:
            for dependency in entry.depends_on:
                if isinstance(dependency, Plain):
                    by_key[self._derive(dependency.key)].add(dependent)
                else:
                    by_pattern.append((dependency, dependent))
        return by_key, by_pattern


def normalize_dependencies(depends_on: Iterable[SelectorLike] | None) -> tuple[Selector, ...]:
    """Convert user-supplied dependency declarations into selector variants."""
    if depends_on is None:
        return ()
    if isinstance(depends_on, str):
        return (Plain(depends_on),)
    return tuple(as_selector(dependency) for dependency in depends_on)

"""In-memory set of enabled dynamic-rule patterns.

A pre-filter for the detector's "is this subject already covered?" check.
A negative answer means no covering rule exists and the store scan can be
skipped; a positive answer must still be confirmed against the store.
"""

import threading
from collections.abc import Iterable


class DynamicPatternCache:
    """Lower-cased pattern set with O(1) exact lookup and a containment scan.

    Usage::

        cache = DynamicPatternCache()
        cache.load(store.dynamic_patterns())
        if cache.has_matching_pattern("50% off"):
            rule = store.find_covering_dynamic_rule("50% off")
    """

    def __init__(self) -> None:
        self._patterns: frozenset[str] = frozenset()
        self._lock = threading.Lock()
        self._loaded = False
        self._hits = 0
        self._misses = 0

    def load(self, patterns: Iterable[str]) -> None:
        """Replace the cache contents with *patterns*."""
        fresh = frozenset(p.lower() for p in patterns)
        with self._lock:
            self._patterns = fresh
            self._loaded = True

    @property
    def loaded(self) -> bool:
        return self._loaded

    def has(self, pattern: str) -> bool:
        """Exact (case-insensitive) membership."""
        return pattern.lower() in self._patterns

    def has_matching_pattern(self, subject: str) -> bool:
        """True if some pattern contains *subject* or is contained in it."""
        subject_lower = subject.lower()
        patterns = self._patterns
        found = subject_lower in patterns or any(
            p in subject_lower or subject_lower in p for p in patterns
        )
        with self._lock:
            if found:
                self._hits += 1
            else:
                self._misses += 1
        return found

    def add(self, pattern: str) -> None:
        with self._lock:
            self._patterns = self._patterns | {pattern.lower()}

    def remove(self, pattern: str) -> bool:
        """Remove *pattern*; returns False if it wasn't cached."""
        key = pattern.lower()
        with self._lock:
            if key not in self._patterns:
                return False
            self._patterns = self._patterns - {key}
            return True

    def __len__(self) -> int:
        return len(self._patterns)

    def stats(self) -> dict[str, float]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._patterns),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total else 0.0,
            }

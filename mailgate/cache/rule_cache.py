"""In-memory cache of enabled rules per scope.

Keeps the per-message evaluation path off the database. Every rule
mutation must call ``invalidate``/``invalidate_all`` synchronously; a TTL
bounds staleness when another process writes to the same database.

Entries are immutable snapshots replaced wholesale, so readers never see a
half-rebuilt rule list.
"""

import logging
import re
import threading
import time
from collections import OrderedDict
from collections.abc import Callable

from mailgate.matcher import compile_pattern
from mailgate.schemas.rules import CATEGORY_PRIORITY, FilterRule, MatchMode, RuleCategory

logger = logging.getLogger(__name__)

_GLOBAL_KEY = "__global__"


class RuleSnapshot:
    """Enabled rules for one scope, grouped by category, with regexes compiled once."""

    __slots__ = ("scope", "rules", "_by_category", "_compiled")

    def __init__(self, scope: str | None, rules: list[FilterRule]) -> None:
        self.scope = scope
        self.rules: tuple[FilterRule, ...] = tuple(r for r in rules if r.enabled)
        self._by_category: dict[RuleCategory, tuple[FilterRule, ...]] = {
            category: tuple(r for r in self.rules if r.category == category)
            for category in CATEGORY_PRIORITY
        }
        self._compiled: dict[str, re.Pattern[str] | None] = {
            r.id: compile_pattern(r.pattern) for r in self.rules if r.match_mode == MatchMode.REGEX
        }

    def by_category(self, category: RuleCategory) -> tuple[FilterRule, ...]:
        return self._by_category.get(category, ())

    def compiled(self, rule_id: str) -> re.Pattern[str] | None:
        return self._compiled.get(rule_id)

    def __len__(self) -> int:
        return len(self.rules)


class RuleCache:
    """Scope-keyed cache of ``RuleSnapshot`` objects.

    Usage::

        cache = RuleCache(lambda scope: store.find_rules_by_scope(scope))
        snapshot = cache.get("tenant-a")
        ...
        store.delete_rule(rule_id)
        cache.invalidate_all()
    """

    def __init__(
        self,
        loader: Callable[[str | None], list[FilterRule]],
        *,
        ttl_seconds: float = 60.0,
        max_entries: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, tuple[RuleSnapshot, float]] = OrderedDict()
        # Bumped on every invalidation; a load that started before an
        # invalidation is served to its caller but never stored.
        self._generation = 0
        self._hits = 0
        self._misses = 0

    @staticmethod
    def _key(scope: str | None) -> str:
        return scope if scope else _GLOBAL_KEY

    def get(self, scope: str | None = None) -> RuleSnapshot:
        """Return the enabled rules for *scope*, loading from the store on a miss."""
        key = self._key(scope)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._clock() - entry[1] < self._ttl:
                self._entries.move_to_end(key)
                self._hits += 1
                return entry[0]
            if entry is not None:
                del self._entries[key]
            self._misses += 1
            generation = self._generation

        snapshot = RuleSnapshot(scope, self._loader(scope))

        with self._lock:
            if generation == self._generation:
                self._entries[key] = (snapshot, self._clock())
                self._entries.move_to_end(key)
                while len(self._entries) > self._max_entries:
                    self._entries.popitem(last=False)
        return snapshot

    def invalidate(self, scope: str | None = None) -> None:
        """Drop the cached snapshot for *scope*.

        Global rules are part of every scope's snapshot, so invalidating the
        global scope clears everything.
        """
        with self._lock:
            self._generation += 1
            if scope is None:
                self._entries.clear()
            else:
                self._entries.pop(self._key(scope), None)
        logger.debug("Rule cache invalidated (scope=%s)", scope or "global")

    def invalidate_all(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()
        logger.debug("Rule cache invalidated (all scopes)")

    def stats(self) -> dict[str, float]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total else 0.0,
            }

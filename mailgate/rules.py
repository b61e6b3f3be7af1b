"""Admin-facing rule management.

Every mutation validates before writing, and invalidates the rule cache
synchronously afterwards so the next evaluation sees the change. Dynamic
rule edits also resync the dynamic pattern cache from the store.
"""

import logging

from mailgate.cache.pattern_cache import DynamicPatternCache
from mailgate.cache.rule_cache import RuleCache
from mailgate.errors import DuplicateRuleError, RuleNotFoundError
from mailgate.matcher import validate_pattern
from mailgate.schemas.rules import FilterRule, RuleCategory, RuleCreate, RuleUpdate
from mailgate.store import RuleStore

logger = logging.getLogger(__name__)


class RuleService:
    """Validated CRUD over ``RuleStore`` with cache invalidation.

    Usage::

        service = RuleService(store, rule_cache, pattern_cache)
        rule = service.create(RuleCreate(
            category="whitelist", match_type="sender",
            match_mode="exact", pattern="boss@example.com",
        ))
        service.toggle(rule.id)
    """

    def __init__(
        self,
        store: RuleStore,
        rule_cache: RuleCache,
        pattern_cache: DynamicPatternCache,
    ) -> None:
        self._store = store
        self._rule_cache = rule_cache
        self._pattern_cache = pattern_cache

    def get(self, rule_id: str) -> FilterRule:
        """Raises RuleNotFoundError if missing."""
        rule = self._store.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    def list_rules(
        self,
        *,
        category: RuleCategory | None = None,
        scope: str | None = None,
    ) -> list[FilterRule]:
        return self._store.list_rules(category=category, scope=scope)

    def create(self, data: RuleCreate) -> FilterRule:
        """Create a rule.

        Raises:
            InvalidPatternError: Empty pattern or invalid regex.
            DuplicateRuleError: Identical rule already exists in the scope.
        """
        validate_pattern(data.pattern, data.match_mode)
        existing = self._store.find_duplicate(data)
        if existing is not None:
            raise DuplicateRuleError(existing.id)

        rule = self._store.create_rule(data)
        self._rule_cache.invalidate(rule.scope)
        if rule.category == RuleCategory.DYNAMIC:
            self._resync_patterns()
        return rule

    def update(self, rule_id: str, changes: RuleUpdate) -> FilterRule:
        """Apply a partial update.

        Raises:
            RuleNotFoundError: No such rule.
            InvalidPatternError: The resulting pattern/mode pair is invalid.
        """
        before = self.get(rule_id)
        pattern = changes.pattern if changes.pattern is not None else before.pattern
        mode = changes.match_mode if changes.match_mode is not None else before.match_mode
        validate_pattern(pattern, mode)

        after = self._store.update_rule(rule_id, changes)
        if after is None:
            raise RuleNotFoundError(rule_id)

        self._rule_cache.invalidate(before.scope)
        if after.scope != before.scope:
            self._rule_cache.invalidate(after.scope)
        if RuleCategory.DYNAMIC in (before.category, after.category):
            self._resync_patterns()
        logger.info("Updated rule %s", rule_id[:8])
        return after

    def toggle(self, rule_id: str) -> FilterRule:
        """Flip a rule's enabled flag."""
        rule = self.get(rule_id)
        return self.update(rule_id, RuleUpdate(enabled=not rule.enabled))

    def delete(self, rule_id: str) -> None:
        """Delete a rule and its stats.

        Raises:
            RuleNotFoundError: No such rule.
        """
        rule = self.get(rule_id)
        if not self._store.delete_rule(rule_id):
            raise RuleNotFoundError(rule_id)
        self._rule_cache.invalidate(rule.scope)
        if rule.category == RuleCategory.DYNAMIC:
            self._resync_patterns()
        logger.info("Deleted %s rule %s (%r)", rule.category.value, rule_id[:8], rule.pattern)

    def _resync_patterns(self) -> None:
        self._pattern_cache.load(self._store.dynamic_patterns())

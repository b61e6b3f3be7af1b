"""Priority-ordered rule evaluation.

Whitelist beats blacklist beats dynamic; the first matching rule in the
first category with any match decides, and its hit is recorded.
"""

import logging
import re
import sqlite3
from collections.abc import Callable

from mailgate.cache.rule_cache import RuleCache
from mailgate.matcher import field_value, matches
from mailgate.schemas.rules import (
    CATEGORY_PRIORITY,
    REASON_BY_CATEGORY,
    Decision,
    DecisionAction,
    DecisionReason,
    FilterRule,
    InboundMessage,
    RuleCategory,
)
from mailgate.store import RuleStore

logger = logging.getLogger(__name__)


def find_matching_rule(
    message: InboundMessage,
    rules: tuple[FilterRule, ...],
    compiled: Callable[[str], re.Pattern[str] | None] | None = None,
) -> FilterRule | None:
    """Return the first enabled rule in *rules* that matches *message*."""
    for rule in rules:
        if not rule.enabled:
            continue
        regex = compiled(rule.id) if compiled is not None else None
        if matches(field_value(message, rule.match_type), rule.pattern, rule.match_mode, regex):
            return rule
    return None


class FilterEvaluator:
    """Turns a message into a forward/drop ``Decision`` using cached rules."""

    def __init__(self, store: RuleStore, rule_cache: RuleCache) -> None:
        self._store = store
        self._cache = rule_cache

    def decide(self, message: InboundMessage, scope: str | None = None) -> Decision:
        """Evaluate *message* against the rules for *scope* (default: the message's scope).

        Raises:
            sqlite3.Error: The rule snapshot could not be loaded.
        """
        snapshot = self._cache.get(scope if scope is not None else message.scope)

        for category in CATEGORY_PRIORITY:
            rule = find_matching_rule(message, snapshot.by_category(category), snapshot.compiled)
            if rule is None:
                continue
            self._record_hit(rule, message)
            action = (
                DecisionAction.FORWARD
                if category == RuleCategory.WHITELIST
                else DecisionAction.DROP
            )
            return Decision(
                action=action,
                reason=REASON_BY_CATEGORY[category],
                matched_rule=rule,
                detail=f"Matched {category.value} rule: {rule.pattern}",
            )

        return Decision(
            action=DecisionAction.FORWARD,
            reason=DecisionReason.NONE,
            detail="No matching rules",
        )

    def _record_hit(self, rule: FilterRule, message: InboundMessage) -> None:
        # Hit bookkeeping must never change the decision.
        try:
            self._store.touch_last_hit(rule.id, message.received_at)
        except sqlite3.Error:
            logger.warning("Failed to record hit for rule %s", rule.id, exc_info=True)

"""Message intake: decide, track, and re-decide.

Phase order for one inbound message:
  rule cache -> evaluator -> (no match) detector -> (new rule) evaluator again

The message path always resolves to a decision. Evaluation failures fail
open (forward); detector failures leave the first decision unchanged.
"""

import logging
import sqlite3
from pathlib import Path

from mailgate.audit.logger import DetectionAuditLog
from mailgate.cache.pattern_cache import DynamicPatternCache
from mailgate.cache.rule_cache import RuleCache
from mailgate.detector.dynamic import DynamicConfigService, DynamicRuleDetector
from mailgate.detector.normalize import DEFAULT_PREFIXES
from mailgate.evaluator import FilterEvaluator
from mailgate.rules import RuleService
from mailgate.schemas.rules import Decision, DecisionAction, DecisionReason, InboundMessage
from mailgate.store import RuleStore
from mailgate.sweeper import ExpirationSweeper

logger = logging.getLogger(__name__)


class MailFilterPipeline:
    """Wires the store, caches, evaluator, detector and sweeper together.

    Usage::

        with RuleStore("data/mailgate.db") as store:
            pipeline = MailFilterPipeline(store, audit_log=DetectionAuditLog("audit.jsonl"))
            decision = pipeline.process(InboundMessage(
                sender="promo@shop.example",
                recipient_address="me@example.com",
                subject="FLASH SALE 50% OFF",
            ))
    """

    def __init__(
        self,
        store: RuleStore,
        *,
        audit_log: DetectionAuditLog | None = None,
        rule_cache: RuleCache | None = None,
        pattern_cache: DynamicPatternCache | None = None,
        prefixes=DEFAULT_PREFIXES,
        rule_cache_ttl_seconds: float = 60.0,
        tracker_retention_minutes: int | None = None,
    ) -> None:
        self.store = store
        self.prefixes = prefixes
        if rule_cache is None:
            rule_cache = RuleCache(store.find_rules_by_scope, ttl_seconds=rule_cache_ttl_seconds)
        if pattern_cache is None:
            pattern_cache = DynamicPatternCache()
        self.rule_cache = rule_cache
        self.pattern_cache = pattern_cache
        if not self.pattern_cache.loaded:
            self.pattern_cache.load(store.dynamic_patterns())

        self.config = DynamicConfigService(store)
        self.evaluator = FilterEvaluator(store, self.rule_cache)
        self.detector = DynamicRuleDetector(
            store,
            self.config,
            self.rule_cache,
            self.pattern_cache,
            audit_log=audit_log,
            prefixes=prefixes,
        )
        self.rules = RuleService(store, self.rule_cache, self.pattern_cache)
        self.sweeper = ExpirationSweeper(
            store,
            self.config,
            self.rule_cache,
            self.pattern_cache,
            audit_log=audit_log,
            tracker_retention_minutes=tracker_retention_minutes,
        )

    @classmethod
    def open(
        cls,
        db_path: str | Path,
        audit_log_path: str | Path | None = None,
        **kwargs,
    ) -> "MailFilterPipeline":
        """Open the store at *db_path* and build a pipeline around it."""
        audit_log = DetectionAuditLog(audit_log_path) if audit_log_path else None
        return cls(RuleStore(db_path), audit_log=audit_log, **kwargs)

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> "MailFilterPipeline":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def process(self, message: InboundMessage, *, track: bool = True) -> Decision:
        """Decide forward/drop for *message*, feeding unmatched mail to the detector.

        Args:
            message: Inbound header fields.
            track: Set False to evaluate without recording the subject.
        """
        try:
            decision = self.evaluator.decide(message)
        except Exception:
            logger.exception("Rule evaluation failed for %r; forwarding", message.subject)
            return Decision(
                action=DecisionAction.FORWARD,
                reason=DecisionReason.ERROR,
                detail="Rule evaluation failed",
            )

        if not track or not self.detector.should_track(decision):
            return decision

        try:
            result = self.detector.track(
                message.subject, message.received_at, record_reuse_hit=False
            )
        except Exception:
            logger.exception("Subject tracking failed for %r; no promotion", message.subject)
            return decision

        if result.rule is None:
            return decision

        # The cache was invalidated, so the new rule applies to this message too.
        try:
            redecided = self.evaluator.decide(message)
        except Exception:
            logger.exception("Re-evaluation after promotion failed; keeping first decision")
            if not result.created:
                self._record_reuse_hit(result.rule.id, message)
            return decision

        if not result.created:
            # The evaluator records its own hit when it matched the reused rule.
            if redecided.matched_rule is None or redecided.matched_rule.id != result.rule.id:
                self._record_reuse_hit(result.rule.id, message)
            return redecided
        return redecided.model_copy(
            update={
                "dynamic_rule_created": result.rule,
                "detection_latency_seconds": result.detection_latency_seconds,
                "forwarded_before_block": result.forwarded_before_block,
            }
        )

    def _record_reuse_hit(self, rule_id: str, message: InboundMessage) -> None:
        try:
            self.store.touch_last_hit(rule_id, message.received_at)
        except sqlite3.Error:
            logger.warning("Failed to record hit for reused rule %s", rule_id[:8], exc_info=True)

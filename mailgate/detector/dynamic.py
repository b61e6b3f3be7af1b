"""Burst detector that promotes same-subject floods into dynamic block rules.

Count first, then time span: once ``threshold_count`` messages with the same
normalized subject have been seen inside the look-back window, the span
between the 1st and Nth of them decides. A tight span is a synchronized
blast and gets a rule; a wide one is an organically recurring subject and
keeps being tracked.

A new rule is a ``contains`` subject rule on the normalized subject. Before
creating one, an existing enabled dynamic rule whose pattern contains (or is
contained in) the normalized subject is reused instead, so related bursts
collapse into one rule.
"""

import logging
import threading
from datetime import UTC, datetime, timedelta

from pydantic import ValidationError

from mailgate.audit.logger import DetectionAuditLog
from mailgate.cache.pattern_cache import DynamicPatternCache
from mailgate.cache.rule_cache import RuleCache
from mailgate.detector.normalize import DEFAULT_PREFIXES, fnv1a_32, normalize_subject
from mailgate.errors import InvalidConfigError
from mailgate.schemas.dynamic import DynamicDetectionConfig, TrackingResult
from mailgate.schemas.rules import (
    Decision,
    DecisionReason,
    FilterRule,
    MatchMode,
    MatchType,
    RuleCategory,
    RuleCreate,
)
from mailgate.store import RuleStore

logger = logging.getLogger(__name__)

# Stored (camelCase) key -> config field.
_CONFIG_KEYS: dict[str, str] = {
    "enabled": "enabled",
    "timeWindowMinutes": "time_window_minutes",
    "thresholdCount": "threshold_count",
    "timeSpanThresholdMinutes": "time_span_threshold_minutes",
    "expirationHours": "expiration_hours",
    "lastHitThresholdHours": "last_hit_threshold_hours",
}
_FIELD_TO_KEY = {field: key for key, field in _CONFIG_KEYS.items()}


class DynamicConfigService:
    """Read/write the detector config stored as key/value rows.

    Missing rows fall back to defaults; rows that fail to parse are logged
    and ignored.
    """

    def __init__(self, store: RuleStore) -> None:
        self._store = store

    def get(self) -> DynamicDetectionConfig:
        values: dict[str, object] = {}
        for key, raw in self._store.get_config_values().items():
            field = _CONFIG_KEYS.get(key)
            if field is None:
                continue
            values[field] = raw.lower() == "true" if field == "enabled" else raw
        try:
            return DynamicDetectionConfig.model_validate(values)
        except ValidationError:
            logger.warning("Stored dynamic config is invalid, using defaults", exc_info=True)
            return DynamicDetectionConfig()

    def set(self, **changes: object) -> DynamicDetectionConfig:
        """Merge *changes* into the current config, validate, and write it back.

        Raises:
            InvalidConfigError: Unknown field or out-of-range value. Nothing is written.
        """
        current = self.get().model_dump()
        try:
            merged = DynamicDetectionConfig.model_validate({**current, **changes})
        except ValidationError as exc:
            raise InvalidConfigError(str(exc)) from exc

        self._store.set_config_values(
            {
                _FIELD_TO_KEY[field]: (str(value).lower() if field == "enabled" else str(value))
                for field, value in merged.model_dump().items()
            }
        )
        logger.info("Dynamic detection config updated: %s", merged.model_dump())
        return merged


class DynamicRuleDetector:
    """Tracks subjects of unmatched mail and materializes dynamic rules.

    Usage::

        detector = DynamicRuleDetector(store, DynamicConfigService(store), rule_cache, pattern_cache)
        result = detector.track("FLASH SALE 50% OFF", received_at)
        if result.rule is not None:
            ...  # re-evaluate the message; the rule cache was invalidated
    """

    def __init__(
        self,
        store: RuleStore,
        config_service: DynamicConfigService,
        rule_cache: RuleCache,
        pattern_cache: DynamicPatternCache,
        *,
        audit_log: DetectionAuditLog | None = None,
        prefixes=DEFAULT_PREFIXES,
        lock_shards: int = 64,
    ) -> None:
        self._store = store
        self._config = config_service
        self._rule_cache = rule_cache
        self._pattern_cache = pattern_cache
        self._audit_log = audit_log
        self._prefixes = prefixes
        # Advisory only: narrows the window in which two handlers promote the
        # same burst. The containment check is what prevents duplicates.
        self._locks = [threading.Lock() for _ in range(lock_shards)]

    @staticmethod
    def should_track(decision: Decision) -> bool:
        """Only mail that no rule decided on is a burst candidate."""
        return decision.reason == DecisionReason.NONE

    def track(
        self,
        subject: str,
        received_at: datetime | None = None,
        *,
        record_reuse_hit: bool = True,
    ) -> TrackingResult:
        """Record *subject* and promote it to a dynamic rule if it is bursting.

        Args:
            subject: Raw subject line.
            received_at: Arrival time (naive = UTC; default now).
            record_reuse_hit: Advance a reused rule's last hit. Callers that
                re-evaluate the message afterwards record the hit themselves.

        Raises:
            sqlite3.Error: Store failures propagate; callers on the message
                path treat them as "no promotion".
        """
        config = self._config.get()
        if not config.enabled:
            return TrackingResult()

        received_at = received_at or datetime.now(UTC)
        if received_at.tzinfo is None:
            received_at = received_at.replace(tzinfo=UTC)

        normalized = normalize_subject(subject, self._prefixes)
        if not normalized:
            # A blank subject would become a rule matching every message.
            logger.debug("Skipping blank subject")
            return TrackingResult()
        key = fnv1a_32(normalized.lower().encode("utf-8"))
        subject_hash = f"{key:08x}"

        with self._locks[key % len(self._locks)]:
            return self._track_locked(
                subject, normalized, subject_hash, received_at, config, record_reuse_hit
            )

    def _track_locked(
        self,
        subject: str,
        normalized: str,
        subject_hash: str,
        received_at: datetime,
        config: DynamicDetectionConfig,
        record_reuse_hit: bool,
    ) -> TrackingResult:
        self._store.insert_tracker_entry(subject_hash, subject, received_at)

        window_start = received_at - timedelta(minutes=config.time_window_minutes)
        count = self._store.count_tracker_entries(subject_hash, window_start, received_at)
        result = TrackingResult(
            subject_hash=subject_hash, normalized_subject=normalized, count=count
        )
        if count < config.threshold_count:
            return result

        timestamps = self._store.earliest_tracker_timestamps(
            subject_hash, window_start, received_at, config.threshold_count
        )
        if len(timestamps) < config.threshold_count:
            return result

        first = timestamps[0]
        span_minutes = (timestamps[config.threshold_count - 1] - first).total_seconds() / 60
        if span_minutes > config.time_span_threshold_minutes:
            logger.debug(
                "Subject %s reached %d in window but span %.1fm > %.1fm; still tracking",
                subject_hash,
                count,
                span_minutes,
                config.time_span_threshold_minutes,
            )
            return result

        existing = self._find_covering_rule(normalized)
        if existing is not None:
            if record_reuse_hit:
                self._store.touch_last_hit(existing.id, received_at)
            logger.info(
                "Burst on %r already covered by dynamic rule %s (%r)",
                normalized,
                existing.id[:8],
                existing.pattern,
            )
            if self._audit_log is not None:
                self._audit_log.log_rule_reused(existing, subject_hash)
            result.rule = existing
            return result

        rule = self._store.create_rule(
            RuleCreate(
                category=RuleCategory.DYNAMIC,
                match_type=MatchType.SUBJECT,
                match_mode=MatchMode.CONTAINS,
                pattern=normalized,
            ),
            now=received_at,
        )
        self._rule_cache.invalidate_all()
        self._pattern_cache.add(rule.pattern)
        self._store.delete_tracker_entries(subject_hash, window_start)

        result.rule = rule
        result.created = True
        result.detection_latency_seconds = (received_at - first).total_seconds()
        result.forwarded_before_block = count - 1

        logger.info(
            "Dynamic rule %s created for %r: latency=%.1fs forwarded_before_block=%d",
            rule.id[:8],
            rule.pattern,
            result.detection_latency_seconds,
            result.forwarded_before_block,
        )
        if self._audit_log is not None:
            self._audit_log.log_rule_created(rule, result)
        return result

    def _find_covering_rule(self, normalized: str) -> FilterRule | None:
        if not self._pattern_cache.loaded:
            self._pattern_cache.load(self._store.dynamic_patterns())
        if not self._pattern_cache.has_matching_pattern(normalized):
            return None
        return self._store.find_covering_dynamic_rule(normalized)

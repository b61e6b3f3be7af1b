"""Periodic cleanup of stale dynamic rules and old subject-tracker rows.

Runs independently of message traffic. Cleanup is best-effort: a rule that
fails to delete is reported and retried on the next tick.
"""

import asyncio
import logging
from datetime import UTC, datetime, timedelta

from mailgate.audit.logger import DetectionAuditLog
from mailgate.cache.pattern_cache import DynamicPatternCache
from mailgate.cache.rule_cache import RuleCache
from mailgate.detector.dynamic import DynamicConfigService
from mailgate.schemas.dynamic import SweepReport
from mailgate.store import RuleStore

logger = logging.getLogger(__name__)


class ExpirationSweeper:
    """Deletes dynamic rules that stopped being useful.

    A dynamic rule expires when it was never hit and is older than
    ``expiration_hours``, or when its last hit is older than
    ``last_hit_threshold_hours``.
    """

    def __init__(
        self,
        store: RuleStore,
        config_service: DynamicConfigService,
        rule_cache: RuleCache,
        pattern_cache: DynamicPatternCache,
        *,
        audit_log: DetectionAuditLog | None = None,
        tracker_retention_minutes: int | None = None,
    ) -> None:
        self._store = store
        self._config = config_service
        self._rule_cache = rule_cache
        self._pattern_cache = pattern_cache
        self._audit_log = audit_log
        self._tracker_retention_minutes = tracker_retention_minutes

    def sweep(self, now: datetime | None = None) -> SweepReport:
        """Run one cleanup pass."""
        now = now or datetime.now(UTC)
        config = self._config.get()
        report = SweepReport(timestamp=now)

        if config.enabled:
            deleted, failed = self._store.delete_expired_rules(
                created_cutoff=now - timedelta(hours=config.expiration_hours),
                last_hit_cutoff=now - timedelta(hours=config.last_hit_threshold_hours),
            )
            if deleted:
                # Reload rather than remove: another enabled rule may share a pattern.
                self._pattern_cache.load(self._store.dynamic_patterns())
                self._rule_cache.invalidate_all()
            report.deleted_rule_ids = [r.id for r in deleted]
            report.failed_rule_ids = failed
        else:
            report.skipped_rules = True

        # Tolerate clock skew between writers: keep twice the window by default.
        retention = self._tracker_retention_minutes or config.time_window_minutes * 2
        report.tracker_rows_deleted = self._store.delete_tracker_entries_before(
            now - timedelta(minutes=retention)
        )

        logger.info(
            "Sweep: deleted %d dynamic rule(s) %s, %d failed, %d tracker row(s) removed",
            len(report.deleted_rule_ids),
            report.deleted_rule_ids,
            len(report.failed_rule_ids),
            report.tracker_rows_deleted,
        )
        if self._audit_log is not None:
            self._audit_log.log_sweep(report)
        return report

    async def run(
        self,
        interval_seconds: float,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Sweep every *interval_seconds* until *stop_event* is set.

        Each pass runs in a worker thread; a failed pass is logged and the
        loop carries on.
        """
        stop_event = stop_event or asyncio.Event()
        while not stop_event.is_set():
            try:
                await asyncio.to_thread(self.sweep)
            except Exception:
                logger.exception("Expiration sweep failed; retrying next tick")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except TimeoutError:
                pass

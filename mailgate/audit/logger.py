"""Append-only audit log for dynamic-rule promotions and expiration sweeps.

Writes DetectionAuditEntry records as JSON Lines (one JSON object per line).
This is the structured observability channel for the detector and sweeper;
ordinary diagnostics go through ``logging``.
"""

import logging
import threading
from datetime import UTC, datetime
from pathlib import Path

from mailgate.schemas.dynamic import (
    AuditEvent,
    DetectionAuditEntry,
    SweepReport,
    TrackingResult,
)
from mailgate.schemas.rules import FilterRule

logger = logging.getLogger(__name__)


class DetectionAuditLog:
    """Append-only JSONL audit log.

    Usage::

        audit = DetectionAuditLog("/path/to/detection_audit.jsonl")
        audit.log_rule_created(rule, tracking_result)

        entries = audit.read_entries(since=some_datetime)
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def log(self, entry: DetectionAuditEntry) -> None:
        """Append a single audit entry to the log file."""
        line = entry.model_dump_json() + "\n"
        with self._lock, self._path.open("a") as f:
            f.write(line)
        logger.debug("Detection audit: %s rule=%s", entry.event, entry.rule_id)

    def log_rule_created(self, rule: FilterRule, result: TrackingResult) -> DetectionAuditEntry:
        """Log a newly materialized dynamic rule with its detection metrics."""
        entry = DetectionAuditEntry(
            timestamp=datetime.now(UTC),
            event="rule_created",
            rule_id=rule.id,
            pattern=rule.pattern,
            subject_hash=result.subject_hash,
            detection_latency_seconds=result.detection_latency_seconds,
            forwarded_before_block=result.forwarded_before_block,
        )
        self.log(entry)
        return entry

    def log_rule_reused(self, rule: FilterRule, subject_hash: str) -> DetectionAuditEntry:
        """Log a burst that an existing dynamic rule already covers."""
        entry = DetectionAuditEntry(
            timestamp=datetime.now(UTC),
            event="rule_reused",
            rule_id=rule.id,
            pattern=rule.pattern,
            subject_hash=subject_hash,
        )
        self.log(entry)
        return entry

    def log_sweep(self, report: SweepReport) -> DetectionAuditEntry:
        entry = DetectionAuditEntry(
            timestamp=report.timestamp,
            event="sweep",
            deleted_rule_ids=report.deleted_rule_ids,
            failed_rule_ids=report.failed_rule_ids,
            tracker_rows_deleted=report.tracker_rows_deleted,
        )
        self.log(entry)
        return entry

    def read_entries(
        self,
        *,
        since: datetime | None = None,
        event: AuditEvent | None = None,
        limit: int | None = None,
    ) -> list[DetectionAuditEntry]:
        """Read audit entries with optional filtering.

        Args:
            since: Only return entries after this timestamp.
            event: Only return entries of this event type.
            limit: Maximum number of entries to return (newest after filtering).

        Returns:
            List of DetectionAuditEntry objects, oldest first.
        """
        if not self._path.exists():
            return []

        entries: list[DetectionAuditEntry] = []
        with self._path.open() as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                entry = DetectionAuditEntry.model_validate_json(line)
                if since and entry.timestamp <= since:
                    continue
                if event and entry.event != event:
                    continue
                entries.append(entry)

        if limit is not None:
            entries = entries[-limit:]

        return entries

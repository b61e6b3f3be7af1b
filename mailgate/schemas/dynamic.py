"""Schemas for the dynamic (burst-detected) rule subsystem.

Covers detector configuration, subject tracking, detection results,
expiration sweeps, and the JSONL audit records both emit.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from mailgate.schemas.rules import FilterRule

# --- Config ---


class DynamicDetectionConfig(BaseModel):
    """Process-wide detector settings, re-read before every detection pass."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    enabled: bool = True
    time_window_minutes: int = Field(default=60, ge=1, le=7 * 24 * 60)
    threshold_count: int = Field(default=50, ge=1, le=100_000)
    time_span_threshold_minutes: float = Field(default=3, ge=0)
    expiration_hours: int = Field(default=48, ge=1)
    last_hit_threshold_hours: int = Field(default=72, ge=1)


# --- Tracking ---


class SubjectTrackerEntry(BaseModel):
    """One row of the append-only subject log."""

    subject_hash: str
    subject: str
    received_at: datetime


class TrackingResult(BaseModel):
    """Outcome of feeding one subject to the detector."""

    subject_hash: str = ""
    normalized_subject: str = ""
    count: int = 0
    rule: FilterRule | None = None
    created: bool = False  # False with a rule means an existing rule was reused
    detection_latency_seconds: float | None = None
    forwarded_before_block: int | None = None


class SubjectCount(BaseModel):
    subject_hash: str
    subject: str
    count: int


class TrackerStats(BaseModel):
    total_records: int
    oldest_record: datetime | None = None
    newest_record: datetime | None = None


# --- Sweeping ---


class SweepReport(BaseModel):
    """Result of one expiration sweep pass."""

    timestamp: datetime
    deleted_rule_ids: list[str] = Field(default_factory=list)
    failed_rule_ids: list[str] = Field(default_factory=list)
    tracker_rows_deleted: int = 0
    skipped_rules: bool = False  # detection disabled; rule expiry not evaluated


# --- Audit ---

AuditEvent = Literal["rule_created", "rule_reused", "sweep"]


class DetectionAuditEntry(BaseModel):
    """A structured observability record for promotions and sweeps."""

    timestamp: datetime
    event: AuditEvent
    rule_id: str | None = None
    pattern: str | None = None
    subject_hash: str | None = None
    detection_latency_seconds: float | None = None
    forwarded_before_block: int | None = None
    deleted_rule_ids: list[str] = Field(default_factory=list)
    failed_rule_ids: list[str] = Field(default_factory=list)
    tracker_rows_deleted: int | None = None

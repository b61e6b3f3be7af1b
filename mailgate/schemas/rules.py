"""Schemas for filter rules and per-message decisions.

A rule inspects exactly one header-derived field of an inbound message
(sender, recipient domain, or subject) with one match mode. Decisions are
what the evaluator hands back to the mail-transport layer.
"""

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class RuleCategory(StrEnum):
    """Rule category, listed in evaluation priority order."""

    WHITELIST = "whitelist"
    BLACKLIST = "blacklist"  # operator-authored ("manual") block rules
    DYNAMIC = "dynamic"


# Evaluation order; first category with a matching rule decides.
CATEGORY_PRIORITY: tuple[RuleCategory, ...] = (
    RuleCategory.WHITELIST,
    RuleCategory.BLACKLIST,
    RuleCategory.DYNAMIC,
)


class MatchType(StrEnum):
    """Which message field a rule inspects."""

    SENDER = "sender"
    RECIPIENT_DOMAIN = "recipient_domain"
    SUBJECT = "subject"


class MatchMode(StrEnum):
    """How the pattern is compared against the field."""

    EXACT = "exact"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    REGEX = "regex"


class FilterRule(BaseModel):
    """A persisted filter rule."""

    id: str
    category: RuleCategory
    match_type: MatchType
    match_mode: MatchMode
    pattern: str
    scope: str | None = None  # tenant/worker id; None = global
    enabled: bool = True
    created_at: datetime
    updated_at: datetime
    last_hit_at: datetime | None = None
    hit_count: int = Field(default=0, ge=0)


class RuleCreate(BaseModel):
    """Fields accepted when creating a rule."""

    category: RuleCategory
    match_type: MatchType
    match_mode: MatchMode
    pattern: str
    scope: str | None = None
    enabled: bool = True


class RuleUpdate(BaseModel):
    """Partial update; only fields that are set are written."""

    category: RuleCategory | None = None
    match_type: MatchType | None = None
    match_mode: MatchMode | None = None
    pattern: str | None = None
    scope: str | None = None
    enabled: bool | None = None


# --- Message intake ---


class InboundMessage(BaseModel):
    """Header fields handed over by the mail-transport collaborator."""

    sender: str
    recipient_address: str
    subject: str = ""
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    scope: str | None = None


class DecisionAction(StrEnum):
    FORWARD = "forward"
    DROP = "drop"


class DecisionReason(StrEnum):
    """Why a decision was reached."""

    WHITELIST = "whitelist"
    MANUAL = "manual"
    DYNAMIC = "dynamic"
    NONE = "none"  # no rule matched; candidate for dynamic detection
    ERROR = "error"  # rules could not be loaded; fail open


REASON_BY_CATEGORY: dict[RuleCategory, DecisionReason] = {
    RuleCategory.WHITELIST: DecisionReason.WHITELIST,
    RuleCategory.BLACKLIST: DecisionReason.MANUAL,
    RuleCategory.DYNAMIC: DecisionReason.DYNAMIC,
}


class Decision(BaseModel):
    """Forward-or-drop verdict for one message."""

    action: DecisionAction
    reason: DecisionReason
    matched_rule: FilterRule | None = None
    detail: str = ""
    # Populated only when this message triggered a dynamic rule.
    dynamic_rule_created: FilterRule | None = None
    detection_latency_seconds: float | None = None
    forwarded_before_block: int | None = None

    @property
    def dropped(self) -> bool:
        return self.action == DecisionAction.DROP

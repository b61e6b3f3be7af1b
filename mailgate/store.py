"""SQLite-backed store for filter rules, the subject tracker, and detector config.

The store is the single source of truth; the in-memory caches are
projections rebuilt from it. Uses stdlib sqlite3 with one connection shared
across threads behind a lock, so message handlers, the sweeper and admin
commands can use the same instance.
"""

import logging
import sqlite3
import threading
import uuid
from datetime import UTC, datetime
from pathlib import Path

from mailgate.schemas.dynamic import SubjectCount, SubjectTrackerEntry, TrackerStats
from mailgate.schemas.rules import (
    FilterRule,
    MatchMode,
    MatchType,
    RuleCategory,
    RuleCreate,
    RuleUpdate,
)

logger = logging.getLogger(__name__)

_CREATE_RULES = """
CREATE TABLE IF NOT EXISTS filter_rules (
    id          TEXT PRIMARY KEY,
    scope       TEXT,
    category    TEXT NOT NULL CHECK(category IN ('whitelist', 'blacklist', 'dynamic')),
    match_type  TEXT NOT NULL CHECK(match_type IN ('sender', 'recipient_domain', 'subject')),
    match_mode  TEXT NOT NULL
                CHECK(match_mode IN ('exact', 'contains', 'startsWith', 'endsWith', 'regex')),
    pattern     TEXT NOT NULL,
    enabled     INTEGER NOT NULL DEFAULT 1,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL,
    last_hit_at TEXT
)
"""

_CREATE_RULE_STATS = """
CREATE TABLE IF NOT EXISTS rule_stats (
    rule_id      TEXT PRIMARY KEY REFERENCES filter_rules(id) ON DELETE CASCADE,
    hit_count    INTEGER NOT NULL DEFAULT 0,
    last_updated TEXT NOT NULL
)
"""

_CREATE_TRACKER = """
CREATE TABLE IF NOT EXISTS subject_tracker (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    subject_hash TEXT NOT NULL,
    subject      TEXT NOT NULL,
    received_at  TEXT NOT NULL
)
"""

_CREATE_CONFIG = """
CREATE TABLE IF NOT EXISTS dynamic_config (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
)
"""

_CREATE_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_rules_category ON filter_rules(category, enabled)",
    "CREATE INDEX IF NOT EXISTS idx_rules_scope ON filter_rules(scope)",
    "CREATE INDEX IF NOT EXISTS idx_tracker_hash_time ON subject_tracker(subject_hash, received_at)",
    "CREATE INDEX IF NOT EXISTS idx_tracker_received ON subject_tracker(received_at)",
)

_SELECT_RULES = """
SELECT r.*, COALESCE(s.hit_count, 0) AS hit_count
FROM filter_rules r
LEFT JOIN rule_stats s ON s.rule_id = r.id
"""

_INSERT_RULE = """
INSERT INTO filter_rules
    (id, scope, category, match_type, match_mode, pattern, enabled, created_at, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_INSERT_STATS = """
INSERT INTO rule_stats (rule_id, hit_count, last_updated) VALUES (?, 0, ?)
"""

_SELECT_DUPLICATE = (
    _SELECT_RULES
    + """
WHERE (r.scope = ? OR (r.scope IS NULL AND ? IS NULL))
  AND r.category = ? AND r.match_type = ? AND r.match_mode = ? AND r.pattern = ?
LIMIT 1
"""
)

# last_hit_at only moves forward, even if hits are recorded out of order.
_TOUCH_LAST_HIT = """
UPDATE filter_rules SET last_hit_at = ?
WHERE id = ? AND (last_hit_at IS NULL OR last_hit_at < ?)
"""

_BUMP_HIT_COUNT = """
UPDATE rule_stats SET hit_count = hit_count + 1, last_updated = ? WHERE rule_id = ?
"""

_SELECT_EXPIRED = (
    _SELECT_RULES
    + """
WHERE r.category = 'dynamic'
  AND (
    (r.last_hit_at IS NULL AND r.created_at < ?)
    OR (r.last_hit_at IS NOT NULL AND r.last_hit_at < ?)
  )
ORDER BY r.created_at ASC
"""
)

_INSERT_TRACKER = """
INSERT INTO subject_tracker (subject_hash, subject, received_at) VALUES (?, ?, ?)
"""

_COUNT_TRACKER = """
SELECT COUNT(*) FROM subject_tracker
WHERE subject_hash = ? AND received_at >= ? AND received_at <= ?
"""

_SELECT_EARLIEST = """
SELECT received_at FROM subject_tracker
WHERE subject_hash = ? AND received_at >= ? AND received_at <= ?
ORDER BY received_at ASC
LIMIT ?
"""

_SELECT_SUBJECT_COUNTS = """
SELECT subject_hash, MIN(subject) AS subject, COUNT(*) AS count
FROM subject_tracker
WHERE received_at >= ?
GROUP BY subject_hash
ORDER BY count DESC
LIMIT ?
"""

_UPSERT_CONFIG = """
INSERT INTO dynamic_config (key, value) VALUES (?, ?)
ON CONFLICT(key) DO UPDATE SET value = excluded.value
"""


def to_timestamp(dt: datetime) -> str:
    """Serialize a datetime as fixed-width UTC ISO-8601 so string order == time order.

    Naive datetimes are taken to be UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_rule(row: sqlite3.Row) -> FilterRule:
    """Convert a database row to a FilterRule."""
    return FilterRule(
        id=row["id"],
        scope=row["scope"],
        category=RuleCategory(row["category"]),
        match_type=MatchType(row["match_type"]),
        match_mode=MatchMode(row["match_mode"]),
        pattern=row["pattern"],
        enabled=bool(row["enabled"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        last_hit_at=_parse(row["last_hit_at"]),
        hit_count=row["hit_count"],
    )


class RuleStore:
    """SQLite store behind the rule engine.

    Usage::

        with RuleStore("data/mailgate.db") as store:
            rule = store.create_rule(RuleCreate(
                category="blacklist", match_type="sender",
                match_mode="endsWith", pattern="@spam.example",
            ))
            rules = store.find_rules_by_scope(None)
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.execute(_CREATE_RULES)
        self._conn.execute(_CREATE_RULE_STATS)
        self._conn.execute(_CREATE_TRACKER)
        self._conn.execute(_CREATE_CONFIG)
        for stmt in _CREATE_INDEXES:
            self._conn.execute(stmt)
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "RuleStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def create_rule(self, data: RuleCreate, *, now: datetime | None = None) -> FilterRule:
        """Insert a rule and its stats row in one transaction.

        Does not check for duplicates; see ``find_duplicate``.
        """
        rule_id = str(uuid.uuid4())
        ts = to_timestamp(now or datetime.now(UTC))
        with self._lock, self._conn:
            self._conn.execute(
                _INSERT_RULE,
                (
                    rule_id,
                    data.scope,
                    data.category.value,
                    data.match_type.value,
                    data.match_mode.value,
                    data.pattern,
                    int(data.enabled),
                    ts,
                    ts,
                ),
            )
            self._conn.execute(_INSERT_STATS, (rule_id, ts))

        logger.info(
            "Created %s rule %s (%s %s %r)",
            data.category.value,
            rule_id[:8],
            data.match_type.value,
            data.match_mode.value,
            data.pattern,
        )
        rule = self.get_rule(rule_id)
        if rule is None:
            raise RuntimeError(f"Rule {rule_id} missing right after insert")
        return rule

    def get_rule(self, rule_id: str) -> FilterRule | None:
        """Fetch a single rule by id."""
        with self._lock:
            row = self._conn.execute(_SELECT_RULES + "WHERE r.id = ?", (rule_id,)).fetchone()
        return _row_to_rule(row) if row is not None else None

    def find_duplicate(self, data: RuleCreate) -> FilterRule | None:
        """Return an existing rule with identical category/type/mode/pattern/scope."""
        with self._lock:
            row = self._conn.execute(
                _SELECT_DUPLICATE,
                (
                    data.scope,
                    data.scope,
                    data.category.value,
                    data.match_type.value,
                    data.match_mode.value,
                    data.pattern,
                ),
            ).fetchone()
        return _row_to_rule(row) if row is not None else None

    def list_rules(
        self,
        *,
        category: RuleCategory | None = None,
        scope: str | None = None,
    ) -> list[FilterRule]:
        """List rules (enabled or not), oldest first.

        Args:
            category: Only rules of this category.
            scope: Only rules with exactly this scope; None lists every scope.
        """
        query = _SELECT_RULES + "WHERE 1=1"
        params: list[str] = []
        if category is not None:
            query += " AND r.category = ?"
            params.append(category.value)
        if scope is not None:
            query += " AND r.scope = ?"
            params.append(scope)
        query += " ORDER BY r.created_at ASC, r.id ASC"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_row_to_rule(r) for r in rows]

    def find_rules_by_scope(
        self,
        scope: str | None,
        category: RuleCategory | None = None,
        *,
        enabled_only: bool = True,
    ) -> list[FilterRule]:
        """Rules that apply to *scope*: the scope's own rules plus global ones.

        With ``scope=None`` only global rules are returned.
        """
        if scope is None:
            query = _SELECT_RULES + "WHERE r.scope IS NULL"
            params: list[str] = []
        else:
            query = _SELECT_RULES + "WHERE (r.scope = ? OR r.scope IS NULL)"
            params = [scope]
        if enabled_only:
            query += " AND r.enabled = 1"
        if category is not None:
            query += " AND r.category = ?"
            params.append(category.value)
        query += " ORDER BY r.created_at ASC, r.id ASC"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_row_to_rule(r) for r in rows]

    def update_rule(
        self,
        rule_id: str,
        changes: RuleUpdate,
        *,
        now: datetime | None = None,
    ) -> FilterRule | None:
        """Apply the fields set on *changes*. Returns None if the rule doesn't exist."""
        fields = changes.model_dump(exclude_unset=True)
        columns = ["updated_at = ?"]
        params: list[object] = [to_timestamp(now or datetime.now(UTC))]
        for name in ("category", "match_type", "match_mode"):
            if fields.get(name) is not None:
                columns.append(f"{name} = ?")
                params.append(str(fields[name]))
        if fields.get("pattern") is not None:
            columns.append("pattern = ?")
            params.append(fields["pattern"])
        if "scope" in fields:
            columns.append("scope = ?")
            params.append(fields["scope"])
        if fields.get("enabled") is not None:
            columns.append("enabled = ?")
            params.append(int(fields["enabled"]))
        params.append(rule_id)

        with self._lock, self._conn:
            cursor = self._conn.execute(
                f"UPDATE filter_rules SET {', '.join(columns)} WHERE id = ?", params
            )
        if cursor.rowcount == 0:
            return None
        return self.get_rule(rule_id)

    def delete_rule(self, rule_id: str) -> bool:
        """Delete a rule and its stats row atomically. Returns True if it existed."""
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM rule_stats WHERE rule_id = ?", (rule_id,))
            cursor = self._conn.execute("DELETE FROM filter_rules WHERE id = ?", (rule_id,))
        return cursor.rowcount > 0

    def touch_last_hit(self, rule_id: str, at: datetime | None = None) -> None:
        """Record that *rule_id* decided an evaluation."""
        ts = to_timestamp(at or datetime.now(UTC))
        with self._lock, self._conn:
            self._conn.execute(_TOUCH_LAST_HIT, (ts, rule_id, ts))
            self._conn.execute(_BUMP_HIT_COUNT, (ts, rule_id))

    def count_rules(self, category: RuleCategory | None = None) -> int:
        query = "SELECT COUNT(*) FROM filter_rules"
        params: tuple[str, ...] = ()
        if category is not None:
            query += " WHERE category = ?"
            params = (category.value,)
        with self._lock:
            return self._conn.execute(query, params).fetchone()[0]

    # ------------------------------------------------------------------
    # Dynamic rules
    # ------------------------------------------------------------------

    def dynamic_patterns(self) -> list[str]:
        """Patterns of enabled global dynamic rules (pattern cache warm-up).

        Only global rules can cover a burst; see ``find_covering_dynamic_rule``.
        """
        with self._lock:
            rows = self._conn.execute(
                "SELECT pattern FROM filter_rules"
                " WHERE category = 'dynamic' AND enabled = 1 AND scope IS NULL"
            ).fetchall()
        return [r["pattern"] for r in rows]

    def find_covering_dynamic_rule(self, subject: str) -> FilterRule | None:
        """Find an enabled dynamic subject rule whose pattern contains, or is
        contained in, *subject* (case-insensitive). Exact matches win.

        Only global rules count: detected bursts are global, and a scoped rule
        does not block mail outside its scope.
        """
        subject_lower = subject.lower()
        with self._lock:
            rows = self._conn.execute(
                _SELECT_RULES
                + "WHERE r.category = 'dynamic' AND r.match_type = 'subject' AND r.enabled = 1"
                " AND r.scope IS NULL"
                " ORDER BY r.created_at ASC, r.id ASC"
            ).fetchall()
        rules = [_row_to_rule(r) for r in rows]
        for rule in rules:
            if rule.pattern.lower() == subject_lower:
                return rule
        for rule in rules:
            pattern_lower = rule.pattern.lower()
            if pattern_lower in subject_lower or subject_lower in pattern_lower:
                return rule
        return None

    def delete_expired_rules(
        self,
        created_cutoff: datetime,
        last_hit_cutoff: datetime,
    ) -> tuple[list[FilterRule], list[str]]:
        """Delete dynamic rules that were never hit since *created_cutoff*, or
        whose last hit is older than *last_hit_cutoff*.

        Each rule is deleted on its own; a failure is logged and the rest
        continue.

        Returns:
            ``(deleted_rules, failed_rule_ids)``
        """
        with self._lock:
            rows = self._conn.execute(
                _SELECT_EXPIRED,
                (to_timestamp(created_cutoff), to_timestamp(last_hit_cutoff)),
            ).fetchall()
        candidates = [_row_to_rule(r) for r in rows]

        deleted: list[FilterRule] = []
        failed: list[str] = []
        for rule in candidates:
            try:
                if self.delete_rule(rule.id):
                    deleted.append(rule)
            except sqlite3.Error:
                logger.exception("Failed to delete expired dynamic rule %s", rule.id)
                failed.append(rule.id)
        return deleted, failed

    # ------------------------------------------------------------------
    # Subject tracker
    # ------------------------------------------------------------------

    def insert_tracker_entry(self, subject_hash: str, subject: str, received_at: datetime) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                _INSERT_TRACKER, (subject_hash, subject, to_timestamp(received_at))
            )

    def count_tracker_entries(
        self, subject_hash: str, since: datetime, until: datetime
    ) -> int:
        """Count entries for *subject_hash* with ``since <= received_at <= until``."""
        with self._lock:
            row = self._conn.execute(
                _COUNT_TRACKER,
                (subject_hash, to_timestamp(since), to_timestamp(until)),
            ).fetchone()
        return row[0]

    def earliest_tracker_timestamps(
        self,
        subject_hash: str,
        since: datetime,
        until: datetime,
        limit: int,
    ) -> list[datetime]:
        """The *limit* earliest arrival times for *subject_hash* in the window."""
        with self._lock:
            rows = self._conn.execute(
                _SELECT_EARLIEST,
                (subject_hash, to_timestamp(since), to_timestamp(until), limit),
            ).fetchall()
        return [datetime.fromisoformat(r["received_at"]) for r in rows]

    def delete_tracker_entries(self, subject_hash: str, older_than: datetime) -> int:
        """Delete entries for one hash older than *older_than*. Returns rows deleted."""
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "DELETE FROM subject_tracker WHERE subject_hash = ? AND received_at < ?",
                (subject_hash, to_timestamp(older_than)),
            )
        return cursor.rowcount

    def delete_tracker_entries_before(self, cutoff: datetime) -> int:
        """Delete all tracker entries older than *cutoff*. Returns rows deleted."""
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "DELETE FROM subject_tracker WHERE received_at < ?", (to_timestamp(cutoff),)
            )
        return cursor.rowcount

    def tracker_entries(
        self, subject_hash: str, since: datetime, limit: int = 100
    ) -> list[SubjectTrackerEntry]:
        """Most recent raw tracker rows for one hash, newest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT subject_hash, subject, received_at FROM subject_tracker"
                " WHERE subject_hash = ? AND received_at >= ?"
                " ORDER BY received_at DESC LIMIT ?",
                (subject_hash, to_timestamp(since), limit),
            ).fetchall()
        return [
            SubjectTrackerEntry(
                subject_hash=r["subject_hash"],
                subject=r["subject"],
                received_at=datetime.fromisoformat(r["received_at"]),
            )
            for r in rows
        ]

    def subject_counts(self, since: datetime, limit: int = 100) -> list[SubjectCount]:
        """Largest subject groups seen since *since*."""
        with self._lock:
            rows = self._conn.execute(
                _SELECT_SUBJECT_COUNTS, (to_timestamp(since), limit)
            ).fetchall()
        return [
            SubjectCount(subject_hash=r["subject_hash"], subject=r["subject"], count=r["count"])
            for r in rows
        ]

    def tracker_stats(self) -> TrackerStats:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS total, MIN(received_at) AS oldest, MAX(received_at) AS newest"
                " FROM subject_tracker"
            ).fetchone()
        return TrackerStats(
            total_records=row["total"],
            oldest_record=_parse(row["oldest"]),
            newest_record=_parse(row["newest"]),
        )

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    def get_config_values(self) -> dict[str, str]:
        with self._lock:
            rows = self._conn.execute("SELECT key, value FROM dynamic_config").fetchall()
        return {r["key"]: r["value"] for r in rows}

    def set_config_values(self, values: dict[str, str]) -> None:
        """Upsert all *values* in one transaction."""
        with self._lock, self._conn:
            self._conn.executemany(_UPSERT_CONFIG, list(values.items()))

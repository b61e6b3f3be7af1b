"""Tests for the dynamic rule expiration sweeper."""

import asyncio
import sqlite3
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from mailgate.audit.logger import DetectionAuditLog
from mailgate.detector.dynamic import DynamicConfigService, DynamicRuleDetector
from mailgate.schemas.rules import RuleCategory, RuleCreate
from mailgate.sweeper import ExpirationSweeper

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)


def _dynamic(store, pattern, created_hours_ago, last_hit_hours_ago=None):
    rule = store.create_rule(
        RuleCreate(
            category="dynamic", match_type="subject", match_mode="contains", pattern=pattern
        ),
        now=NOW - timedelta(hours=created_hours_ago),
    )
    if last_hit_hours_ago is not None:
        store.touch_last_hit(rule.id, NOW - timedelta(hours=last_hit_hours_ago))
    return rule


@pytest.fixture()
def audit_log(tmp_path):
    return DetectionAuditLog(tmp_path / "detection_audit.jsonl")


@pytest.fixture()
def sweeper(store, rule_cache, pattern_cache, audit_log):
    return ExpirationSweeper(
        store, DynamicConfigService(store), rule_cache, pattern_cache, audit_log=audit_log
    )


class TestSweep:
    def test_expires_never_hit_and_stale_rules(self, store, sweeper, pattern_cache):
        old = _dynamic(store, "never hit", created_hours_ago=49)
        young = _dynamic(store, "young", created_hours_ago=2)
        stale = _dynamic(store, "stale", created_hours_ago=200, last_hit_hours_ago=73)
        active = _dynamic(store, "active", created_hours_ago=200, last_hit_hours_ago=1)
        pattern_cache.load(store.dynamic_patterns())

        report = sweeper.sweep(NOW)

        assert set(report.deleted_rule_ids) == {old.id, stale.id}
        assert report.failed_rule_ids == []
        assert store.get_rule(young.id) is not None
        assert store.get_rule(active.id) is not None
        assert not pattern_cache.has("never hit")
        assert pattern_cache.has("active")

    def test_shared_pattern_survives_expiry_of_one_rule(
        self, store, sweeper, rule_cache, pattern_cache
    ):
        _dynamic(store, "Weekly deal inside", created_hours_ago=100)
        fresh = _dynamic(store, "Weekly deal inside", created_hours_ago=1)
        pattern_cache.load(store.dynamic_patterns())

        sweeper.sweep(NOW)
        assert pattern_cache.has("Weekly deal inside")

        config = DynamicConfigService(store)
        config.set(threshold_count=3, time_window_minutes=60, time_span_threshold_minutes=5)
        detector = DynamicRuleDetector(store, config, rule_cache, pattern_cache)
        for minutes in (0, 1, 2):
            result = detector.track("Weekly deal", NOW + timedelta(minutes=minutes))

        assert result.created is False
        assert result.rule.id == fresh.id
        assert store.count_rules(RuleCategory.DYNAMIC) == 1

    def test_manual_rules_never_expire(self, store, sweeper):
        manual = store.create_rule(
            RuleCreate(category="blacklist", match_type="sender", match_mode="exact",
                       pattern="x@y.example"),
            now=NOW - timedelta(days=365),
        )
        sweeper.sweep(NOW)
        assert store.get_rule(manual.id) is not None

    def test_rule_cache_invalidated(self, store, sweeper, rule_cache):
        _dynamic(store, "gone", created_hours_ago=49)
        assert len(rule_cache.get(None)) == 1
        sweeper.sweep(NOW)
        assert len(rule_cache.get(None)) == 0

    def test_tracker_pruned_to_twice_window(self, store, sweeper):
        store.insert_tracker_entry("h", "s", NOW - timedelta(minutes=121))
        store.insert_tracker_entry("h", "s", NOW - timedelta(minutes=119))
        report = sweeper.sweep(NOW)
        assert report.tracker_rows_deleted == 1
        assert store.tracker_stats().total_records == 1

    def test_explicit_tracker_retention(self, store, rule_cache, pattern_cache):
        sweeper = ExpirationSweeper(
            store, DynamicConfigService(store), rule_cache, pattern_cache,
            tracker_retention_minutes=10,
        )
        store.insert_tracker_entry("h", "s", NOW - timedelta(minutes=11))
        assert sweeper.sweep(NOW).tracker_rows_deleted == 1

    def test_disabled_skips_rules_but_prunes_tracker(self, store, sweeper):
        DynamicConfigService(store).set(enabled=False)
        old = _dynamic(store, "never hit", created_hours_ago=49)
        store.insert_tracker_entry("h", "s", NOW - timedelta(days=1))
        report = sweeper.sweep(NOW)
        assert report.skipped_rules is True
        assert report.deleted_rule_ids == []
        assert report.tracker_rows_deleted == 1
        assert store.get_rule(old.id) is not None

    def test_sweep_is_audited(self, store, sweeper, audit_log):
        old = _dynamic(store, "never hit", created_hours_ago=49)
        sweeper.sweep(NOW)
        entries = audit_log.read_entries(event="sweep")
        assert len(entries) == 1
        assert entries[0].deleted_rule_ids == [old.id]

    def test_failed_delete_is_reported(self, store, rule_cache, pattern_cache):
        rule = _dynamic(store, "stuck", created_hours_ago=49)
        broken = MagicMock(wraps=store)
        broken.delete_expired_rules.return_value = ([], [rule.id])
        sweeper = ExpirationSweeper(broken, DynamicConfigService(store), rule_cache, pattern_cache)
        report = sweeper.sweep(NOW)
        assert report.failed_rule_ids == [rule.id]


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_run_until_stopped(self, sweeper):
        stop = asyncio.Event()
        calls = []
        original = sweeper.sweep

        def counting_sweep(now=None):
            calls.append(now)
            if len(calls) >= 2:
                stop.set()
            return original(now)

        sweeper.sweep = counting_sweep
        await asyncio.wait_for(sweeper.run(0.01, stop), timeout=5)
        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_failed_pass_does_not_stop_loop(self, sweeper):
        stop = asyncio.Event()
        calls = []

        def flaky_sweep(now=None):
            calls.append(now)
            if len(calls) == 1:
                raise sqlite3.OperationalError("database is locked")
            stop.set()

        sweeper.sweep = flaky_sweep
        await asyncio.wait_for(sweeper.run(0.01, stop), timeout=5)
        assert len(calls) == 2

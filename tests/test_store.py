"""Tests for the SQLite rule store."""

from datetime import UTC, datetime, timedelta

from mailgate.schemas.rules import RuleCategory, RuleCreate, RuleUpdate
from mailgate.store import RuleStore

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


def _create(store, pattern="@spam.example", *, category="blacklist", scope=None, mode="endsWith",
            match_type="sender", enabled=True, now=None):
    return store.create_rule(
        RuleCreate(
            category=category,
            match_type=match_type,
            match_mode=mode,
            pattern=pattern,
            scope=scope,
            enabled=enabled,
        ),
        now=now,
    )


class TestRuleCrud:
    def test_create_and_get(self, store):
        rule = _create(store)
        fetched = store.get_rule(rule.id)
        assert fetched == rule
        assert fetched.category == RuleCategory.BLACKLIST
        assert fetched.hit_count == 0
        assert fetched.last_hit_at is None

    def test_get_missing_returns_none(self, store):
        assert store.get_rule("nope") is None

    def test_update_partial(self, store):
        rule = _create(store)
        updated = store.update_rule(rule.id, RuleUpdate(pattern="@junk.example"))
        assert updated.pattern == "@junk.example"
        assert updated.match_mode == rule.match_mode
        assert updated.updated_at >= rule.updated_at

    def test_update_scope_to_global(self, store):
        rule = _create(store, scope="tenant-a")
        updated = store.update_rule(rule.id, RuleUpdate(scope=None))
        assert updated.scope is None

    def test_update_missing_returns_none(self, store):
        assert store.update_rule("nope", RuleUpdate(enabled=False)) is None

    def test_delete_removes_stats(self, store):
        rule = _create(store)
        assert store.delete_rule(rule.id) is True
        assert store.get_rule(rule.id) is None
        count = store._conn.execute(
            "SELECT COUNT(*) FROM rule_stats WHERE rule_id = ?", (rule.id,)
        ).fetchone()[0]
        assert count == 0

    def test_delete_missing_returns_false(self, store):
        assert store.delete_rule("nope") is False

    def test_find_duplicate(self, store):
        rule = _create(store, scope="tenant-a")
        same = RuleCreate(
            category="blacklist", match_type="sender", match_mode="endsWith",
            pattern="@spam.example", scope="tenant-a",
        )
        assert store.find_duplicate(same).id == rule.id
        assert store.find_duplicate(same.model_copy(update={"scope": None})) is None

    def test_count_rules(self, store):
        _create(store, "a")
        _create(store, "b", category="whitelist")
        assert store.count_rules() == 2
        assert store.count_rules(RuleCategory.WHITELIST) == 1


class TestScopeQueries:
    def test_scope_includes_global(self, store):
        g = _create(store, "global")
        a = _create(store, "tenant", scope="tenant-a")
        _create(store, "other", scope="tenant-b")
        ids = {r.id for r in store.find_rules_by_scope("tenant-a")}
        assert ids == {g.id, a.id}

    def test_none_scope_is_global_only(self, store):
        g = _create(store, "global")
        _create(store, "tenant", scope="tenant-a")
        assert [r.id for r in store.find_rules_by_scope(None)] == [g.id]

    def test_disabled_rules_excluded(self, store):
        _create(store, "off", enabled=False)
        assert store.find_rules_by_scope(None) == []
        assert len(store.find_rules_by_scope(None, enabled_only=False)) == 1

    def test_list_rules_filters(self, store):
        _create(store, "a", category="whitelist")
        _create(store, "b", scope="tenant-a")
        assert len(store.list_rules()) == 2
        assert len(store.list_rules(category=RuleCategory.WHITELIST)) == 1
        assert len(store.list_rules(scope="tenant-a")) == 1


class TestLastHit:
    def test_touch_sets_last_hit_and_count(self, store):
        rule = _create(store)
        store.touch_last_hit(rule.id, T0)
        fetched = store.get_rule(rule.id)
        assert fetched.last_hit_at == T0
        assert fetched.hit_count == 1

    def test_last_hit_never_moves_backward(self, store):
        rule = _create(store)
        store.touch_last_hit(rule.id, T0)
        store.touch_last_hit(rule.id, T0 - timedelta(minutes=5))
        fetched = store.get_rule(rule.id)
        assert fetched.last_hit_at == T0
        assert fetched.hit_count == 2


class TestDynamicRules:
    def test_dynamic_patterns_only_enabled(self, store):
        _create(store, "50% off", category="dynamic", match_type="subject", mode="contains")
        _create(store, "old", category="dynamic", match_type="subject", mode="contains",
                enabled=False)
        _create(store, "manual")
        assert store.dynamic_patterns() == ["50% off"]

    def test_scoped_dynamic_rules_are_not_covering(self, store):
        _create(store, "Promo code", category="dynamic", match_type="subject",
                mode="contains", scope="t1")
        assert store.dynamic_patterns() == []
        assert store.find_covering_dynamic_rule("Promo code") is None

    def test_find_covering_rule_containment(self, store):
        rule = _create(store, "50% OFF", category="dynamic", match_type="subject",
                       mode="contains")
        assert store.find_covering_dynamic_rule("50% off today").id == rule.id
        assert store.find_covering_dynamic_rule("off").id == rule.id
        assert store.find_covering_dynamic_rule("weekly digest") is None

    def test_find_covering_prefers_exact(self, store):
        _create(store, "sale", category="dynamic", match_type="subject", mode="contains")
        exact = _create(store, "big sale", category="dynamic", match_type="subject",
                        mode="contains")
        assert store.find_covering_dynamic_rule("Big Sale").id == exact.id

    def test_delete_expired_rules(self, store):
        now = T0
        never_hit_old = _create(store, "a", category="dynamic", match_type="subject",
                                mode="contains", now=now - timedelta(hours=49))
        never_hit_new = _create(store, "b", category="dynamic", match_type="subject",
                                mode="contains", now=now - timedelta(hours=1))
        stale_hit = _create(store, "c", category="dynamic", match_type="subject",
                            mode="contains", now=now - timedelta(hours=100))
        store.touch_last_hit(stale_hit.id, now - timedelta(hours=73))
        fresh_hit = _create(store, "d", category="dynamic", match_type="subject",
                            mode="contains", now=now - timedelta(hours=100))
        store.touch_last_hit(fresh_hit.id, now - timedelta(hours=1))
        manual = _create(store, "e", now=now - timedelta(hours=500))

        deleted, failed = store.delete_expired_rules(
            created_cutoff=now - timedelta(hours=48),
            last_hit_cutoff=now - timedelta(hours=72),
        )
        assert {r.id for r in deleted} == {never_hit_old.id, stale_hit.id}
        assert failed == []
        assert store.get_rule(never_hit_new.id) is not None
        assert store.get_rule(fresh_hit.id) is not None
        assert store.get_rule(manual.id) is not None


class TestSubjectTracker:
    def test_count_within_window(self, store):
        for minutes in (0, 10, 70):
            store.insert_tracker_entry("abcd1234", "Sale", T0 + timedelta(minutes=minutes))
        now = T0 + timedelta(minutes=70)
        assert store.count_tracker_entries("abcd1234", now - timedelta(minutes=60), now) == 2
        assert store.count_tracker_entries("ffff0000", now - timedelta(minutes=60), now) == 0

    def test_earliest_timestamps_ordered(self, store):
        for minutes in (5, 1, 3):
            store.insert_tracker_entry("h", "s", T0 + timedelta(minutes=minutes))
        got = store.earliest_tracker_timestamps("h", T0, T0 + timedelta(hours=1), 2)
        assert got == [T0 + timedelta(minutes=1), T0 + timedelta(minutes=3)]

    def test_delete_by_hash_and_cutoff(self, store):
        store.insert_tracker_entry("h1", "s", T0)
        store.insert_tracker_entry("h1", "s", T0 + timedelta(minutes=30))
        store.insert_tracker_entry("h2", "s", T0)
        assert store.delete_tracker_entries("h1", T0 + timedelta(minutes=1)) == 1
        assert store.delete_tracker_entries_before(T0 + timedelta(minutes=1)) == 1
        assert store.tracker_stats().total_records == 1

    def test_subject_counts(self, store):
        for _ in range(3):
            store.insert_tracker_entry("h1", "Sale", T0)
        store.insert_tracker_entry("h2", "Digest", T0)
        counts = store.subject_counts(T0 - timedelta(minutes=1))
        assert [(c.subject_hash, c.count) for c in counts] == [("h1", 3), ("h2", 1)]

    def test_tracker_entries_newest_first(self, store):
        store.insert_tracker_entry("h", "RE: Sale", T0)
        store.insert_tracker_entry("h", "Sale", T0 + timedelta(minutes=1))
        store.insert_tracker_entry("other", "x", T0)
        entries = store.tracker_entries("h", T0 - timedelta(minutes=1))
        assert [e.subject for e in entries] == ["Sale", "RE: Sale"]
        assert entries[0].received_at == T0 + timedelta(minutes=1)

    def test_tracker_stats_empty(self, store):
        stats = store.tracker_stats()
        assert stats.total_records == 0
        assert stats.oldest_record is None


class TestConfigValues:
    def test_round_trip(self, store):
        store.set_config_values({"thresholdCount": "10", "enabled": "false"})
        store.set_config_values({"thresholdCount": "20"})
        assert store.get_config_values() == {"thresholdCount": "20", "enabled": "false"}


class TestPersistence:
    def test_data_survives_reopen(self, tmp_path):
        db_path = tmp_path / "rules.db"
        with RuleStore(db_path) as s1:
            rule = _create(s1)
        with RuleStore(db_path) as s2:
            assert s2.get_rule(rule.id) is not None

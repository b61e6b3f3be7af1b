"""Shared fixtures for mailgate tests."""

import pytest

from mailgate.cache.pattern_cache import DynamicPatternCache
from mailgate.cache.rule_cache import RuleCache
from mailgate.store import RuleStore


@pytest.fixture(autouse=True)
def _no_env_file(monkeypatch, tmp_path):
    """Ensure tests never pick up a developer's mailgate.env."""
    monkeypatch.setenv("MAILGATE_ENV_FILE", str(tmp_path / "absent.env"))


@pytest.fixture()
def store(tmp_path):
    with RuleStore(tmp_path / "mailgate.db") as s:
        yield s


@pytest.fixture()
def rule_cache(store):
    return RuleCache(store.find_rules_by_scope)


@pytest.fixture()
def pattern_cache(store):
    cache = DynamicPatternCache()
    cache.load(store.dynamic_patterns())
    return cache

"""Tests for the rule pattern matcher."""

import pytest

from mailgate.errors import InvalidPatternError
from mailgate.matcher import (
    MAX_MATCH_INPUT,
    compile_pattern,
    extract_domain,
    field_value,
    matches,
    validate_pattern,
)
from mailgate.schemas.rules import InboundMessage, MatchMode, MatchType


class TestStringModes:
    def test_exact_is_case_insensitive(self):
        assert matches("Boss@Example.com", "boss@example.com", MatchMode.EXACT)
        assert not matches("boss@example.com.evil", "boss@example.com", MatchMode.EXACT)

    def test_contains(self):
        assert matches("FLASH SALE 50% OFF today", "50% off", MatchMode.CONTAINS)
        assert not matches("Weekly report", "50% off", MatchMode.CONTAINS)

    def test_starts_with(self):
        assert matches("[SPAM] hello", "[spam]", MatchMode.STARTS_WITH)
        assert not matches("hello [SPAM]", "[spam]", MatchMode.STARTS_WITH)

    def test_ends_with(self):
        assert matches("promo@Spam.Example", "@spam.example", MatchMode.ENDS_WITH)
        assert not matches("spam.example@other.org", "@spam.example", MatchMode.ENDS_WITH)


class TestRegexMode:
    def test_regex_search_ignores_case(self):
        assert matches("Win a FREE iPhone", r"free\s+iphone", MatchMode.REGEX)

    def test_invalid_regex_never_matches(self):
        assert matches("anything", "([unclosed", MatchMode.REGEX) is False

    def test_precompiled_pattern_is_used(self):
        compiled = compile_pattern(r"^invoice \d+$")
        assert matches("Invoice 42", "ignored", MatchMode.REGEX, compiled)

    def test_input_is_truncated(self):
        text = "a" * MAX_MATCH_INPUT + "needle"
        assert not matches(text, "needle", MatchMode.REGEX)
        assert matches(text, "needle", MatchMode.CONTAINS)

    def test_compile_pattern_invalid_returns_none(self):
        assert compile_pattern("(?P<x") is None


class TestValidatePattern:
    def test_empty_pattern_rejected(self):
        with pytest.raises(InvalidPatternError):
            validate_pattern("", MatchMode.CONTAINS)

    def test_blank_pattern_rejected(self):
        with pytest.raises(InvalidPatternError):
            validate_pattern("   ", MatchMode.EXACT)

    def test_bad_regex_rejected(self):
        with pytest.raises(InvalidPatternError) as exc_info:
            validate_pattern("([unclosed", MatchMode.REGEX)
        assert exc_info.value.pattern == "([unclosed"

    def test_regex_chars_fine_outside_regex_mode(self):
        validate_pattern("([unclosed", MatchMode.CONTAINS)


class TestFields:
    def test_extract_domain_uses_last_at(self):
        assert extract_domain("weird@name@Example.COM") == "example.com"

    def test_extract_domain_without_at(self):
        assert extract_domain("LocalHost") == "localhost"

    def test_field_value(self):
        msg = InboundMessage(
            sender="a@b.example", recipient_address="me@Corp.Example", subject="Hi"
        )
        assert field_value(msg, MatchType.SENDER) == "a@b.example"
        assert field_value(msg, MatchType.RECIPIENT_DOMAIN) == "corp.example"
        assert field_value(msg, MatchType.SUBJECT) == "Hi"

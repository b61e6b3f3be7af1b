"""Pattern matching for filter rules.

Pure functions: one ``(text, pattern, mode)`` evaluation, case-insensitive
in every mode. Mail headers are adversary-controlled, so evaluation never
raises: a broken regex or a failure during matching is a non-match.
Rejecting bad patterns is the job of ``validate_pattern`` at write time.
"""

import logging
import re

from mailgate.errors import InvalidPatternError
from mailgate.schemas.rules import InboundMessage, MatchMode, MatchType

logger = logging.getLogger(__name__)

# Regex input is truncated to this many characters to bound backtracking.
MAX_MATCH_INPUT = 4096


def compile_pattern(pattern: str) -> re.Pattern[str] | None:
    """Compile a regex rule pattern, or return None if it is invalid."""
    try:
        return re.compile(pattern, re.IGNORECASE)
    except (re.error, RecursionError, OverflowError):
        return None


def validate_pattern(pattern: str, mode: MatchMode) -> None:
    """Reject patterns that can never be evaluated sensibly.

    Raises:
        InvalidPatternError: Empty/blank pattern, or a regex that fails to compile.
    """
    if not pattern or not pattern.strip():
        raise InvalidPatternError(pattern, "pattern cannot be empty")
    if mode == MatchMode.REGEX:
        try:
            re.compile(pattern, re.IGNORECASE)
        except re.error as exc:
            raise InvalidPatternError(pattern, str(exc)) from exc
        except (RecursionError, OverflowError) as exc:
            raise InvalidPatternError(pattern, "regex too complex") from exc


def matches(
    text: str,
    pattern: str,
    mode: MatchMode,
    compiled: re.Pattern[str] | None = None,
) -> bool:
    """Return True if *text* matches *pattern* under *mode*.

    Args:
        text: The message field value.
        pattern: Raw rule pattern (regex source for ``regex`` mode).
        mode: Match mode.
        compiled: Optional pre-compiled regex for ``regex`` mode.
    """
    if mode == MatchMode.REGEX:
        regex = compiled if compiled is not None else compile_pattern(pattern)
        if regex is None:
            return False
        try:
            return regex.search(text[:MAX_MATCH_INPUT]) is not None
        except Exception:
            logger.debug("Regex evaluation failed for pattern %r", pattern, exc_info=True)
            return False

    value = text.lower()
    needle = pattern.lower()
    if mode == MatchMode.EXACT:
        return value == needle
    if mode == MatchMode.CONTAINS:
        return needle in value
    if mode == MatchMode.STARTS_WITH:
        return value.startswith(needle)
    if mode == MatchMode.ENDS_WITH:
        return value.endswith(needle)
    return False


def extract_domain(address: str) -> str:
    """Return the lower-cased part after the last ``@`` (or the whole input)."""
    at = address.rfind("@")
    if at == -1:
        return address.lower()
    return address[at + 1 :].lower()


def field_value(message: InboundMessage, match_type: MatchType) -> str:
    """Pick the message field a rule of *match_type* inspects."""
    if match_type == MatchType.SENDER:
        return message.sender
    if match_type == MatchType.RECIPIENT_DOMAIN:
        return extract_domain(message.recipient_address)
    return message.subject

"""Subject normalization and grouping hash for burst detection.

Subjects like "RE: Don't miss! Sale" and "Sale" should land in the same
group, so well-known reply, urgency and marketing prefixes are stripped
before hashing. The prefix list is policy data, not algorithm: it can be
replaced from a JSON file (a list of regex sources, matched
case-insensitively at the start of the subject).
"""

import json
import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT_PREFIXES: tuple[str, ...] = (
    # Urgency
    r"^don'?t miss( out)?\b[!:]?\s*",
    r"^trending\b[!:]?\s*",
    r"^hot\b[!:]?\s*",
    r"^new\b[!:]?\s*",
    r"^breaking\b[!:]?\s*",
    r"^urgent\b[!:]?\s*",
    r"^important\b[!:]?\s*",
    r"^reminder\b[!:]?\s*",
    r"^last chance\b[!:]?\s*",
    r"^final\b[!:]?\s*",
    r"^limited time\b[!:]?\s*",
    r"^act now\b[!:]?\s*",
    r"^hurry\b[!:]?\s*",
    # Reply / forward
    r"^re:\s*",
    r"^fw:\s*",
    r"^fwd:\s*",
    # Marketing
    r"^sale\b[!:]?\s*",
    r"^flash sale\b[!:]?\s*",
    r"^exclusive\b[!:]?\s*",
    r"^special\b[!:]?\s*",
    r"^\[.*?\]\s*",  # [Newsletter], [Update], ...
    r"^【.*?】\s*",  # full-width brackets
)

# FNV-1a, 32-bit
_FNV_OFFSET_BASIS = 0x811C9DC5
_FNV_PRIME = 0x01000193


def compile_prefixes(sources: list[str] | tuple[str, ...]) -> tuple[re.Pattern[str], ...]:
    """Compile prefix regex sources (case-insensitive).

    Raises:
        re.error: A source does not compile.
    """
    return tuple(re.compile(src, re.IGNORECASE) for src in sources)


def load_prefixes(path: str | Path | None) -> tuple[re.Pattern[str], ...]:
    """Load prefix sources from a JSON list, or the built-in list if *path* is empty."""
    if not path:
        return DEFAULT_PREFIXES
    path = Path(path)
    sources = json.loads(path.read_text())
    if not isinstance(sources, list) or not all(isinstance(s, str) for s in sources):
        raise ValueError(f"Subject prefix file must contain a JSON list of strings: {path}")
    logger.info("Loaded %d subject prefix pattern(s) from %s", len(sources), path)
    return compile_prefixes(sources)


DEFAULT_PREFIXES = compile_prefixes(DEFAULT_SUBJECT_PREFIXES)


def _strip_pass(subject: str, prefixes: tuple[re.Pattern[str], ...]) -> str:
    for prefix in prefixes:
        stripped = prefix.sub("", subject, count=1)
        # Never strip a subject down to nothing: an empty pattern would
        # match every message.
        if stripped.strip():
            subject = stripped
    return subject


def normalize_subject(
    subject: str,
    prefixes: tuple[re.Pattern[str], ...] = DEFAULT_PREFIXES,
) -> str:
    """Strip chained prefixes until the subject stops changing.

    ``normalize_subject(normalize_subject(s)) == normalize_subject(s)``.
    """
    normalized = subject.strip()
    while True:
        before = normalized
        normalized = _strip_pass(normalized, prefixes).strip()
        if normalized == before:
            return normalized


def fnv1a_32(data: bytes) -> int:
    h = _FNV_OFFSET_BASIS
    for byte in data:
        h ^= byte
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return h


def hash_subject(
    subject: str,
    prefixes: tuple[re.Pattern[str], ...] = DEFAULT_PREFIXES,
) -> str:
    """Grouping key: FNV-1a of the lower-cased normalized subject, as 8 hex digits.

    Collisions only widen a group; the key is never used as an identity.
    """
    normalized = normalize_subject(subject, prefixes).lower()
    return f"{fnv1a_32(normalized.encode('utf-8')):08x}"

"""Single source of truth for all configuration.

All modules import from here, never from os.environ directly.

Values come from a plain .env file (``mailgate.env`` at the project root, or
the path in ``MAILGATE_ENV_FILE``). Real environment variables override the
file. A missing file is fine; every setting has a default.
"""

import os
from pathlib import Path

from dotenv import dotenv_values

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def load_env_file(dotenv_path: str | Path) -> dict[str, str | None]:
    """Load a plain .env file, returning {} when it does not exist.

    Args:
        dotenv_path: Path to an unencrypted .env file.

    Returns:
        Dictionary of key-value pairs.
    """
    path = Path(dotenv_path)
    if not path.exists():
        return {}
    return dict(dotenv_values(path))


def _load() -> dict[str, str | None]:
    env_file = os.environ.get("MAILGATE_ENV_FILE", str(PROJECT_ROOT / "mailgate.env"))
    values = load_env_file(env_file)
    values.update({k: v for k, v in os.environ.items() if k.startswith("MAILGATE_")})
    return values


def _optional_int(raw: str | None) -> int | None:
    return int(raw) if raw else None


_settings = _load()

# --- Storage ---
DB_PATH: str = _settings.get("MAILGATE_DB_PATH") or str(PROJECT_ROOT / "data" / "mailgate.db")
AUDIT_LOG_PATH: str = _settings.get("MAILGATE_AUDIT_LOG_PATH") or str(
    PROJECT_ROOT / "data" / "detection_audit.jsonl"
)

# --- Expiration sweeper ---
SWEEP_INTERVAL_SECONDS: int = int(_settings.get("MAILGATE_SWEEP_INTERVAL_SECONDS") or "300")
# Unset = keep twice the detection window.
TRACKER_RETENTION_MINUTES: int | None = _optional_int(
    _settings.get("MAILGATE_TRACKER_RETENTION_MINUTES")
)

# --- Caches ---
RULE_CACHE_TTL_SECONDS: float = float(_settings.get("MAILGATE_RULE_CACHE_TTL_SECONDS") or "60")

# --- Subject normalization ---
# JSON list of regex sources; unset = built-in prefix list.
SUBJECT_PREFIXES_PATH: str = _settings.get("MAILGATE_SUBJECT_PREFIXES_PATH") or ""

"""Environment-driven settings for RSS Feed Sync."""

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping

DEFAULT_DB_PATH = "rssfeed_sync.db"
DEFAULT_POLL_INTERVAL = 900  # 15 minutes
DEFAULT_CONCURRENCY = 4
DEFAULT_FETCH_TIMEOUT = 10.0
MAX_BODY_BYTES = 4 * 1024 * 1024
ENTRY_RETENTION_DAYS = 365


@dataclass(frozen=True)
class Settings:
    db_path: str = DEFAULT_DB_PATH
    poll_interval: int = DEFAULT_POLL_INTERVAL
    concurrency: int = DEFAULT_CONCURRENCY
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    max_body_bytes: int = MAX_BODY_BYTES
    retention_days: int = ENTRY_RETENTION_DAYS
    log_level: str = "INFO"

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.retention_days)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from RSS_* environment variables.

        Raises:
            ValueError: If a variable is set to an unusable value.
        """
        env = os.environ if environ is None else environ
        return cls(
            db_path=env.get("RSS_DB_PATH", DEFAULT_DB_PATH),
            poll_interval=_number(env, "RSS_POLL_INTERVAL", DEFAULT_POLL_INTERVAL, int, minimum=0),
            concurrency=_number(env, "RSS_CONCURRENCY", DEFAULT_CONCURRENCY, int, minimum=1),
            fetch_timeout=_number(env, "RSS_FETCH_TIMEOUT", DEFAULT_FETCH_TIMEOUT, float, minimum=0.001),
            max_body_bytes=_number(env, "RSS_MAX_BODY_BYTES", MAX_BODY_BYTES, int, minimum=1),
            retention_days=_number(env, "RSS_RETENTION_DAYS", ENTRY_RETENTION_DAYS, int, minimum=1),
            log_level=env.get("RSS_LOG_LEVEL", "INFO").upper(),
        )


def _number(env, name, default, convert, minimum):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = convert(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be at least {minimum}, got {raw!r}")
    return value

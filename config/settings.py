"""Runtime configuration loaded from environment variables."""
import logging
import os
from dataclasses import dataclass, field
from typing import List, Mapping, NamedTuple, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised when the environment holds an unusable configuration."""


class CalendarFeed(NamedTuple):
    """A configured calendar feed."""
    name: str
    url: str


def parse_feeds(raw: str) -> List[CalendarFeed]:
    """
    Parse the feed list from its environment representation.

    Args:
        raw: Comma separated ``NAME|URL`` pairs

    Returns:
        List of CalendarFeed in configuration order
    """
    feeds = []
    for entry in (raw or '').split(','):
        name, _, url = entry.partition('|')
        name = name.strip()
        url = url.strip()
        if not name or not url:
            if entry.strip():
                logger.warning(f"Ignoring malformed feed entry: {entry.strip()!r}")
            continue
        feeds.append(CalendarFeed(name=name, url=url))
    return feeds


def _int_setting(env: Mapping[str, str], key: str, default: int) -> int:
    value = env.get(key)
    if value is None or value.strip() == '':
        return default
    try:
        number = int(value)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")
    if number < 0:
        raise ConfigurationError(f"{key} must not be negative, got {number}")
    return number


@dataclass
class Settings:
    """Settings for the calendar sync and debug handlers."""
    table_name: str = 'cached-calendar-events'
    log_level: str = 'INFO'
    feeds: List[CalendarFeed] = field(default_factory=list)
    retention_days: int = 14
    stale_days: int = 7
    max_occurrences: int = 50
    timeout_seconds: int = 10
    fetch_retries: int = 3
    fetch_workers: int = 4
    cron_secret: Optional[str] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'Settings':
        """
        Build settings from environment variables.

        Feeds are read on every call so a changed ``ICAL_FEEDS`` takes effect
        on the next invocation.

        Args:
            env: Mapping to read from (default: os.environ)

        Returns:
            Settings instance

        Raises:
            ConfigurationError: If a numeric variable is invalid
        """
        env = os.environ if env is None else env
        return cls(
            table_name=env.get('TABLE_NAME', cls.table_name),
            log_level=env.get('LOG_LEVEL', cls.log_level),
            feeds=parse_feeds(env.get('ICAL_FEEDS', '')),
            retention_days=_int_setting(env, 'RETENTION_DAYS', cls.retention_days),
            stale_days=_int_setting(env, 'STALE_DAYS', cls.stale_days),
            max_occurrences=_int_setting(env, 'MAX_OCCURRENCES', cls.max_occurrences),
            timeout_seconds=_int_setting(env, 'TIMEOUT_SECONDS', cls.timeout_seconds),
            fetch_retries=max(1, _int_setting(env, 'FETCH_RETRIES', cls.fetch_retries)),
            fetch_workers=max(1, _int_setting(env, 'FETCH_WORKERS', cls.fetch_workers)),
            cron_secret=env.get('CRON_SECRET') or None,
        )

"""Environment-driven configuration for the calendar sync engine."""
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from processor.event_filter import DEFAULT_EXCLUDE_SUMMARY_PATTERNS
from processor.time_window import DEFAULT_LOOK_AHEAD_DAYS
from sync.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_TIME_ZONE = 'America/Santiago'
DEFAULT_SYNC_START = '2000-01-01'
# Lambda can only write under /tmp
DEFAULT_SNAPSHOT_DIR = '/tmp/google-calendar'


@dataclass(frozen=True)
class CalendarSyncConfig:
    """Validated settings for one engine instance."""
    service_account_email: str
    private_key: str
    calendar_ids: Tuple[str, ...]
    time_zone: str = DEFAULT_TIME_ZONE
    sync_start_date: str = DEFAULT_SYNC_START
    sync_look_ahead_days: int = DEFAULT_LOOK_AHEAD_DAYS
    impersonate_user: Optional[str] = None
    exclude_summary_patterns: Tuple[str, ...] = DEFAULT_EXCLUDE_SUMMARY_PATTERNS
    denylisted_calendar_ids: Tuple[str, ...] = ()
    denylisted_event_types: Tuple[str, ...] = ()
    include_private_events: bool = True
    events_table_name: str = 'calendar-events'
    sync_log_table_name: str = 'calendar-sync-log'
    snapshot_bucket: Optional[str] = None
    snapshot_dir: str = DEFAULT_SNAPSHOT_DIR
    timeout_seconds: int = 30
    max_fetch_workers: int = 4
    log_level: str = 'INFO'


def normalize_private_key(raw: Optional[str]) -> Optional[str]:
    """Turn literal "\\n" sequences from env files into newlines."""
    if not raw:
        return None
    return raw.replace('\\n', '\n')


def parse_list(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(value.strip() for value in raw.split(',') if value.strip())


def parse_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {'1', 'true', 'yes', 'on'}


def parse_positive_int(raw: Optional[str], default: int) -> int:
    try:
        value = int(float(raw))
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def parse_time_zone(raw: Optional[str]) -> str:
    if not raw:
        return DEFAULT_TIME_ZONE
    try:
        ZoneInfo(raw)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown time zone {raw!r}, using {DEFAULT_TIME_ZONE}")
        return DEFAULT_TIME_ZONE
    return raw


def load_config(environ: Optional[Mapping[str, str]] = None) -> CalendarSyncConfig:
    """
    Read configuration from environment variables.

    Args:
        environ: Mapping to read from, defaults to os.environ

    Returns:
        CalendarSyncConfig

    Raises:
        ConfigurationError: If credentials or calendar ids are missing
    """
    env = os.environ if environ is None else environ
    missing = []

    email = (env.get('GOOGLE_SERVICE_ACCOUNT_EMAIL') or '').strip()
    if not email:
        missing.append('GOOGLE_SERVICE_ACCOUNT_EMAIL')

    private_key = normalize_private_key(env.get('GOOGLE_SERVICE_ACCOUNT_PRIVATE_KEY'))
    if not private_key:
        missing.append('GOOGLE_SERVICE_ACCOUNT_PRIVATE_KEY')

    calendar_ids = parse_list(env.get('GOOGLE_CALENDAR_IDS'))
    if not calendar_ids:
        missing.append('GOOGLE_CALENDAR_IDS')

    if missing:
        raise ConfigurationError(
            f"Google Calendar sync disabled. Missing variables: {', '.join(missing)}",
            missing=missing
        )

    exclude_patterns = parse_list(env.get('GOOGLE_CALENDAR_EXCLUDE_SUMMARIES'))

    return CalendarSyncConfig(
        service_account_email=email,
        private_key=private_key,
        calendar_ids=calendar_ids,
        time_zone=parse_time_zone(env.get('GOOGLE_CALENDAR_TIMEZONE')),
        sync_start_date=env.get('GOOGLE_CALENDAR_SYNC_START') or DEFAULT_SYNC_START,
        sync_look_ahead_days=parse_positive_int(
            env.get('GOOGLE_CALENDAR_SYNC_LOOKAHEAD_DAYS'), DEFAULT_LOOK_AHEAD_DAYS
        ),
        impersonate_user=(env.get('GOOGLE_CALENDAR_IMPERSONATE_USER') or '').strip() or None,
        exclude_summary_patterns=exclude_patterns or DEFAULT_EXCLUDE_SUMMARY_PATTERNS,
        denylisted_calendar_ids=parse_list(env.get('GOOGLE_CALENDAR_DENYLIST')),
        denylisted_event_types=parse_list(env.get('GOOGLE_CALENDAR_EXCLUDE_EVENT_TYPES')),
        include_private_events=parse_bool(env.get('GOOGLE_CALENDAR_INCLUDE_PRIVATE'), True),
        events_table_name=env.get('EVENTS_TABLE_NAME') or 'calendar-events',
        sync_log_table_name=env.get('SYNC_LOG_TABLE_NAME') or 'calendar-sync-log',
        snapshot_bucket=env.get('SNAPSHOT_BUCKET') or None,
        snapshot_dir=env.get('SNAPSHOT_DIR') or DEFAULT_SNAPSHOT_DIR,
        timeout_seconds=parse_positive_int(env.get('TIMEOUT_SECONDS'), 30),
        max_fetch_workers=parse_positive_int(env.get('MAX_FETCH_WORKERS'), 4),
        log_level=env.get('LOG_LEVEL') or 'INFO'
    )

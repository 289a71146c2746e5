"""Resolve the date range queried from the calendar provider."""
import logging
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from processor.models import FetchWindow

logger = logging.getLogger(__name__)

DEFAULT_SYNC_START_DATE = date(2000, 1, 1)
DEFAULT_LOOK_AHEAD_DAYS = 365


def parse_start_date(value: Optional[str]) -> date:
    """
    Parse the configured sync start date, falling back to the default.

    Args:
        value: Date string in YYYY-MM-DD format

    Returns:
        Parsed date, or DEFAULT_SYNC_START_DATE if the value is unusable
    """
    if value:
        try:
            return datetime.strptime(value.strip(), '%Y-%m-%d').date()
        except ValueError:
            pass

    logger.warning(
        f"Invalid sync start date {value!r}, using {DEFAULT_SYNC_START_DATE.isoformat()}"
    )
    return DEFAULT_SYNC_START_DATE


def resolve_fetch_window(
    sync_start_date: Optional[str],
    look_ahead_days: Optional[int],
    time_zone: str,
    today: Optional[date] = None
) -> FetchWindow:
    """
    Compute the half-open window [start, end) to fetch.

    The window starts at midnight of the configured start date and ends at
    midnight of max(today, start) + look_ahead_days, both in the configured
    time zone.

    Args:
        sync_start_date: Configured start date (YYYY-MM-DD)
        look_ahead_days: Days past today (or the start date) to include
        time_zone: IANA time zone name
        today: Override for the current date, mostly for tests

    Returns:
        FetchWindow with timezone-aware bounds
    """
    tz = ZoneInfo(time_zone)
    start_date = parse_start_date(sync_start_date)

    if not isinstance(look_ahead_days, int) or isinstance(look_ahead_days, bool) or look_ahead_days <= 0:
        look_ahead_days = DEFAULT_LOOK_AHEAD_DAYS

    if today is None:
        today = datetime.now(tz).date()

    end_date = max(today, start_date) + timedelta(days=look_ahead_days)

    return FetchWindow(
        time_min=datetime.combine(start_date, time.min, tzinfo=tz),
        time_max=datetime.combine(end_date, time.min, tzinfo=tz),
        time_zone=time_zone
    )

"""Exclusion filter deciding which fetched events reach the event store."""
import logging
import re
from collections import Counter
from typing import Iterable, List, Optional, Pattern, Tuple

from processor.models import CalendarEvent

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDE_SUMMARY_PATTERNS = ('no disponible',)


def compile_patterns(values: Iterable[str]) -> List[Pattern]:
    """
    Compile summary patterns case-insensitively.

    Patterns that are not valid regular expressions are matched literally.

    Args:
        values: Raw pattern strings

    Returns:
        List of compiled patterns
    """
    patterns = []
    for value in values:
        if not value:
            continue
        try:
            patterns.append(re.compile(value, re.IGNORECASE))
        except re.error:
            logger.warning(f"Invalid summary pattern {value!r}, matching it literally")
            patterns.append(re.compile(re.escape(value), re.IGNORECASE))
    return patterns


class ExclusionFilter:
    """Partition events into kept and excluded according to config rules."""

    CANCELLED = 'cancelled'
    DENYLISTED_CALENDAR = 'denylisted_calendar'
    DENYLISTED_EVENT_TYPE = 'denylisted_event_type'
    SUMMARY_PATTERN = 'summary_pattern'
    PRIVATE = 'private'

    def __init__(
        self,
        denylisted_calendar_ids: Iterable[str] = (),
        denylisted_event_types: Iterable[str] = (),
        exclude_summary_patterns: Iterable[str] = DEFAULT_EXCLUDE_SUMMARY_PATTERNS,
        include_private_events: bool = True
    ):
        """
        Initialize the filter.

        Args:
            denylisted_calendar_ids: Calendars whose events are never stored
            denylisted_event_types: Provider event types to drop
                (e.g. "outOfOffice", "workingLocation")
            exclude_summary_patterns: Regexes matched against event titles
            include_private_events: Keep private/confidential events
        """
        self.denylisted_calendar_ids = frozenset(denylisted_calendar_ids)
        self.denylisted_event_types = frozenset(
            value.lower() for value in denylisted_event_types
        )
        self.summary_patterns = compile_patterns(exclude_summary_patterns)
        self.include_private_events = include_private_events

    def exclusion_reason(self, event: CalendarEvent) -> Optional[str]:
        """
        Return the first matching exclusion rule for an event.

        Args:
            event: Event to check

        Returns:
            Rule name, or None if the event should be kept
        """
        if (event.status or '').lower() == 'cancelled':
            return self.CANCELLED

        if event.calendar_id in self.denylisted_calendar_ids:
            return self.DENYLISTED_CALENDAR

        if event.event_type and event.event_type.lower() in self.denylisted_event_types:
            return self.DENYLISTED_EVENT_TYPE

        title = event.title or ''
        if any(pattern.search(title) for pattern in self.summary_patterns):
            return self.SUMMARY_PATTERN

        if event.is_private and not self.include_private_events:
            return self.PRIVATE

        return None

    def filter(
        self, events: List[CalendarEvent]
    ) -> Tuple[List[CalendarEvent], List[CalendarEvent]]:
        """
        Split events into (kept, excluded), preserving input order.

        Args:
            events: Events fetched during the run

        Returns:
            Tuple of kept events and excluded events
        """
        kept = []
        excluded = []
        reasons = Counter()

        for event in events:
            reason = self.exclusion_reason(event)
            if reason is None:
                kept.append(event)
            else:
                excluded.append(event)
                reasons[reason] += 1

        logger.info(
            f"Kept {len(kept)} events, excluded {len(excluded)}",
            extra={'exclusion_reasons': dict(reasons)}
        )
        return kept, excluded

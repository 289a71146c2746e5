"""Data models for calendar synchronization."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from sync.errors import ProviderError

TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'

EventKey = Tuple[str, str]


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """
    Render a datetime as a fixed-width UTC string.

    The fixed width keeps lexicographic and chronological order identical,
    which the conditional writes in the event store rely on.

    Args:
        value: Timezone-aware datetime (naive values are treated as UTC)

    Returns:
        UTC timestamp string or None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an RFC 3339 timestamp as returned by the provider.

    Args:
        value: Timestamp string (e.g. "2024-01-10T12:00:00.000Z")

    Returns:
        Timezone-aware datetime or None if the value is empty or invalid
    """
    if not value:
        return None

    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        parsed = None
        for fmt in ('%Y-%m-%dT%H:%M:%S.%f%z', '%Y-%m-%dT%H:%M:%S%z'):
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
        if parsed is None:
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SyncStatus(str, Enum):
    """Lifecycle states of a sync log entry."""
    PENDING = 'PENDING'
    SUCCESS = 'SUCCESS'
    ERROR = 'ERROR'


@dataclass(frozen=True)
class FetchWindow:
    """Half-open time range [time_min, time_max) queried from the provider."""
    time_min: datetime
    time_max: datetime
    time_zone: str


@dataclass(frozen=True)
class CalendarEvent:
    """Event fetched from the calendar provider."""
    calendar_id: str
    event_id: str
    title: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    all_day: bool = False
    location: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    event_type: Optional[str] = None
    visibility: Optional[str] = None
    transparency: Optional[str] = None
    color_id: Optional[str] = None
    hangout_link: Optional[str] = None
    created: Optional[datetime] = None
    updated: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def key(self) -> EventKey:
        return (self.calendar_id, self.event_id)

    @property
    def watermark(self) -> Optional[datetime]:
        """Provider last-modified time, falling back to creation time."""
        return self.updated or self.created

    @property
    def is_private(self) -> bool:
        return (self.visibility or '').lower() in ('private', 'confidential')


@dataclass
class PersistedEventRecord:
    """Local mirror of a CalendarEvent."""
    calendar_id: str
    event_id: str
    title: Optional[str]
    description: Optional[str]
    status: Optional[str]
    event_type: Optional[str]
    start: Optional[str]
    end: Optional[str]
    all_day: bool
    location: Optional[str]
    visibility: Optional[str]
    transparency: Optional[str]
    color_id: Optional[str]
    hangout_link: Optional[str]
    provider_created_at: Optional[str]
    provider_updated_at: Optional[str]
    synced_at: str
    raw_event: Optional[str] = None

    @property
    def key(self) -> EventKey:
        return (self.calendar_id, self.event_id)


@dataclass
class UpsertResult:
    """Counters produced by one reconciliation pass."""
    attempted: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0


@dataclass
class ProviderResult:
    """Outcome of fetching a single calendar: either events or an error."""
    calendar_id: str
    events: List[CalendarEvent] = field(default_factory=list)
    error: Optional[ProviderError] = None

    @classmethod
    def ok(cls, calendar_id: str, events: List[CalendarEvent]) -> 'ProviderResult':
        return cls(calendar_id=calendar_id, events=list(events))

    @classmethod
    def err(cls, calendar_id: str, error: ProviderError) -> 'ProviderResult':
        return cls(calendar_id=calendar_id, error=error)

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class SyncStep:
    """Timing and details for one stage of a run."""
    id: str
    label: str
    duration_ms: int
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SyncRunResult:
    """Everything one run fetched and decided. Never persisted as a whole."""
    fetched_at: datetime
    window: FetchWindow
    events: List[CalendarEvent]
    excluded_events: List[CalendarEvent]
    calendars: List[Dict[str, Any]]
    failures: List[str]
    upsert_result: UpsertResult
    steps: List[SyncStep] = field(default_factory=list)


@dataclass
class SyncOutcome:
    """Terminal payload used to finalize a sync log entry."""
    status: SyncStatus
    fetched_at: Optional[datetime] = None
    inserted: Optional[int] = None
    updated: Optional[int] = None
    skipped: Optional[int] = None
    excluded: Optional[int] = None
    error_message: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def success(
        cls,
        fetched_at: datetime,
        upsert_result: UpsertResult,
        excluded: int,
        warnings: Optional[List[str]] = None
    ) -> 'SyncOutcome':
        return cls(
            status=SyncStatus.SUCCESS,
            fetched_at=fetched_at,
            inserted=upsert_result.inserted,
            updated=upsert_result.updated,
            skipped=upsert_result.skipped,
            excluded=excluded,
            warnings=list(warnings or [])
        )

    @classmethod
    def failure(cls, error_message: str, warnings: Optional[List[str]] = None) -> 'SyncOutcome':
        return cls(
            status=SyncStatus.ERROR,
            error_message=error_message,
            warnings=list(warnings or [])
        )


@dataclass
class SyncLogEntry:
    """Durable audit record of one attempted run."""
    log_id: str
    trigger_source: str
    trigger_label: Optional[str]
    status: SyncStatus
    created_at: str
    trigger_user: Optional[str] = None
    finalized_at: Optional[str] = None
    fetched_at: Optional[str] = None
    inserted: Optional[int] = None
    updated: Optional[int] = None
    skipped: Optional[int] = None
    excluded: Optional[int] = None
    error_message: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'logId': self.log_id,
            'triggerSource': self.trigger_source,
            'triggerLabel': self.trigger_label,
            'triggerUser': self.trigger_user,
            'status': self.status.value,
            'createdAt': self.created_at,
            'finalizedAt': self.finalized_at,
            'fetchedAt': self.fetched_at,
            'inserted': self.inserted,
            'updated': self.updated,
            'skipped': self.skipped,
            'excluded': self.excluded,
            'errorMessage': self.error_message,
            'warnings': list(self.warnings)
        }


@dataclass
class SyncSummary:
    """Result of one run as reported to the trigger that started it."""
    log_id: Optional[str]
    status: SyncStatus
    trigger_source: str
    trigger_label: Optional[str]
    fetched_at: Optional[str] = None
    events: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    excluded: int = 0
    snapshot_path: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    steps: List[SyncStep] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'logId': self.log_id,
            'status': self.status.value,
            'triggerSource': self.trigger_source,
            'triggerLabel': self.trigger_label,
            'fetchedAt': self.fetched_at,
            'events': self.events,
            'inserted': self.inserted,
            'updated': self.updated,
            'skipped': self.skipped,
            'excluded': self.excluded,
            'snapshotPath': self.snapshot_path,
            'warnings': list(self.warnings),
            'error': self.error,
            'steps': [
                {
                    'id': step.id,
                    'label': step.label,
                    'durationMs': step.duration_ms,
                    'details': step.details
                }
                for step in self.steps
            ]
        }

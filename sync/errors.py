"""Error taxonomy for the calendar sync engine."""
from typing import List, Optional


class CalendarSyncError(Exception):
    """Base class for calendar sync failures."""


class ConfigurationError(CalendarSyncError):
    """Mandatory configuration is missing; the engine stays disabled."""

    def __init__(self, message: str, missing: Optional[List[str]] = None):
        super().__init__(message)
        self.missing = missing or []


class ProviderError(CalendarSyncError):
    """Fetching one calendar source failed."""

    def __init__(self, calendar_id: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{calendar_id}: {message}")
        self.calendar_id = calendar_id
        self.status_code = status_code


class PersistenceError(CalendarSyncError):
    """Writing to the event mirror or the sync log failed."""


class SnapshotError(CalendarSyncError):
    """Writing the run snapshot failed. Never fatal to a run."""


class SyncInProgressError(CalendarSyncError):
    """A run is already executing; the new trigger was rejected."""

    def __init__(self, running_label: Optional[str]):
        super().__init__(f"Sync already running (label: {running_label})")
        self.running_label = running_label

"""One end-to-end calendar sync run: fetch, filter, reconcile, snapshot, log."""
import logging
import time
from datetime import date, datetime, timezone
from typing import Callable, List, Optional

from processor.event_filter import ExclusionFilter
from processor.models import (
    ProviderResult,
    SyncOutcome,
    SyncRunResult,
    SyncStatus,
    SyncStep,
    SyncSummary,
    format_timestamp,
)
from processor.time_window import resolve_fetch_window
from provider.google_calendar import GoogleCalendarClient
from storage.event_store import EventStore
from storage.snapshot_writer import build_snapshot_payload
from storage.sync_log import SyncLogRecorder
from sync.config import CalendarSyncConfig
from sync.errors import PersistenceError, SnapshotError

logger = logging.getLogger(__name__)


class _StepTimer:
    def __init__(self, steps: List[SyncStep], step_id: str, label: str):
        self.steps = steps
        self.step_id = step_id
        self.label = label
        self.details = {}

    def __enter__(self):
        self.started = time.monotonic()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.steps.append(SyncStep(
            id=self.step_id,
            label=self.label,
            duration_ms=int((time.monotonic() - self.started) * 1000),
            details=self.details
        ))
        return False


class CalendarSyncEngine:
    """Runs the sync pipeline once per call. Not safe for concurrent calls."""

    def __init__(
        self,
        config: CalendarSyncConfig,
        client: GoogleCalendarClient,
        exclusion_filter: ExclusionFilter,
        event_store: EventStore,
        sync_log: SyncLogRecorder,
        snapshot_writer=None,
        today: Optional[Callable[[], date]] = None
    ):
        """
        Wire the engine's collaborators.

        Args:
            config: Validated configuration
            client: Provider client
            exclusion_filter: Rules deciding which events are stored
            event_store: Event mirror (reconciler)
            sync_log: Audit trail recorder
            snapshot_writer: Object with write(payload) -> path, optional
            today: Callable returning the current date, for tests
        """
        self.config = config
        self.client = client
        self.exclusion_filter = exclusion_filter
        self.event_store = event_store
        self.sync_log = sync_log
        self.snapshot_writer = snapshot_writer
        self.today = today

    def run(
        self,
        trigger_source: str,
        trigger_label: Optional[str] = None,
        trigger_user: Optional[str] = None
    ) -> SyncSummary:
        """
        Execute one sync run and record its outcome.

        Provider failures of single calendars are reported as warnings.
        Persistence failures end the run with an ERROR summary. Anything
        else is recorded as ERROR and re-raised.

        Args:
            trigger_source: What started the run (e.g. "cron:morning", "manual")
            trigger_label: Label of the trigger
            trigger_user: Operator for manual runs

        Returns:
            SyncSummary of the run

        Raises:
            PersistenceError: If the PENDING log entry cannot be created
        """
        log_id = self.sync_log.create(trigger_source, trigger_label, trigger_user)
        summary = SyncSummary(
            log_id=log_id,
            status=SyncStatus.PENDING,
            trigger_source=trigger_source,
            trigger_label=trigger_label
        )

        logger.info(
            "sync.trigger",
            extra={'log_id': log_id, 'trigger_source': trigger_source, 'label': trigger_label}
        )

        try:
            return self._execute(summary)
        except PersistenceError as e:
            return self._fail(summary, str(e))
        except Exception as e:
            self._fail(summary, f"{type(e).__name__}: {e}", exc_info=True)
            raise

    def _execute(self, summary: SyncSummary) -> SyncSummary:
        steps = summary.steps

        window = resolve_fetch_window(
            self.config.sync_start_date,
            self.config.sync_look_ahead_days,
            self.config.time_zone,
            today=self.today() if self.today else None
        )

        with _StepTimer(steps, 'fetch', 'Fetch events') as step:
            results = self.client.fetch_all(list(self.config.calendar_ids), window)
            events, calendars, failures = self._merge(results)
            step.details = {
                'calendars': len(results),
                'failed': len(failures),
                'events': len(events)
            }
        fetched_at = datetime.now(timezone.utc)
        summary.warnings = failures
        summary.fetched_at = format_timestamp(fetched_at)
        summary.events = len(events)

        if results and not calendars:
            return self._fail(summary, "All calendar sources failed: " + '; '.join(failures))

        with _StepTimer(steps, 'exclude', 'Apply exclusion rules') as step:
            kept, excluded = self.exclusion_filter.filter(events)
            step.details = {'kept': len(kept), 'excluded': len(excluded)}

        with _StepTimer(steps, 'upsert', 'Reconcile with event store') as step:
            upsert_result = self.event_store.upsert_events(kept)
            step.details = {
                'inserted': upsert_result.inserted,
                'updated': upsert_result.updated,
                'skipped': upsert_result.skipped
            }

        summary.inserted = upsert_result.inserted
        summary.updated = upsert_result.updated
        summary.skipped = upsert_result.skipped
        summary.excluded = len(excluded)

        run_result = SyncRunResult(
            fetched_at=fetched_at,
            window=window,
            events=events,
            excluded_events=excluded,
            calendars=calendars,
            failures=failures,
            upsert_result=upsert_result,
            steps=steps
        )
        summary.snapshot_path = self._write_snapshot(run_result)

        try:
            self.sync_log.finalize(
                summary.log_id,
                SyncOutcome.success(fetched_at, upsert_result, len(excluded), failures)
            )
        except PersistenceError as e:
            logger.error(
                "sync.finalize_failed",
                extra={'log_id': summary.log_id, 'error': str(e)}
            )
            summary.status = SyncStatus.ERROR
            summary.error = f"Sync log finalize failed: {e}"
            return summary

        summary.status = SyncStatus.SUCCESS
        logger.info(
            "sync.success",
            extra={
                'log_id': summary.log_id,
                'trigger_source': summary.trigger_source,
                'label': summary.trigger_label,
                'events': summary.events,
                'inserted': summary.inserted,
                'updated': summary.updated,
                'skipped': summary.skipped,
                'excluded': summary.excluded,
                'snapshotPath': summary.snapshot_path,
                'warnings': failures
            }
        )
        return summary

    def _merge(self, results: List[ProviderResult]):
        """Flatten per-calendar results into events, per-calendar totals and failures."""
        events = []
        calendars = []
        failures = []

        for result in results:
            if result.succeeded:
                events.extend(result.events)
                calendars.append({
                    'calendarId': result.calendar_id,
                    'totalEvents': len(result.events)
                })
            else:
                failures.append(str(result.error))

        return events, calendars, failures

    def _write_snapshot(self, run_result: SyncRunResult) -> Optional[str]:
        if self.snapshot_writer is None:
            return None

        with _StepTimer(run_result.steps, 'snapshot', 'Write snapshot') as step:
            try:
                path = self.snapshot_writer.write(build_snapshot_payload(run_result))
            except SnapshotError as e:
                logger.warning("sync.snapshot_failed", extra={'error': str(e)})
                step.details = {'error': str(e)}
                return None
            step.details = {'path': path}
        return path

    def _fail(self, summary: SyncSummary, message: str, exc_info: bool = False) -> SyncSummary:
        summary.status = SyncStatus.ERROR
        summary.error = message

        try:
            self.sync_log.finalize(
                summary.log_id,
                SyncOutcome.failure(message, summary.warnings)
            )
        except PersistenceError as e:
            logger.error(
                "sync.finalize_failed",
                extra={'log_id': summary.log_id, 'error': str(e)}
            )

        logger.error(
            "sync.error",
            extra={
                'log_id': summary.log_id,
                'trigger_source': summary.trigger_source,
                'label': summary.trigger_label,
                'error': message
            },
            exc_info=exc_info
        )
        return summary

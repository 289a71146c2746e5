"""Wiring and long-running process entry point for the calendar sync engine."""
import logging
import os
import signal
import threading
from typing import Mapping, Optional

from processor.event_filter import ExclusionFilter
from provider.google_calendar import GoogleCalendarClient
from storage.event_store import EventStore
from storage.snapshot_writer import FileSnapshotWriter, S3SnapshotWriter
from storage.sync_log import SyncLogRecorder
from sync.config import CalendarSyncConfig, load_config
from sync.engine import CalendarSyncEngine
from sync.errors import ConfigurationError
from sync.log_format import setup_logging
from sync.scheduler import SyncScheduler

logger = logging.getLogger(__name__)


def build_snapshot_writer(config: CalendarSyncConfig):
    if config.snapshot_bucket:
        return S3SnapshotWriter(config.snapshot_bucket)
    return FileSnapshotWriter(config.snapshot_dir)


def build_engine(config: CalendarSyncConfig, dynamodb=None) -> CalendarSyncEngine:
    """
    Instantiate the engine and its collaborators from configuration.

    Args:
        config: Validated configuration
        dynamodb: Optional boto3 DynamoDB resource shared by both tables

    Returns:
        CalendarSyncEngine
    """
    client = GoogleCalendarClient(
        service_account_email=config.service_account_email,
        private_key=config.private_key,
        impersonate_user=config.impersonate_user,
        timeout=config.timeout_seconds,
        max_workers=config.max_fetch_workers
    )
    exclusion_filter = ExclusionFilter(
        denylisted_calendar_ids=config.denylisted_calendar_ids,
        denylisted_event_types=config.denylisted_event_types,
        exclude_summary_patterns=config.exclude_summary_patterns,
        include_private_events=config.include_private_events
    )
    return CalendarSyncEngine(
        config=config,
        client=client,
        exclusion_filter=exclusion_filter,
        event_store=EventStore(config.events_table_name, dynamodb=dynamodb),
        sync_log=SyncLogRecorder(config.sync_log_table_name, dynamodb=dynamodb),
        snapshot_writer=build_snapshot_writer(config)
    )


def create_scheduler(environ: Optional[Mapping[str, str]] = None) -> Optional[SyncScheduler]:
    """
    Build a scheduler, or None when configuration is incomplete.

    A missing credential disables the engine for the lifetime of the
    process; the failure is logged once here.

    Args:
        environ: Mapping to read configuration from, defaults to os.environ

    Returns:
        SyncScheduler (not yet started) or None
    """
    try:
        config = load_config(environ)
    except ConfigurationError as e:
        logger.warning(
            "googleCalendar.scheduler.disabled",
            extra={'reason': 'missing_config', 'missing': e.missing}
        )
        return None

    return SyncScheduler(build_engine(config), config.time_zone)


def main() -> int:
    """Run the cron scheduler until SIGINT or SIGTERM."""
    setup_logging(os.environ.get('LOG_LEVEL', 'INFO'))
    scheduler = create_scheduler()
    if scheduler is None:
        return 1

    stop_event = threading.Event()

    def _shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    scheduler.start()
    try:
        stop_event.wait()
    finally:
        scheduler.stop()
    return 0


if __name__ == '__main__':
    raise SystemExit(main())

"""AWS Lambda handler for Google Calendar Sync."""
import json
import logging
import os
import time
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from processor.models import SyncStatus
from sync.config import load_config
from sync.errors import ConfigurationError, PersistenceError, SyncInProgressError
from sync.log_format import setup_logging
from sync.scheduler import SyncScheduler
from sync.service import build_engine

DEFAULT_LOG_LIMIT = 50
DEFAULT_STALE_MINUTES = 30

# One scheduler per warm container; its guard serializes runs in this process.
_scheduler: Optional[SyncScheduler] = None
# Set when configuration is incomplete; the container stays disabled.
_config_error: Optional[ConfigurationError] = None


def get_scheduler() -> SyncScheduler:
    """
    Return the container-wide scheduler, building it on first use.

    A configuration failure is logged once and remembered, so later
    invocations in the same container fail fast without re-reading the
    environment.

    Raises:
        ConfigurationError: If mandatory configuration is missing
    """
    global _scheduler, _config_error
    if _config_error is not None:
        raise _config_error
    if _scheduler is None:
        try:
            config = load_config()
        except ConfigurationError as e:
            _config_error = e
            logging.getLogger(__name__).warning(
                "googleCalendar.scheduler.disabled",
                extra={'reason': 'missing_config', 'missing': e.missing}
            )
            raise
        _scheduler = SyncScheduler(build_engine(config), config.time_zone)
    return _scheduler


def resolve_trigger(event: Dict[str, Any]) -> Tuple[str, str, Optional[str]]:
    """
    Map an invocation payload to (trigger_source, trigger_label, trigger_user).

    EventBridge scheduled events become cron triggers labelled with the rule
    name; everything else is a manual trigger unless it says otherwise.

    Args:
        event: Lambda event payload

    Returns:
        Tuple of trigger source, label and optional user
    """
    if event.get('source') == 'aws.events':
        resources = event.get('resources') or []
        rule_name = resources[0].split('/')[-1] if resources else 'scheduled'
        label = event.get('label') or rule_name
        return f"cron:{label}", label, None

    if event.get('trigger') == 'cron':
        label = event.get('label') or 'scheduled'
        return f"cron:{label}", label, None

    return 'manual', event.get('label') or 'manual', event.get('user')


def _response(status_code: int, body: Dict[str, Any], start_time: float) -> Dict[str, Any]:
    body['duration_seconds'] = round(time.time() - start_time, 2)
    return {
        'statusCode': status_code,
        'body': json.dumps(body, default=str)
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for Google Calendar Sync.

    Args:
        event: EventBridge scheduled event or manual invocation payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and a JSON body
    """
    event = event or {}
    log_level = os.environ.get('LOG_LEVEL', 'INFO')

    setup_logging(log_level)
    logger = logging.getLogger(__name__)

    start_time = time.time()
    action = event.get('action', 'sync')
    logger.info("Lambda execution started", extra={'action': action})

    try:
        scheduler = get_scheduler()
    except ConfigurationError as e:
        return _response(503, {
            'message': 'Calendar sync is disabled',
            'error': str(e),
            'missing': e.missing
        }, start_time)

    if action == 'logs':
        return _list_logs(scheduler, event, start_time, logger)
    if action == 'stale':
        return _list_stale(scheduler, event, start_time, logger)
    if action != 'sync':
        return _response(400, {'message': f"Unknown action: {action}"}, start_time)

    trigger_source, trigger_label, trigger_user = resolve_trigger(event)

    try:
        summary = scheduler.run_once(trigger_source, trigger_label, trigger_user)

    except SyncInProgressError as e:
        logger.warning(
            "sync.rejected",
            extra={'label': trigger_label, 'running_label': e.running_label}
        )
        return _response(409, {
            'message': 'Sync already running',
            'running_label': e.running_label
        }, start_time)

    except PersistenceError as e:
        logger.error(
            f"Could not record sync start: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return _response(500, {
            'message': 'Failed to create sync log entry',
            'error': str(e),
            'error_type': type(e).__name__
        }, start_time)

    except Exception as e:
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return _response(500, {
            'message': 'Sync failed',
            'error': str(e),
            'error_type': type(e).__name__
        }, start_time)

    if summary.status == SyncStatus.SUCCESS:
        logger.info("Lambda execution completed successfully", extra={'log_id': summary.log_id})
        return _response(200, {
            'message': 'Sync completed successfully',
            'summary': summary.to_dict()
        }, start_time)

    logger.error("Lambda execution completed with errors", extra={'log_id': summary.log_id})
    return _response(500, {
        'message': 'Sync failed',
        'error': summary.error,
        'summary': summary.to_dict()
    }, start_time)


def _list_logs(scheduler: SyncScheduler, event, start_time, logger) -> Dict[str, Any]:
    limit = _int_param(event.get('limit'), DEFAULT_LOG_LIMIT)
    try:
        entries = scheduler.engine.sync_log.list_recent(limit)
    except PersistenceError as e:
        logger.error(f"Failed to list sync logs: {str(e)}", exc_info=True)
        return _response(500, {'message': 'Failed to list sync logs', 'error': str(e)}, start_time)

    return _response(200, {
        'status': 'ok',
        'logs': [entry.to_dict() for entry in entries]
    }, start_time)


def _list_stale(scheduler: SyncScheduler, event, start_time, logger) -> Dict[str, Any]:
    minutes = _int_param(event.get('minutes'), DEFAULT_STALE_MINUTES)
    try:
        entries = scheduler.engine.sync_log.find_stale_pending(timedelta(minutes=minutes))
    except PersistenceError as e:
        logger.error(f"Failed to list stale sync logs: {str(e)}", exc_info=True)
        return _response(500, {'message': 'Failed to list stale sync logs', 'error': str(e)}, start_time)

    if entries:
        logger.warning(
            f"Found {len(entries)} sync runs stuck in PENDING",
            extra={'log_ids': [entry.log_id for entry in entries]}
        )
    return _response(200, {
        'status': 'ok',
        'older_than_minutes': minutes,
        'stale': [entry.to_dict() for entry in entries]
    }, start_time)


def _int_param(value, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default

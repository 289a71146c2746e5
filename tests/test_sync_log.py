"""Unit tests for the sync log recorder."""
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest
from botocore.exceptions import ClientError

from processor.models import SyncOutcome, SyncStatus, UpsertResult
from storage.sync_log import SyncLogRecorder
from sync.errors import PersistenceError


@pytest.fixture
def recorder(dynamodb):
    return SyncLogRecorder('test-calendar-sync-log', dynamodb=dynamodb, base_delay=0)


def _success_outcome():
    return SyncOutcome.success(
        fetched_at=datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc),
        upsert_result=UpsertResult(attempted=3, inserted=3, updated=0, skipped=0),
        excluded=1,
        warnings=['B: HTTP 404: Not Found']
    )


def test_create_writes_pending_entry(recorder):
    log_id = recorder.create('cron:morning', 'morning')

    entry = recorder.get(log_id)

    assert entry.status == SyncStatus.PENDING
    assert entry.trigger_source == 'cron:morning'
    assert entry.trigger_label == 'morning'
    assert entry.finalized_at is None
    assert entry.inserted is None
    assert entry.fetched_at is None


def test_create_records_trigger_user(recorder):
    log_id = recorder.create('manual', 'manual', trigger_user='ops@example.com')

    assert recorder.get(log_id).trigger_user == 'ops@example.com'


def test_finalize_success(recorder):
    log_id = recorder.create('manual', 'manual')

    assert recorder.finalize(log_id, _success_outcome()) is True

    entry = recorder.get(log_id)
    assert entry.status == SyncStatus.SUCCESS
    assert entry.inserted == 3
    assert entry.updated == 0
    assert entry.skipped == 0
    assert entry.excluded == 1
    assert entry.fetched_at == '2024-01-15T12:00:00.000000Z'
    assert entry.finalized_at is not None
    assert entry.error_message is None
    assert entry.warnings == ['B: HTTP 404: Not Found']


def test_finalize_error(recorder):
    log_id = recorder.create('cron:evening', 'evening')

    recorder.finalize(log_id, SyncOutcome.failure('Error writing event A/evt-1'))

    entry = recorder.get(log_id)
    assert entry.status == SyncStatus.ERROR
    assert entry.error_message == 'Error writing event A/evt-1'
    assert entry.inserted is None
    assert entry.fetched_at is None


def test_finalize_is_idempotent(recorder):
    """A second finalize leaves the first terminal state untouched."""
    log_id = recorder.create('manual', 'manual')
    recorder.finalize(log_id, _success_outcome())

    assert recorder.finalize(log_id, SyncOutcome.failure('late retry')) is False

    entry = recorder.get(log_id)
    assert entry.status == SyncStatus.SUCCESS
    assert entry.error_message is None


def test_finalize_rejects_pending_outcome(recorder):
    log_id = recorder.create('manual', 'manual')

    with pytest.raises(ValueError):
        recorder.finalize(log_id, SyncOutcome(status=SyncStatus.PENDING))


def test_finalize_retries_transient_errors():
    table = Mock()
    table.update_item.side_effect = [
        ClientError(
            {'Error': {'Code': 'ProvisionedThroughputExceededException', 'Message': 'slow down'}},
            'UpdateItem'
        ),
        {}
    ]
    resource = Mock()
    resource.Table.return_value = table
    recorder = SyncLogRecorder('test-calendar-sync-log', dynamodb=resource, base_delay=0)

    with patch('storage.sync_log.time.sleep'):
        assert recorder.finalize('abc', _success_outcome()) is True

    assert table.update_item.call_count == 2


def test_finalize_gives_up_after_max_attempts():
    table = Mock()
    table.update_item.side_effect = ClientError(
        {'Error': {'Code': 'ThrottlingException', 'Message': 'slow down'}},
        'UpdateItem'
    )
    resource = Mock()
    resource.Table.return_value = table
    recorder = SyncLogRecorder(
        'test-calendar-sync-log', dynamodb=resource, max_attempts=3, base_delay=0
    )

    with patch('storage.sync_log.time.sleep'):
        with pytest.raises(PersistenceError):
            recorder.finalize('abc', _success_outcome())

    assert table.update_item.call_count == 3


def test_finalize_does_not_retry_other_errors():
    table = Mock()
    table.update_item.side_effect = ClientError(
        {'Error': {'Code': 'ValidationException', 'Message': 'bad'}},
        'UpdateItem'
    )
    resource = Mock()
    resource.Table.return_value = table
    recorder = SyncLogRecorder('test-calendar-sync-log', dynamodb=resource, base_delay=0)

    with pytest.raises(PersistenceError):
        recorder.finalize('abc', _success_outcome())

    assert table.update_item.call_count == 1


def test_create_failure_raises_persistence_error():
    table = Mock()
    table.put_item.side_effect = ClientError(
        {'Error': {'Code': 'ResourceNotFoundException', 'Message': 'no table'}},
        'PutItem'
    )
    resource = Mock()
    resource.Table.return_value = table
    recorder = SyncLogRecorder('test-calendar-sync-log', dynamodb=resource)

    with pytest.raises(PersistenceError):
        recorder.create('manual')


def test_list_recent_newest_first(recorder):
    ids = []
    for label in ('first', 'second', 'third'):
        with patch('storage.sync_log.datetime') as mock_datetime:
            mock_datetime.now.return_value = datetime(
                2024, 1, 10 + len(ids), 9, 0, tzinfo=timezone.utc
            )
            ids.append(recorder.create('manual', label))

    entries = recorder.list_recent(limit=2)

    assert [entry.trigger_label for entry in entries] == ['third', 'second']


def test_find_stale_pending(recorder):
    """Only PENDING entries older than the threshold are reported."""
    now = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

    with patch('storage.sync_log.datetime') as mock_datetime:
        mock_datetime.now.return_value = now - timedelta(hours=2)
        stale_id = recorder.create('cron:morning', 'morning')
        finished_id = recorder.create('cron:morning', 'morning')
        mock_datetime.now.return_value = now - timedelta(minutes=5)
        recorder.create('manual', 'manual')

    recorder.finalize(finished_id, _success_outcome())

    stale = recorder.find_stale_pending(timedelta(minutes=30), now=now)

    assert [entry.log_id for entry in stale] == [stale_id]

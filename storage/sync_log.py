"""Audit trail of sync runs stored in DynamoDB."""
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from processor.models import SyncLogEntry, SyncOutcome, SyncStatus, format_timestamp
from sync.errors import PersistenceError

logger = logging.getLogger(__name__)


class SyncLogRecorder:
    """
    Records one SyncLogEntry per attempted run.

    Entries are created PENDING before the provider is contacted and are
    finalized exactly once. Finalization is a conditional update on the
    PENDING status, so repeated or retried calls cannot overwrite a
    terminal state.
    """

    TRANSIENT_ERRORS = {
        'ProvisionedThroughputExceededException',
        'ThrottlingException',
        'RequestLimitExceeded',
        'InternalServerError',
        'ServiceUnavailable'
    }

    def __init__(self, table_name: str, dynamodb=None, max_attempts: int = 3, base_delay: float = 0.5):
        """
        Initialize DynamoDB resource and table reference.

        Args:
            table_name: Name of the sync log table
            dynamodb: Optional boto3 DynamoDB resource
            max_attempts: Attempts for finalize on transient errors
            base_delay: Initial backoff delay in seconds
        """
        self.table_name = table_name
        self.dynamodb = dynamodb or boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay

    def create(
        self,
        trigger_source: str,
        trigger_label: Optional[str] = None,
        trigger_user: Optional[str] = None
    ) -> str:
        """
        Insert a PENDING entry for a run that is about to start.

        Args:
            trigger_source: What started the run (e.g. "cron:morning", "manual")
            trigger_label: Human readable label
            trigger_user: Operator that requested a manual run

        Returns:
            Identifier of the new entry

        Raises:
            PersistenceError: If the entry cannot be written
        """
        log_id = uuid.uuid4().hex
        item = {
            'log_id': log_id,
            'trigger_source': trigger_source,
            'status': SyncStatus.PENDING.value,
            'created_at': format_timestamp(datetime.now(timezone.utc))
        }
        if trigger_label:
            item['trigger_label'] = trigger_label
        if trigger_user:
            item['trigger_user'] = trigger_user

        try:
            self.table.put_item(
                Item=item,
                ConditionExpression='attribute_not_exists(log_id)'
            )
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(f"Error creating sync log entry: {e}") from e

        logger.info(f"Created sync log entry {log_id}", extra={'log_id': log_id})
        return log_id

    def finalize(self, log_id: str, outcome: SyncOutcome) -> bool:
        """
        Move a PENDING entry to SUCCESS or ERROR.

        Transient DynamoDB errors are retried with exponential backoff. The
        conditional update makes the retries safe: once any attempt lands,
        later ones fail the condition and change nothing.

        Args:
            log_id: Entry to finalize
            outcome: Terminal status with counters or error message

        Returns:
            True if this call finalized the entry, False if it was not PENDING

        Raises:
            PersistenceError: If the update fails after all attempts
        """
        if outcome.status == SyncStatus.PENDING:
            raise ValueError("Cannot finalize a sync log entry as PENDING")

        fields = {
            'status': outcome.status.value,
            'finalized_at': format_timestamp(datetime.now(timezone.utc)),
            'fetched_at': format_timestamp(outcome.fetched_at),
            'inserted': outcome.inserted,
            'updated': outcome.updated,
            'skipped': outcome.skipped,
            'excluded': outcome.excluded,
            'error_message': outcome.error_message,
            'warnings': list(outcome.warnings) if outcome.warnings else None
        }
        fields = {name: value for name, value in fields.items() if value is not None}

        names = {'#status': 'status'}
        values = {':pending': SyncStatus.PENDING.value}
        assignments = []
        for name, value in fields.items():
            names[f'#{name}'] = name
            values[f':{name}'] = value
            assignments.append(f'#{name} = :{name}')

        for attempt in range(self.max_attempts):
            try:
                self.table.update_item(
                    Key={'log_id': log_id},
                    UpdateExpression='SET ' + ', '.join(assignments),
                    ConditionExpression='#status = :pending',
                    ExpressionAttributeNames=names,
                    ExpressionAttributeValues=values
                )
                logger.info(
                    f"Finalized sync log entry {log_id} as {outcome.status.value}",
                    extra={'log_id': log_id}
                )
                return True

            except ClientError as e:
                code = e.response.get('Error', {}).get('Code')
                if code == 'ConditionalCheckFailedException':
                    logger.info(
                        f"Sync log entry {log_id} is not PENDING, leaving it unchanged",
                        extra={'log_id': log_id}
                    )
                    return False
                if code in self.TRANSIENT_ERRORS and attempt < self.max_attempts - 1:
                    delay = self.base_delay * (2 ** attempt)
                    logger.warning(
                        f"Finalize of {log_id} failed (attempt {attempt + 1}/"
                        f"{self.max_attempts}): {code}. Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                    continue
                raise PersistenceError(f"Error finalizing sync log entry {log_id}: {e}") from e

            except BotoCoreError as e:
                raise PersistenceError(f"Error finalizing sync log entry {log_id}: {e}") from e

        raise PersistenceError(f"Error finalizing sync log entry {log_id}")

    def get(self, log_id: str) -> Optional[SyncLogEntry]:
        try:
            response = self.table.get_item(Key={'log_id': log_id})
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(f"Error reading sync log entry {log_id}: {e}") from e

        item = response.get('Item')
        return self._item_to_entry(item) if item else None

    def list_recent(self, limit: int = 50) -> List[SyncLogEntry]:
        """
        Return the newest entries first.

        Args:
            limit: Maximum number of entries

        Returns:
            List of SyncLogEntry objects
        """
        entries = self._scan()
        entries.sort(key=lambda entry: entry.created_at, reverse=True)
        return entries[:max(0, limit)]

    def find_stale_pending(
        self,
        older_than: timedelta,
        now: Optional[datetime] = None
    ) -> List[SyncLogEntry]:
        """
        Find PENDING entries created before now - older_than.

        Such entries belong to runs that crashed before finalizing. They are
        reported for operators and never repaired here.

        Args:
            older_than: Expected maximum run duration
            now: Reference time, defaults to the current UTC time

        Returns:
            Stale entries, oldest first
        """
        cutoff = format_timestamp((now or datetime.now(timezone.utc)) - older_than)
        entries = self._scan(
            FilterExpression=Attr('status').eq(SyncStatus.PENDING.value)
            & Attr('created_at').lt(cutoff)
        )
        entries.sort(key=lambda entry: entry.created_at)
        return entries

    def _scan(self, **kwargs) -> List[SyncLogEntry]:
        try:
            response = self.table.scan(**kwargs)
            items = response.get('Items', [])

            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey'], **kwargs
                )
                items.extend(response.get('Items', []))
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(f"Error scanning sync log table: {e}") from e

        return [entry for entry in map(self._item_to_entry, items) if entry]

    def _item_to_entry(self, item: dict) -> Optional[SyncLogEntry]:
        try:
            return SyncLogEntry(
                log_id=item['log_id'],
                trigger_source=item['trigger_source'],
                trigger_label=item.get('trigger_label'),
                trigger_user=item.get('trigger_user'),
                status=SyncStatus(item['status']),
                created_at=item['created_at'],
                finalized_at=item.get('finalized_at'),
                fetched_at=item.get('fetched_at'),
                inserted=_as_int(item.get('inserted')),
                updated=_as_int(item.get('updated')),
                skipped=_as_int(item.get('skipped')),
                excluded=_as_int(item.get('excluded')),
                error_message=item.get('error_message'),
                warnings=list(item.get('warnings') or [])
            )
        except (KeyError, ValueError) as e:
            logger.warning(f"Failed to convert item to SyncLogEntry: {e}")
            return None


def _as_int(value) -> Optional[int]:
    return None if value is None else int(value)

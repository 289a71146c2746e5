"""DynamoDB-backed mirror of calendar events with watermark-based upserts."""
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from processor.models import (
    CalendarEvent,
    EventKey,
    PersistedEventRecord,
    UpsertResult,
    format_timestamp,
)
from sync.errors import PersistenceError

logger = logging.getLogger(__name__)

INSERTED = 'inserted'
UPDATED = 'updated'
SKIPPED = 'skipped'


def classify_event(
    incoming_watermark: Optional[str],
    exists: bool,
    stored_watermark: Optional[str]
) -> str:
    """
    Decide what the upsert does with one incoming event.

    Watermarks are fixed-width UTC strings, so string order is time order.

    Args:
        incoming_watermark: Provider last-modified of the fetched event
        exists: Whether a record with the same key is stored
        stored_watermark: Watermark of the stored record

    Returns:
        INSERTED, UPDATED or SKIPPED
    """
    if not exists:
        return INSERTED
    if incoming_watermark is None:
        return SKIPPED
    if stored_watermark is None or incoming_watermark > stored_watermark:
        return UPDATED
    return SKIPPED


class EventStore:
    """Event mirror stored in a DynamoDB table keyed by (calendar_id, event_id)."""

    LOOKUP_BATCH_SIZE = 100  # DynamoDB batch_get_item limit
    MAX_TEXT_LENGTH = 512

    def __init__(self, table_name: str, dynamodb=None):
        """
        Initialize DynamoDB resource and table reference.

        Args:
            table_name: Name of the events table
            dynamodb: Optional boto3 DynamoDB resource
        """
        self.table_name = table_name
        self.dynamodb = dynamodb or boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized EventStore for table: {table_name}")

    def get_event(self, calendar_id: str, event_id: str) -> Optional[PersistedEventRecord]:
        """
        Fetch a single stored record.

        Args:
            calendar_id: Source calendar
            event_id: Provider event id

        Returns:
            PersistedEventRecord or None if absent
        """
        try:
            response = self.table.get_item(
                Key={'calendar_id': calendar_id, 'event_id': event_id}
            )
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(f"Error reading event {calendar_id}/{event_id}: {e}") from e

        item = response.get('Item')
        return self._item_to_record(item) if item else None

    def get_existing(self, keys: Iterable[EventKey]) -> Dict[EventKey, Optional[str]]:
        """
        Look up stored watermarks for the given keys.

        Args:
            keys: Event keys to look up

        Returns:
            Mapping of each stored key to its watermark (None if unset).
            Keys without a stored record are absent from the mapping.
        """
        keys = list(dict.fromkeys(keys))
        existing = {}

        for i in range(0, len(keys), self.LOOKUP_BATCH_SIZE):
            batch = keys[i:i + self.LOOKUP_BATCH_SIZE]
            request = {
                self.table_name: {
                    'Keys': [
                        {'calendar_id': calendar_id, 'event_id': event_id}
                        for calendar_id, event_id in batch
                    ],
                    'ProjectionExpression': 'calendar_id, event_id, provider_updated_at'
                }
            }

            try:
                while request:
                    response = self.dynamodb.batch_get_item(RequestItems=request)
                    for item in response.get('Responses', {}).get(self.table_name, []):
                        key = (item['calendar_id'], item['event_id'])
                        existing[key] = item.get('provider_updated_at')
                    request = response.get('UnprocessedKeys') or None
            except (ClientError, BotoCoreError) as e:
                raise PersistenceError(
                    f"Error looking up batch {i // self.LOOKUP_BATCH_SIZE + 1}: {e}"
                ) from e

        return existing

    def upsert_events(self, events: List[CalendarEvent]) -> UpsertResult:
        """
        Insert new events and overwrite stored ones whose watermark advanced.

        Every write is a single conditional put, so a record is never left
        half-written. A failed condition means another writer stored an
        equal or newer version first; the event is then counted as skipped.
        Events missing from the fetch are never deleted.

        Args:
            events: Kept events of the current run

        Returns:
            UpsertResult with inserted/updated/skipped counters

        Raises:
            PersistenceError: If DynamoDB rejects a read or write
        """
        result = UpsertResult()
        if not events:
            return result

        latest = {}
        for event in events:
            previous = latest.get(event.key)
            if previous is None or _watermark(event) >= _watermark(previous):
                latest[event.key] = event
        result.skipped += len(events) - len(latest)
        result.attempted = len(events)

        existing = self.get_existing(latest.keys())
        synced_at = format_timestamp(datetime.now(timezone.utc))

        logger.info(
            f"Upserting {len(latest)} events ({len(existing)} already stored)"
        )

        for key, event in latest.items():
            incoming = _watermark(event) or None
            action = classify_event(incoming, key in existing, existing.get(key))

            if action == SKIPPED:
                result.skipped += 1
                continue

            record = self._event_to_record(event, synced_at)
            if self._put_record(record, action):
                if action == INSERTED:
                    result.inserted += 1
                else:
                    result.updated += 1
            else:
                result.skipped += 1

        logger.info(
            f"Upsert complete: {result.inserted} inserted, {result.updated} updated, "
            f"{result.skipped} skipped"
        )
        return result

    def _put_record(self, record: PersistedEventRecord, action: str) -> bool:
        """
        Write a record conditionally.

        Args:
            record: Record to write
            action: INSERTED or UPDATED

        Returns:
            True if written, False if the condition failed

        Raises:
            PersistenceError: On any other DynamoDB error
        """
        item = self._record_to_item(record)

        if action == INSERTED:
            kwargs = {'ConditionExpression': 'attribute_not_exists(event_id)'}
        else:
            kwargs = {
                'ConditionExpression': (
                    'attribute_not_exists(provider_updated_at) '
                    'OR provider_updated_at < :incoming'
                ),
                'ExpressionAttributeValues': {':incoming': record.provider_updated_at}
            }

        try:
            self.table.put_item(Item=item, **kwargs)
            return True
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == 'ConditionalCheckFailedException':
                logger.debug(
                    f"Skipped {record.calendar_id}/{record.event_id}: "
                    f"stored version is newer"
                )
                return False
            raise PersistenceError(
                f"Error writing event {record.calendar_id}/{record.event_id}: {e}"
            ) from e
        except BotoCoreError as e:
            raise PersistenceError(
                f"Error writing event {record.calendar_id}/{record.event_id}: {e}"
            ) from e

    def _event_to_record(self, event: CalendarEvent, synced_at: str) -> PersistedEventRecord:
        return PersistedEventRecord(
            calendar_id=event.calendar_id,
            event_id=event.event_id,
            title=_truncate(event.title, self.MAX_TEXT_LENGTH),
            description=event.description,
            status=event.status,
            event_type=event.event_type,
            start=event.start.isoformat() if event.start else None,
            end=event.end.isoformat() if event.end else None,
            all_day=event.all_day,
            location=_truncate(event.location, self.MAX_TEXT_LENGTH),
            visibility=event.visibility,
            transparency=event.transparency,
            color_id=event.color_id,
            hangout_link=_truncate(event.hangout_link, self.MAX_TEXT_LENGTH),
            provider_created_at=format_timestamp(event.created),
            provider_updated_at=format_timestamp(event.watermark),
            synced_at=synced_at,
            raw_event=json.dumps(event.raw, sort_keys=True, default=str) if event.raw else None
        )

    def _record_to_item(self, record: PersistedEventRecord) -> dict:
        """
        Convert a record to a DynamoDB item.

        Unset fields are left out of the item rather than stored as NULL so
        the watermark condition can test for attribute existence.

        Args:
            record: PersistedEventRecord

        Returns:
            DynamoDB item dictionary
        """
        item = {
            'calendar_id': record.calendar_id,
            'event_id': record.event_id,
            'all_day': record.all_day,
            'synced_at': record.synced_at
        }

        optional = {
            'title': record.title,
            'description': record.description,
            'event_status': record.status,
            'event_type': record.event_type,
            'start': record.start,
            'end': record.end,
            'location': record.location,
            'visibility': record.visibility,
            'transparency': record.transparency,
            'color_id': record.color_id,
            'hangout_link': record.hangout_link,
            'provider_created_at': record.provider_created_at,
            'provider_updated_at': record.provider_updated_at,
            'raw_event': record.raw_event
        }
        for name, value in optional.items():
            if value is not None:
                item[name] = value

        return item

    def _item_to_record(self, item: dict) -> Optional[PersistedEventRecord]:
        """
        Convert a DynamoDB item to a PersistedEventRecord.

        Args:
            item: DynamoDB item dictionary

        Returns:
            PersistedEventRecord or None if conversion fails
        """
        try:
            return PersistedEventRecord(
                calendar_id=item['calendar_id'],
                event_id=item['event_id'],
                title=item.get('title'),
                description=item.get('description'),
                status=item.get('event_status'),
                event_type=item.get('event_type'),
                start=item.get('start'),
                end=item.get('end'),
                all_day=bool(item.get('all_day', False)),
                location=item.get('location'),
                visibility=item.get('visibility'),
                transparency=item.get('transparency'),
                color_id=item.get('color_id'),
                hangout_link=item.get('hangout_link'),
                provider_created_at=item.get('provider_created_at'),
                provider_updated_at=item.get('provider_updated_at'),
                synced_at=item['synced_at'],
                raw_event=item.get('raw_event')
            )
        except KeyError as e:
            logger.warning(f"Failed to convert item to PersistedEventRecord: {e}")
            return None


def _watermark(event: CalendarEvent) -> str:
    return format_timestamp(event.watermark) or ''


def _truncate(value: Optional[str], length: int) -> Optional[str]:
    if value is None:
        return None
    return value[:length]

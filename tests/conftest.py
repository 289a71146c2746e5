"""Shared fixtures for calendar sync tests."""
from datetime import datetime, timedelta, timezone

import boto3
import pytest
from moto import mock_aws

from processor.models import CalendarEvent, parse_timestamp


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Keep boto3 away from real credentials."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def dynamodb():
    """Mock DynamoDB with the events and sync log tables."""
    with mock_aws():
        resource = boto3.resource('dynamodb', region_name='us-east-1')

        resource.create_table(
            TableName='test-calendar-events',
            KeySchema=[
                {'AttributeName': 'calendar_id', 'KeyType': 'HASH'},
                {'AttributeName': 'event_id', 'KeyType': 'RANGE'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'calendar_id', 'AttributeType': 'S'},
                {'AttributeName': 'event_id', 'AttributeType': 'S'}
            ],
            BillingMode='PAY_PER_REQUEST'
        )
        resource.create_table(
            TableName='test-calendar-sync-log',
            KeySchema=[
                {'AttributeName': 'log_id', 'KeyType': 'HASH'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'log_id', 'AttributeType': 'S'}
            ],
            BillingMode='PAY_PER_REQUEST'
        )

        yield resource


@pytest.fixture
def stored_keys(dynamodb):
    """Return a callable listing the (calendar_id, event_id) keys in the events table."""
    def _stored_keys():
        table = dynamodb.Table('test-calendar-events')
        response = table.scan()
        items = response.get('Items', [])
        while 'LastEvaluatedKey' in response:
            response = table.scan(ExclusiveStartKey=response['LastEvaluatedKey'])
            items.extend(response.get('Items', []))
        return {(item['calendar_id'], item['event_id']) for item in items}

    return _stored_keys


@pytest.fixture
def make_event():
    """Factory for CalendarEvent objects with sensible defaults."""
    def _make_event(
        event_id='evt-1',
        calendar_id='A',
        title='Consulta control',
        updated='2024-01-10T12:00:00.000Z',
        status='confirmed',
        **overrides
    ):
        start = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
        raw = {
            'id': event_id,
            'summary': title,
            'status': status,
            'updated': updated,
            'start': {'dateTime': start.isoformat()},
            'end': {'dateTime': (start + timedelta(hours=1)).isoformat()}
        }
        fields = {
            'calendar_id': calendar_id,
            'event_id': event_id,
            'title': title,
            'start': start,
            'end': start + timedelta(hours=1),
            'status': status,
            'location': 'Consulta 1',
            'created': parse_timestamp('2024-01-01T08:00:00.000Z'),
            'updated': parse_timestamp(updated),
            'raw': raw
        }
        fields.update(overrides)
        return CalendarEvent(**fields)

    return _make_event

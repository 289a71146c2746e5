"""Best-effort snapshots of each run's fetched payload."""
import json
import logging
from pathlib import Path
from typing import Any, Dict

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from processor.models import SyncRunResult, format_timestamp
from sync.errors import SnapshotError

logger = logging.getLogger(__name__)

LATEST_NAME = 'latest.json'


def build_snapshot_payload(result: SyncRunResult) -> Dict[str, Any]:
    """
    Build the replayable JSON document for a run.

    Args:
        result: Outcome of the run

    Returns:
        JSON-serializable dictionary with the raw provider items
    """
    return {
        'fetchedAt': format_timestamp(result.fetched_at),
        'timeMin': result.window.time_min.isoformat(),
        'timeMax': result.window.time_max.isoformat(),
        'timeZone': result.window.time_zone,
        'calendars': result.calendars,
        'failures': result.failures,
        'events': [dict(event.raw, calendarId=event.calendar_id) for event in result.events],
        'excludedEvents': [
            dict(event.raw, calendarId=event.calendar_id) for event in result.excluded_events
        ]
    }


def snapshot_name(payload: Dict[str, Any]) -> str:
    timestamp = payload['fetchedAt'].replace(':', '-').replace('.', '-')
    return f"events-{timestamp}.json"


class S3SnapshotWriter:
    """Writes snapshots to an S3 bucket."""

    def __init__(self, bucket: str, prefix: str = 'google-calendar', s3_client=None):
        """
        Args:
            bucket: Target bucket
            prefix: Key prefix for snapshot objects
            s3_client: Optional boto3 S3 client
        """
        self.bucket = bucket
        self.prefix = prefix.strip('/')
        self.s3 = s3_client or boto3.client('s3')

    def write(self, payload: Dict[str, Any]) -> str:
        """
        Store the payload under a timestamped key and as latest.json.

        Args:
            payload: Snapshot document

        Returns:
            s3:// URI of the timestamped object

        Raises:
            SnapshotError: If either object cannot be written
        """
        body = json.dumps(payload, indent=2, default=str).encode('utf-8')
        key = f"{self.prefix}/{snapshot_name(payload)}"
        latest_key = f"{self.prefix}/{LATEST_NAME}"

        try:
            for target in (key, latest_key):
                self.s3.put_object(
                    Bucket=self.bucket,
                    Key=target,
                    Body=body,
                    ContentType='application/json'
                )
        except (ClientError, BotoCoreError) as e:
            raise SnapshotError(f"Error writing snapshot to s3://{self.bucket}/{key}: {e}") from e

        path = f"s3://{self.bucket}/{key}"
        logger.info(f"Wrote snapshot {path}")
        return path


class FileSnapshotWriter:
    """Writes snapshots to a local directory."""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def write(self, payload: Dict[str, Any]) -> str:
        serialized = json.dumps(payload, indent=2, default=str)
        path = self.directory / snapshot_name(payload)

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            path.write_text(serialized, encoding='utf-8')
            (self.directory / LATEST_NAME).write_text(serialized, encoding='utf-8')
        except OSError as e:
            raise SnapshotError(f"Error writing snapshot to {path}: {e}") from e

        logger.info(f"Wrote snapshot {path}")
        return str(path)

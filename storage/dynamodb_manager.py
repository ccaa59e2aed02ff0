"""DynamoDB manager for the cached calendar event table."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from processor.models import CachedCalendarEvent

logger = logging.getLogger(__name__)

ISO_FORMAT = '%Y-%m-%dT%H:%M:%SZ'


def to_iso(value: datetime) -> str:
    """Format an aware datetime as a sortable UTC string."""
    return value.astimezone(timezone.utc).strftime(ISO_FORMAT)


def from_iso(value: str) -> datetime:
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DynamoDBManager:
    """Manager for DynamoDB operations on cached calendar events."""

    BATCH_SIZE = 25  # DynamoDB batch operation limit

    def __init__(self, table_name: str,
                 clock: Callable[[], datetime] = _utcnow):
        """
        Initialize DynamoDB resource and table reference.

        Args:
            table_name: Name of the DynamoDB table
            clock: Returns the current time, used for updated_at
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        self.clock = clock
        logger.info(f"Initialized DynamoDBManager for table: {table_name}")

    def upsert_event(self, event: CachedCalendarEvent) -> bool:
        """
        Insert or replace one event keyed by event_id.

        Sets ``updated_at`` to the current time. Writing the same event
        twice leaves a single row.

        Args:
            event: Normalized event

        Returns:
            True if the write succeeded, False otherwise
        """
        event.updated_at = self.clock()
        try:
            self.table.put_item(Item=self._event_to_item(event))
            return True
        except ClientError as e:
            logger.warning(f"Error upserting event '{event.title}' ({event.event_id}): {e}")
            return False

    def upsert_events(self, events: List[CachedCalendarEvent]) -> Tuple[int, int]:
        """
        Upsert events one by one, continuing past individual failures.

        Args:
            events: Normalized events

        Returns:
            Tuple of (synced count, error count)
        """
        synced = 0
        errors = 0
        for event in events:
            if self.upsert_event(event):
                synced += 1
            else:
                errors += 1
        logger.info(f"Upserted {synced} events with {errors} errors")
        return synced, errors

    def purge_older_than(self, threshold: datetime) -> int:
        """
        Delete all rows whose start_time is before the threshold.

        Args:
            threshold: Cutoff time (aware datetime)

        Returns:
            Count of deleted rows
        """
        cutoff = to_iso(threshold)
        logger.info(f"Purging events starting before {cutoff}")
        items = self._scan(FilterExpression=Attr('start_time').lt(cutoff))
        return self.batch_delete_events([item['event_id'] for item in items])

    def get_all_events(self) -> Dict[str, CachedCalendarEvent]:
        """
        Retrieve all cached events.

        Returns:
            Dictionary mapping event_id to CachedCalendarEvent objects
        """
        events = {}
        for item in self._scan():
            event = self._item_to_event(item)
            if event:
                events[event.event_id] = event
        logger.info(f"Retrieved {len(events)} events from DynamoDB")
        return events

    def get_upcoming_events(
        self,
        days: int = 14,
        calendar_name: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> List[CachedCalendarEvent]:
        """
        Retrieve events starting between now and now + days.

        Args:
            days: Look-ahead horizon in days
            calendar_name: Only return events of this calendar
            now: Start of the range (default: current time)

        Returns:
            Events sorted by start time
        """
        start = now or self.clock()
        end = start + timedelta(days=days)
        condition = Attr('start_time').between(to_iso(start), to_iso(end))
        if calendar_name:
            condition = condition & Attr('calendar_name').eq(calendar_name)

        events = [
            event for event in map(self._item_to_event, self._scan(FilterExpression=condition))
            if event
        ]
        return sorted(events, key=lambda e: e.start_time)

    def batch_delete_events(self, event_ids: List[str]) -> int:
        """
        Delete events from DynamoDB in batches of 25 items.

        Args:
            event_ids: List of event IDs to delete

        Returns:
            Count of successfully deleted events
        """
        if not event_ids:
            return 0

        logger.info(f"Deleting {len(event_ids)} events from DynamoDB")
        success_count = 0

        for i in range(0, len(event_ids), self.BATCH_SIZE):
            batch = event_ids[i:i + self.BATCH_SIZE]

            try:
                with self.table.batch_writer() as writer:
                    for event_id in batch:
                        writer.delete_item(Key={'event_id': event_id})
                success_count += len(batch)
            except ClientError as e:
                logger.error(
                    f"Error deleting batch {i // self.BATCH_SIZE + 1}: {e}"
                )
                continue

        logger.info(f"Successfully deleted {success_count} events")
        return success_count

    def _scan(self, **kwargs) -> List[dict]:
        """Scan the table, following pagination."""
        response = self.table.scan(**kwargs)
        items = response.get('Items', [])
        while 'LastEvaluatedKey' in response:
            response = self.table.scan(
                ExclusiveStartKey=response['LastEvaluatedKey'], **kwargs
            )
            items.extend(response.get('Items', []))
        return items

    def _item_to_event(self, item: dict) -> Optional[CachedCalendarEvent]:
        """
        Convert DynamoDB item to CachedCalendarEvent.

        Returns:
            CachedCalendarEvent or None if the item is malformed
        """
        try:
            return CachedCalendarEvent(
                event_id=item['event_id'],
                title=item['title'],
                start_time=from_iso(item['start_time']),
                end_time=from_iso(item['end_time']) if item.get('end_time') else None,
                calendar_name=item['calendar_name'],
                location=item.get('location'),
                updated_at=from_iso(item['updated_at']) if item.get('updated_at') else None,
                ttl=int(item['ttl']) if item.get('ttl') is not None else None
            )
        except (KeyError, ValueError) as e:
            logger.warning(f"Failed to convert item to CachedCalendarEvent: {e}")
            return None

    def _event_to_item(self, event: CachedCalendarEvent) -> dict:
        item = {
            'event_id': event.event_id,
            'title': event.title,
            'start_time': to_iso(event.start_time),
            'calendar_name': event.calendar_name,
            'updated_at': to_iso(event.updated_at or self.clock())
        }

        # DynamoDB rejects None values, optional attributes are omitted
        if event.end_time:
            item['end_time'] = to_iso(event.end_time)
        if event.location:
            item['location'] = event.location
        if event.ttl is not None:
            item['ttl'] = event.ttl
        return item

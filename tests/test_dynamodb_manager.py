"""Unit tests for DynamoDB manager."""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from botocore.exceptions import ClientError

from processor.models import CachedCalendarEvent
from storage.dynamodb_manager import DynamoDBManager, from_iso, to_iso


class FakeClock:
    """Clock that advances one minute per call."""

    def __init__(self, start):
        self.current = start

    def __call__(self):
        self.current += timedelta(minutes=1)
        return self.current


@pytest.fixture
def clock(now):
    return FakeClock(now)


@pytest.fixture
def dynamodb_manager(dynamodb_table, clock):
    """Create DynamoDBManager instance with mock table."""
    return DynamoDBManager(dynamodb_table.name, clock=clock)


def make_event(event_id, start, title='Test Event', calendar='Family', **kwargs):
    return CachedCalendarEvent(
        event_id=event_id,
        title=title,
        start_time=start,
        end_time=kwargs.get('end_time'),
        calendar_name=calendar,
        location=kwargs.get('location'),
        ttl=kwargs.get('ttl')
    )


def test_iso_round_trip():
    value = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)
    assert to_iso(value) == '2026-10-18T09:00:00Z'
    assert from_iso('2026-10-18T09:00:00Z') == value


def test_get_all_events_empty_table(dynamodb_manager):
    assert dynamodb_manager.get_all_events() == {}


def test_upsert_event_stores_row(dynamodb_manager, dynamodb_table, at):
    event = make_event('abc', at(1), title='Dentist', end_time=at(1, 10),
                       location='Clinic', ttl=12345)

    assert dynamodb_manager.upsert_event(event) is True

    item = dynamodb_table.get_item(Key={'event_id': 'abc'})['Item']
    assert item['title'] == 'Dentist'
    assert item['start_time'] == to_iso(at(1))
    assert item['end_time'] == to_iso(at(1, 10))
    assert item['calendar_name'] == 'Family'
    assert item['location'] == 'Clinic'
    assert int(item['ttl']) == 12345
    assert 'updated_at' in item


def test_upsert_omits_empty_optional_fields(dynamodb_manager, dynamodb_table, at):
    dynamodb_manager.upsert_event(make_event('bare', at(1)))

    item = dynamodb_table.get_item(Key={'event_id': 'bare'})['Item']
    assert 'end_time' not in item
    assert 'location' not in item


def test_upsert_is_idempotent(dynamodb_manager, at):
    """Upserting the same event twice keeps one row and advances updated_at."""
    dynamodb_manager.upsert_event(make_event('abc', at(1)))
    first = dynamodb_manager.get_all_events()['abc'].updated_at

    dynamodb_manager.upsert_event(make_event('abc', at(1)))
    events = dynamodb_manager.get_all_events()

    assert len(events) == 1
    assert events['abc'].updated_at > first


def test_upsert_replaces_changed_fields(dynamodb_manager, at):
    dynamodb_manager.upsert_event(make_event('abc', at(1), title='Dentist'))
    dynamodb_manager.upsert_event(make_event('abc', at(2), title='Dentist (moved)'))

    event = dynamodb_manager.get_all_events()['abc']
    assert event.title == 'Dentist (moved)'
    assert event.start_time == at(2)


def test_upsert_events_counts_partial_failures(dynamodb_manager, at):
    events = [make_event(f'event-{i}', at(i)) for i in range(3)]
    real_put = dynamodb_manager.table.put_item
    error = ClientError({'Error': {'Code': 'ValidationException', 'Message': 'boom'}}, 'PutItem')

    def flaky_put(Item):
        if Item['event_id'] == 'event-1':
            raise error
        return real_put(Item=Item)

    with patch.object(dynamodb_manager.table, 'put_item', side_effect=flaky_put):
        synced, errors = dynamodb_manager.upsert_events(events)

    assert (synced, errors) == (2, 1)
    assert set(dynamodb_manager.get_all_events()) == {'event-0', 'event-2'}


def test_purge_older_than(dynamodb_manager, at, now):
    dynamodb_manager.upsert_events([
        make_event('old', at(-10)),
        make_event('edge', at(-6)),
        make_event('future', at(3))
    ])

    deleted = dynamodb_manager.purge_older_than(now - timedelta(days=7))

    assert deleted == 1
    assert set(dynamodb_manager.get_all_events()) == {'edge', 'future'}


def test_purge_large_batch(dynamodb_manager, at, now):
    dynamodb_manager.upsert_events([make_event(f'old-{i}', at(-30)) for i in range(30)])

    assert dynamodb_manager.purge_older_than(now) == 30
    assert dynamodb_manager.get_all_events() == {}


def test_batch_delete_events(dynamodb_manager, at):
    dynamodb_manager.upsert_events([make_event(f'e-{i}', at(i)) for i in range(5)])

    assert dynamodb_manager.batch_delete_events(['e-0', 'e-1']) == 2
    assert dynamodb_manager.batch_delete_events([]) == 0
    assert set(dynamodb_manager.get_all_events()) == {'e-2', 'e-3', 'e-4'}


def test_get_upcoming_events(dynamodb_manager, at, today):
    dynamodb_manager.upsert_events([
        make_event('later', at(5), calendar='School'),
        make_event('soon', at(1), calendar='Family'),
        make_event('past', at(-2), calendar='Family'),
        make_event('far', at(40), calendar='Family')
    ])

    events = dynamodb_manager.get_upcoming_events(days=14, now=today)
    assert [e.event_id for e in events] == ['soon', 'later']

    school = dynamodb_manager.get_upcoming_events(days=14, calendar_name='School', now=today)
    assert [e.event_id for e in school] == ['later']

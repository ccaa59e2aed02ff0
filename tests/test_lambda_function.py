"""Integration tests for Lambda handlers."""
import json
import logging
import os
from unittest.mock import Mock, patch

import pytest
import responses

from ics_builders import vcalendar, vevent
from lambda_function import (
    JsonFormatter,
    calendar_handler,
    debug_handler,
    lambda_handler,
    setup_logging,
)
from processor.models import CachedCalendarEvent, FeedSyncResult, SyncReport
from storage.dynamodb_manager import DynamoDBManager

FEED_URL = "https://calendars.example.com/family.ics"


@pytest.fixture
def mock_env(dynamodb_table):
    """Set up environment variables for testing."""
    env_vars = {
        'TABLE_NAME': dynamodb_table.name,
        'LOG_LEVEL': 'INFO',
        'ICAL_FEEDS': f'Family|{FEED_URL}',
        'RETENTION_DAYS': '14',
        'TIMEOUT_SECONDS': '5',
        'FETCH_RETRIES': '1'
    }
    with patch.dict(os.environ, env_vars):
        yield env_vars


@pytest.fixture
def mock_context():
    """Create a mock Lambda context."""
    context = Mock()
    context.function_name = 'test-function'
    context.aws_request_id = 'test-request-id'
    context.get_remaining_time_in_millis.return_value = 60000
    return context


def body_of(response):
    return json.loads(response['body'])


class TestLambdaHandler:
    """Test cases for the sync handler."""

    @responses.activate
    def test_successful_sync(self, mock_env, mock_context, at):
        """End-to-end sync from a mocked feed into the mocked table."""
        responses.add(responses.GET, FEED_URL, body=vcalendar(vevent('abc', 'Dentist', at(1))))

        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 200
        body = body_of(response)
        assert body['success'] is True
        assert body['total'] == 1
        assert body['synced'] == 1
        assert body['errors'] == 0
        assert body['calendars'] == [{'name': 'Family', 'synced': 1, 'errors': 0}]
        assert body['syncedAt'].endswith('Z')
        assert 'duration_seconds' in body

    @patch('lambda_function.SyncOrchestrator')
    def test_deadline_passed_from_context(self, mock_orchestrator_class, mock_env, mock_context):
        mock_orchestrator = Mock()
        mock_orchestrator.sync_all.return_value = SyncReport(
            total=1, calendars=[FeedSyncResult('Family', 2, 0)]
        )
        mock_orchestrator_class.return_value = mock_orchestrator

        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 200
        deadline = mock_orchestrator.sync_all.call_args.kwargs['deadline']
        assert deadline is not None

    @patch('lambda_function.SyncOrchestrator')
    def test_unexpected_failure_returns_500(self, mock_orchestrator_class, mock_env, mock_context):
        mock_orchestrator_class.return_value.sync_all.side_effect = Exception('Table missing')

        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 500
        body = body_of(response)
        assert body['error'] == 'Sync failed'
        assert 'Table missing' in body['details']
        assert body['error_type'] == 'Exception'

    @patch('lambda_function.SyncOrchestrator')
    def test_http_trigger_requires_cron_secret(self, mock_orchestrator_class, mock_env, mock_context):
        mock_orchestrator_class.return_value.sync_all.return_value = SyncReport(total=0)

        with patch.dict(os.environ, {'CRON_SECRET': 's3cret'}):
            rejected = lambda_handler({'headers': {'Authorization': 'Bearer wrong'}}, mock_context)
            accepted = lambda_handler({'headers': {'authorization': 'Bearer s3cret'}}, mock_context)
            scheduled = lambda_handler({'source': 'aws.events'}, mock_context)

        assert rejected['statusCode'] == 401
        assert accepted['statusCode'] == 200
        assert scheduled['statusCode'] == 200

    def test_invalid_configuration(self, mock_env, mock_context):
        with patch.dict(os.environ, {'RETENTION_DAYS': 'soon'}):
            response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 400


class TestDebugHandler:
    """Test cases for the debug handler."""

    @responses.activate
    def test_debug_report(self, mock_env, mock_context, at):
        responses.add(responses.GET, FEED_URL, body=vcalendar(
            vevent('abc', 'Dentist', at(1)),
            vevent('r1', 'Piano', at(2), rrule='FREQ=WEEKLY')
        ))
        event = {'queryStringParameters': {'events': 'true', 'expand': 'true', 'days': '7'}}

        response = debug_handler(event, mock_context)

        assert response['statusCode'] == 200
        body = body_of(response)
        assert body['queryParams'] == {
            'calendar': None, 'showEvents': True, 'expandRecurring': True, 'daysAhead': 7
        }
        info = body['calendars'][0]
        assert len(info['allEvents']) == 2
        assert len(info['expandedOccurrences']) == 1
        assert info['eventsInNext14Days'] == 2

    def test_unknown_calendar_returns_404(self, mock_env, mock_context):
        response = debug_handler({'queryStringParameters': {'calendar': 'Nope'}}, mock_context)

        assert response['statusCode'] == 404
        body = body_of(response)
        assert body['error'] == 'Calendar "Nope" not found'
        assert body['availableCalendars'] == ['Family']

    def test_no_feeds_returns_400(self, mock_env, mock_context):
        with patch.dict(os.environ, {'ICAL_FEEDS': ''}):
            response = debug_handler({}, mock_context)

        assert response['statusCode'] == 400
        assert body_of(response)['error'] == 'No ICAL_FEEDS configured'

    def test_invalid_days_returns_400(self, mock_env, mock_context):
        response = debug_handler({'queryStringParameters': {'days': 'soon'}}, mock_context)

        assert response['statusCode'] == 400


class TestCalendarHandler:
    """Test cases for the cached events handler."""

    @responses.activate
    def test_returns_synced_events(self, mock_env, mock_context, at):
        responses.add(responses.GET, FEED_URL, body=vcalendar(
            vevent('abc', 'Dentist', at(1), location='Clinic'),
            vevent('def', 'Haircut', at(3))
        ))
        lambda_handler({}, mock_context)

        response = calendar_handler({'queryStringParameters': {'days': '14'}}, mock_context)

        assert response['statusCode'] == 200
        events = body_of(response)['events']
        assert [e['event_id'] for e in events] == ['abc', 'def']
        assert events[0]['location'] == 'Clinic'
        assert events[0]['calendar_name'] == 'Family'

    def test_all_flag_returns_every_cached_event(self, mock_env, mock_context, dynamodb_table, at):
        store = DynamoDBManager(table_name=dynamodb_table.name)
        store.upsert_events([
            CachedCalendarEvent('later', 'Holiday', at(60), None, 'Family', None),
            CachedCalendarEvent('past', 'Dentist', at(-2), None, 'Family', None),
            CachedCalendarEvent('school', 'Trip', at(1), None, 'School', None)
        ])

        everything = calendar_handler({'queryStringParameters': {'all': 'true'}}, mock_context)
        family = calendar_handler(
            {'queryStringParameters': {'all': 'true', 'calendar': 'Family'}}, mock_context
        )
        upcoming = calendar_handler({}, mock_context)

        assert [e['event_id'] for e in body_of(everything)['events']] == ['past', 'school', 'later']
        assert [e['event_id'] for e in body_of(family)['events']] == ['past', 'later']
        assert [e['event_id'] for e in body_of(upcoming)['events']] == ['school']

    def test_calendar_filter(self, mock_env, mock_context):
        response = calendar_handler(
            {'queryStringParameters': {'calendar': 'School'}}, mock_context
        )

        assert response['statusCode'] == 200
        assert body_of(response)['events'] == []


class TestLogging:
    """Test cases for the JSON log formatter."""

    def test_json_formatter_includes_extra(self):
        record = logging.makeLogRecord({
            'name': 'test', 'levelname': 'INFO', 'msg': 'Synced %d events',
            'args': (3,), 'feed': 'Family'
        })

        data = json.loads(JsonFormatter().format(record))

        assert data['message'] == 'Synced 3 events'
        assert data['level'] == 'INFO'
        assert data['feed'] == 'Family'

    def test_setup_logging_sets_level(self):
        setup_logging('DEBUG')

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, JsonFormatter)

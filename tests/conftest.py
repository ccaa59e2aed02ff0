"""Shared fixtures for the calendar sync tests."""
from datetime import datetime, timedelta, timezone

import boto3
import pytest
from moto import mock_aws

TABLE_NAME = 'test-cached-calendar-events'


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never reaches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def now():
    """Fixed reference time used by clocks and ICS fixtures."""
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def today(now):
    """Midnight UTC of the reference day."""
    return now.replace(hour=0, minute=0, second=0)


@pytest.fixture
def at(today):
    """Return a helper building times relative to today's midnight."""
    def _at(days, hours=9):
        return today + timedelta(days=days, hours=hours)
    return _at


@pytest.fixture
def dynamodb_table():
    """Create a mock DynamoDB cache table."""
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')
        table = dynamodb.create_table(
            TableName=TABLE_NAME,
            KeySchema=[{'AttributeName': 'event_id', 'KeyType': 'HASH'}],
            AttributeDefinitions=[{'AttributeName': 'event_id', 'AttributeType': 'S'}],
            BillingMode='PAY_PER_REQUEST'
        )
        yield table

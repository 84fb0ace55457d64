"""Shared fixtures for the test suite."""
from datetime import datetime, timezone

import boto3
import pytest
from moto import mock_aws

from processor.models import FeedSubscription, NotificationSettings, User, format_timestamp
from storage.dynamodb_manager import DynamoDBManager

USERS_TABLE = 'test-shift-users'
EVENTS_TABLE = 'test-shift-events'


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Mocked AWS credentials so boto3 never reaches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def dynamodb_tables():
    """Create mock users and events tables."""
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')

        users = dynamodb.create_table(
            TableName=USERS_TABLE,
            KeySchema=[{'AttributeName': 'userId', 'KeyType': 'HASH'}],
            AttributeDefinitions=[{'AttributeName': 'userId', 'AttributeType': 'S'}],
            BillingMode='PAY_PER_REQUEST'
        )
        events = dynamodb.create_table(
            TableName=EVENTS_TABLE,
            KeySchema=[{'AttributeName': 'eventId', 'KeyType': 'HASH'}],
            AttributeDefinitions=[{'AttributeName': 'eventId', 'AttributeType': 'S'}],
            BillingMode='PAY_PER_REQUEST'
        )

        yield users, events


@pytest.fixture
def store(dynamodb_tables):
    """DynamoDBManager bound to the mock tables."""
    return DynamoDBManager(USERS_TABLE, EVENTS_TABLE, region_name='us-east-1')


@pytest.fixture
def put_user(dynamodb_tables):
    """Write User records straight into the mock users table."""
    users_table, _ = dynamodb_tables

    def _put(user):
        users_table.put_item(Item=user_item(user))

    return _put


@pytest.fixture
def now():
    return datetime(2024, 1, 20, 12, 0, tzinfo=timezone.utc)


def make_user(user_id='user-1', feeds=(), **kwargs):
    """Build a User with feed subscriptions from URLs."""
    return User(
        user_id=user_id,
        feeds=[FeedSubscription(url=url) for url in feeds],
        **kwargs
    )


def make_settings(**kwargs):
    values = {'partner_changes': True}
    values.update(kwargs)
    return NotificationSettings(**values)


def make_ics(*events):
    """
    Build an iCalendar document.

    Each event is a dict with uid, summary, dtstart, dtend and optional
    last_modified / description, values in iCalendar text form.
    """
    lines = ['BEGIN:VCALENDAR', 'VERSION:2.0', 'PRODID:-//Test//Shifts//EN']
    for event in events:
        lines.append('BEGIN:VEVENT')
        if 'uid' in event:
            lines.append(f"UID:{event['uid']}")
        if 'summary' in event:
            lines.append(f"SUMMARY:{event['summary']}")
        if 'dtstart' in event:
            lines.append(f"DTSTART:{event['dtstart']}")
        if 'dtend' in event:
            lines.append(f"DTEND:{event['dtend']}")
        if 'duration' in event:
            lines.append(f"DURATION:{event['duration']}")
        if 'description' in event:
            lines.append(f"DESCRIPTION:{event['description']}")
        if 'last_modified' in event:
            lines.append(f"LAST-MODIFIED:{event['last_modified']}")
        lines.append('DTSTAMP:20240101T000000Z')
        lines.append('END:VEVENT')
    lines.append('END:VCALENDAR')
    return '\r\n'.join(lines) + '\r\n'


def user_item(user):
    """Build the users table item the app reads for a User."""
    item = {'userId': user.user_id}
    if user.name:
        item['name'] = user.name
    if user.partner_id:
        item['partnerId'] = user.partner_id
    if user.push_token:
        item['pushToken'] = user.push_token
    if user.time_zone:
        item['timeZone'] = user.time_zone

    settings = user.notification_settings
    if settings is not None:
        item['notificationSettings'] = {
            key: value for key, value in {
                'partnerChanges': settings.partner_changes,
                'quietHoursEnabled': settings.quiet_hours_enabled,
                'quietHoursStart': settings.quiet_hours_start,
                'quietHoursEnd': settings.quiet_hours_end,
                'timeZone': settings.time_zone,
            }.items()
            if value is not None
        }

    if user.feeds:
        item['icalFeeds'] = [
            {'url': feed.url, 'lastSync': format_timestamp(feed.last_sync)}
            if feed.last_sync else {'url': feed.url}
            for feed in user.feeds
        ]
    return item

"""Integration tests for Lambda handlers."""
import json
import logging
import os
from unittest.mock import AsyncMock, Mock, patch

import pytest

from lambda_function import JsonFormatter, lambda_handler, setup_logging, stream_handler
from processor.errors import StoreError
from processor.models import FeedOutcome, SyncResult


@pytest.fixture
def mock_env():
    """Set up environment variables for testing."""
    env_vars = {
        'USERS_TABLE': 'test-shift-users',
        'EVENTS_TABLE': 'test-shift-events',
        'LOG_LEVEL': 'INFO',
        'FETCH_TIMEOUT_SECONDS': '10',
        'DEFAULT_TIME_ZONE': 'Europe/London',
        'AWS_REGION': 'us-east-1'
    }
    with patch.dict(os.environ, env_vars):
        yield env_vars


@pytest.fixture
def mock_context():
    """Create a mock Lambda context."""
    context = Mock()
    context.function_name = 'test-function'
    context.memory_limit_in_mb = 256
    context.invoked_function_arn = 'arn:aws:lambda:us-east-1:123456789012:function:test-function'
    context.aws_request_id = 'test-request-id'
    return context


def stream_event():
    image = {
        'eventId': {'S': 'event-1'},
        'userId': {'S': 'owner'},
        'title': {'S': 'Morning Shift'},
        'startTime': {'S': '2024-01-15T08:00:00+00:00'},
        'endTime': {'S': '2024-01-15T16:00:00+00:00'},
    }
    return {'Records': [
        {'eventName': 'INSERT', 'dynamodb': {'NewImage': image}},
        {'eventName': 'REMOVE', 'dynamodb': {'OldImage': image}},
    ]}


class TestLambdaHandler:
    """Test cases for the scheduled sync handler."""

    @patch('lambda_function.SyncOrchestrator')
    @patch('lambda_function.IcalFeedFetcher')
    @patch('lambda_function.DynamoDBManager')
    def test_successful_sync(
        self,
        mock_dynamodb_class,
        mock_fetcher_class,
        mock_orchestrator_class,
        mock_env,
        mock_context
    ):
        """Test successful sync with one failed feed."""
        mock_orchestrator = Mock()
        mock_orchestrator.run = AsyncMock(return_value=SyncResult(
            successful=2,
            failed=1,
            outcomes=[
                FeedOutcome('u1', 'https://a.example.com/1.ics', new_count=3),
                FeedOutcome('u1', 'https://a.example.com/2.ics', updated_count=1),
                FeedOutcome('u2', 'https://a.example.com/3.ics', error='HTTP 404: Not Found')
            ]
        ))
        mock_orchestrator_class.return_value = mock_orchestrator

        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['message'] == 'Sync completed successfully'
        assert body['statistics']['feeds_successful'] == 2
        assert body['statistics']['feeds_failed'] == 1
        assert body['statistics']['events_added'] == 3
        assert body['statistics']['events_updated'] == 1
        assert 'duration_seconds' in body['statistics']
        assert body['errors'] == [{
            'user_id': 'u2',
            'feed_url': 'https://a.example.com/3.ics',
            'error': 'HTTP 404: Not Found'
        }]

        mock_dynamodb_class.assert_called_once_with(
            users_table_name='test-shift-users',
            events_table_name='test-shift-events',
            region_name='us-east-1'
        )
        mock_fetcher_class.assert_called_once_with(
            timeout=10.0, user_agent='ShiftCalendar/1.0', max_attempts=1
        )
        mock_orchestrator.run.assert_awaited_once()

    @patch('lambda_function.SyncOrchestrator')
    @patch('lambda_function.DynamoDBManager')
    def test_user_enumeration_failure(
        self,
        mock_dynamodb_class,
        mock_orchestrator_class,
        mock_env,
        mock_context
    ):
        """Test that a fatal run returns a 500 response."""
        mock_orchestrator = Mock()
        mock_orchestrator.run = AsyncMock(side_effect=StoreError('Failed to list users'))
        mock_orchestrator_class.return_value = mock_orchestrator

        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['message'] == 'Sync failed'
        assert 'Failed to list users' in body['error']
        assert body['error_type'] == 'StoreError'
        assert 'duration_seconds' in body

    @patch('lambda_function.SyncOrchestrator')
    @patch('lambda_function.DynamoDBManager')
    @patch('lambda_function.setup_logging')
    def test_logging_output(
        self,
        mock_setup_logging,
        mock_dynamodb_class,
        mock_orchestrator_class,
        mock_env,
        mock_context,
        caplog
    ):
        """Test that logging output is generated correctly."""
        mock_orchestrator = Mock()
        mock_orchestrator.run = AsyncMock(return_value=SyncResult(successful=0, failed=0))
        mock_orchestrator_class.return_value = mock_orchestrator

        with caplog.at_level(logging.INFO, logger='lambda_function'):
            response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 200
        log_messages = [record.message for record in caplog.records]
        assert any('Lambda execution started' in msg for msg in log_messages)
        assert any('Synchronizing iCal feeds' in msg for msg in log_messages)
        assert any('Lambda execution completed successfully' in msg for msg in log_messages)


class TestStreamHandler:
    """Test cases for the events table stream handler."""

    @patch('lambda_function.ChangeNotifier')
    @patch('lambda_function.SnsPushChannel')
    @patch('lambda_function.DynamoDBManager')
    def test_notifies_each_change(
        self,
        mock_dynamodb_class,
        mock_channel_class,
        mock_notifier_class,
        mock_env,
        mock_context
    ):
        mock_notifier = Mock()
        mock_notifier.notify = AsyncMock(side_effect=[True, False])
        mock_notifier_class.return_value = mock_notifier

        response = stream_handler(stream_event(), mock_context)

        assert response['statusCode'] == 200
        assert json.loads(response['body']) == {'sent': 1, 'discarded': 1}
        assert mock_notifier.notify.await_count == 2
        assert mock_notifier_class.call_args.kwargs['default_time_zone'] == 'Europe/London'

    @patch('lambda_function.ChangeNotifier')
    @patch('lambda_function.DynamoDBManager')
    def test_empty_stream_batch(
        self,
        mock_dynamodb_class,
        mock_notifier_class,
        mock_env,
        mock_context
    ):
        response = stream_handler({'Records': []}, mock_context)

        assert json.loads(response['body']) == {'sent': 0, 'discarded': 0}
        mock_notifier_class.assert_not_called()


class TestSetupLogging:
    """Test cases for logging setup."""

    def test_setup_logging_default_level(self):
        """Test logging setup with default INFO level."""
        setup_logging()
        assert logging.getLogger().level == logging.INFO

    def test_setup_logging_debug_level(self):
        setup_logging('DEBUG')
        assert logging.getLogger().level == logging.DEBUG

    def test_setup_logging_unknown_level_defaults_to_info(self):
        setup_logging('VERBOSE')
        assert logging.getLogger().level == logging.INFO

    def test_json_formatter_includes_extra_fields(self):
        record = logging.LogRecord(
            'processor.sync_orchestrator', logging.ERROR, __file__, 1,
            'Error importing iCal feed', None, None
        )
        record.user_id = 'u1'
        record.error_type = 'FetchError'

        data = json.loads(JsonFormatter().format(record))

        assert data['level'] == 'ERROR'
        assert data['message'] == 'Error importing iCal feed'
        assert data['user_id'] == 'u1'
        assert data['error_type'] == 'FetchError'

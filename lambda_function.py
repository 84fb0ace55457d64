"""AWS Lambda handlers for shift calendar sync and partner notifications."""
import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Dict, Any

from processor.change_notifier import ChangeNotifier
from processor.sync_orchestrator import SyncOrchestrator
from scraper.ical_feed import IcalFeedFetcher, IcalFeedParser
from settings import Settings
from storage.dynamodb_manager import DynamoDBManager
from storage.push_channel import SnsPushChannel
from storage.stream_records import change_events_from_stream


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    EXTRA_FIELDS = (
        'user_id', 'feed_url', 'event_id', 'error_type',
        'duration_seconds', 'successful', 'failed', 'sent', 'discarded'
    )

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for name in self.EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Scheduled handler that syncs all subscribed iCal feeds once.

    Args:
        event: EventBridge event payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and summary statistics
    """
    settings = Settings.from_env()

    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    start_time = time.time()
    logger.info(
        "Lambda execution started",
        extra={'users_table': settings.users_table, 'events_table': settings.events_table}
    )

    try:
        store = DynamoDBManager(
            users_table_name=settings.users_table,
            events_table_name=settings.events_table,
            region_name=settings.aws_region
        )
        fetcher = IcalFeedFetcher(
            timeout=settings.fetch_timeout_seconds,
            user_agent=settings.user_agent,
            max_attempts=settings.fetch_max_attempts
        )
        orchestrator = SyncOrchestrator(
            store=store,
            fetcher=fetcher,
            parser=IcalFeedParser(),
            max_concurrency=settings.max_concurrent_feeds
        )

        now = datetime.now(timezone.utc)
        logger.info("Synchronizing iCal feeds")
        result = asyncio.run(orchestrator.run(now))

        duration = time.time() - start_time
        logger.info(
            "Lambda execution completed successfully",
            extra={
                'duration_seconds': round(duration, 2),
                'successful': result.successful,
                'failed': result.failed
            }
        )

        return {
            'statusCode': 200,
            'body': json.dumps({
                'message': 'Sync completed successfully',
                'statistics': {
                    'feeds_successful': result.successful,
                    'feeds_failed': result.failed,
                    'events_added': sum(o.new_count for o in result.outcomes),
                    'events_updated': sum(o.updated_count for o in result.outcomes),
                    'duration_seconds': round(duration, 2)
                },
                'errors': [
                    {'user_id': o.user_id, 'feed_url': o.feed_url, 'error': o.error}
                    for o in result.outcomes if not o.succeeded
                ]
            })
        }

    except Exception as e:
        duration = time.time() - start_time

        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )

        return {
            'statusCode': 500,
            'body': json.dumps({
                'message': 'Sync failed',
                'error': str(e),
                'error_type': type(e).__name__,
                'duration_seconds': round(duration, 2)
            })
        }


async def _notify_all(notifier: ChangeNotifier, changes) -> list:
    return await asyncio.gather(*(notifier.notify(change) for change in changes))


def stream_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Events table stream handler that notifies partners about shift changes.

    Notification failures never fail the invocation, so committed event
    changes are not redelivered because of a push problem.

    Args:
        event: DynamoDB Stream event payload
        context: Lambda context object

    Returns:
        Response dict with counts of sent and discarded notifications
    """
    settings = Settings.from_env()

    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    changes = change_events_from_stream(event)
    logger.info(f"Received {len(changes)} event changes")

    sent = 0
    if changes:
        notifier = ChangeNotifier(
            store=DynamoDBManager(
                users_table_name=settings.users_table,
                events_table_name=settings.events_table,
                region_name=settings.aws_region
            ),
            channel=SnsPushChannel(region_name=settings.aws_region),
            default_time_zone=settings.default_time_zone
        )
        results = asyncio.run(_notify_all(notifier, changes))
        sent = sum(1 for delivered in results if delivered)

    discarded = len(changes) - sent
    logger.info(
        "Notification processing completed",
        extra={'sent': sent, 'discarded': discarded}
    )

    return {
        'statusCode': 200,
        'body': json.dumps({'sent': sent, 'discarded': discarded})
    }

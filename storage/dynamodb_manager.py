"""DynamoDB manager for user and event storage operations."""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from processor.errors import StoreError
from processor.models import (
    DEFAULT_EVENT_COLOR,
    Event,
    FeedSubscription,
    ICAL_SOURCE,
    Mutation,
    MutationKind,
    NotificationSettings,
    User,
    format_timestamp,
    parse_timestamp,
)
from processor.reconciler import generate_event_id

logger = logging.getLogger(__name__)


class DynamoDBManager:
    """Manager for DynamoDB operations on the users and events tables."""

    BATCH_GET_SIZE = 100  # DynamoDB BatchGetItem limit
    TRANSACT_LIMIT = 100  # DynamoDB TransactWriteItems limit
    FEED_UPDATE_ATTEMPTS = 3

    def __init__(
        self,
        users_table_name: str,
        events_table_name: str,
        region_name: Optional[str] = None
    ):
        """
        Initialize DynamoDB resource and table references.

        Args:
            users_table_name: Name of the users table
            events_table_name: Name of the events table
            region_name: AWS region, defaults to the boto3 configuration
        """
        self.users_table_name = users_table_name
        self.events_table_name = events_table_name
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.users_table = self.dynamodb.Table(users_table_name)
        self.events_table = self.dynamodb.Table(events_table_name)
        logger.info(
            f"Initialized DynamoDBManager for tables: "
            f"{users_table_name}, {events_table_name}"
        )

    def list_users_with_feeds(self) -> List[User]:
        """
        Retrieve all users that have at least one feed subscription.

        Returns:
            List of User objects with non-empty feed lists

        Raises:
            StoreError: If the users table cannot be scanned
        """
        logger.info("Scanning users table for feed subscriptions")

        try:
            response = self.users_table.scan(
                FilterExpression=Attr('icalFeeds').exists()
            )
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = self.users_table.scan(
                    FilterExpression=Attr('icalFeeds').exists(),
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                items.extend(response.get('Items', []))

        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error scanning users table: {e}")
            raise StoreError(f"Failed to list users: {e}") from e

        users = [self._item_to_user(item) for item in items]
        users = [user for user in users if user.feeds]
        logger.info(f"Found {len(users)} users with feeds")
        return users

    def get_user(self, user_id: str) -> Optional[User]:
        """
        Retrieve one user.

        Returns:
            User object or None if no such user exists

        Raises:
            StoreError: If the read fails
        """
        try:
            response = self.users_table.get_item(Key={'userId': user_id})
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"Failed to read user {user_id}: {e}") from e

        item = response.get('Item')
        if item is None:
            return None
        return self._item_to_user(item)

    def get_ical_events(self, user_id: str, ical_uids: Iterable[str]) -> Dict[str, Event]:
        """
        Retrieve imported events of a user by feed UID.

        Args:
            user_id: Owning user
            ical_uids: Feed UIDs to look up

        Returns:
            Dictionary mapping icalUid to the stored Event

        Raises:
            StoreError: If the read fails
        """
        event_ids = sorted({generate_event_id(user_id, uid) for uid in ical_uids})
        found: Dict[str, Event] = {}

        for i in range(0, len(event_ids), self.BATCH_GET_SIZE):
            keys = [{'eventId': event_id} for event_id in event_ids[i:i + self.BATCH_GET_SIZE]]
            request = {
                self.events_table_name: {'Keys': keys, 'ConsistentRead': True}
            }

            try:
                while request:
                    response = self.dynamodb.batch_get_item(RequestItems=request)
                    for item in response.get('Responses', {}).get(self.events_table_name, []):
                        event = self._item_to_event(item)
                        if (
                            event
                            and event.user_id == user_id
                            and event.source == ICAL_SOURCE
                            and event.ical_uid
                        ):
                            found[event.ical_uid] = event
                    request = response.get('UnprocessedKeys') or None

            except (ClientError, BotoCoreError) as e:
                raise StoreError(f"Failed to read events for user {user_id}: {e}") from e

        logger.info(f"Found {len(found)} existing imported events for user {user_id}")
        return found

    def commit_mutations(self, mutations: List[Mutation]) -> int:
        """
        Write the mutations of one feed in a single transaction.

        Feeds with more writes than one transaction accepts are committed in
        consecutive transactions of TRANSACT_LIMIT items. A rejected
        transaction leaves the earlier ones applied; the next sync of the
        feed reconciles them to no-ops and writes the rest.

        Args:
            mutations: Create and update mutations, at most one per event

        Returns:
            Count of committed mutations

        Raises:
            StoreError: If the transaction is rejected
        """
        if not mutations:
            return 0

        if len(mutations) > self.TRANSACT_LIMIT:
            logger.warning(
                f"Committing {len(mutations)} mutations in "
                f"{(len(mutations) - 1) // self.TRANSACT_LIMIT + 1} transactions"
            )

        client = self.dynamodb.meta.client
        committed = 0

        for i in range(0, len(mutations), self.TRANSACT_LIMIT):
            batch = mutations[i:i + self.TRANSACT_LIMIT]
            try:
                client.transact_write_items(
                    TransactItems=[self._mutation_to_transact_item(m) for m in batch]
                )
            except (ClientError, BotoCoreError) as e:
                logger.error(
                    f"Error committing transaction {i // self.TRANSACT_LIMIT + 1}: {e}"
                )
                raise StoreError(f"Failed to commit event mutations: {e}") from e
            committed += len(batch)

        logger.info(f"Committed {committed} event mutations")
        return committed

    def update_feed_last_sync(
        self,
        user_id: str,
        feed_url: str,
        synced_at: datetime,
        index_hint: Optional[int] = None
    ) -> bool:
        """
        Set lastSync on the feed entry matching `feed_url`.

        The write targets one list element and is conditioned on that
        element still holding `feed_url`. If the list changed in between,
        the index is looked up again and the write retried.

        Args:
            user_id: Owning user
            feed_url: URL identifying the feed entry
            synced_at: Commit time of the sync
            index_hint: Position of the entry when the user was read

        Returns:
            True if updated, False if the feed is no longer subscribed

        Raises:
            StoreError: If the update fails
        """
        index = index_hint

        for _ in range(self.FEED_UPDATE_ATTEMPTS):
            if index is None:
                user = self.get_user(user_id)
                urls = [feed.url for feed in user.feeds] if user else []
                if feed_url not in urls:
                    logger.info(
                        f"Feed {feed_url} no longer subscribed by user {user_id}, "
                        f"skipping lastSync update"
                    )
                    return False
                index = urls.index(feed_url)

            try:
                self.users_table.update_item(
                    Key={'userId': user_id},
                    UpdateExpression=f"SET #feeds[{index}].#lastSync = :synced_at",
                    ConditionExpression=f"#feeds[{index}].#url = :url",
                    ExpressionAttributeNames={
                        '#feeds': 'icalFeeds',
                        '#lastSync': 'lastSync',
                        '#url': 'url'
                    },
                    ExpressionAttributeValues={
                        ':synced_at': format_timestamp(synced_at),
                        ':url': feed_url
                    }
                )
                return True

            except ClientError as e:
                if e.response.get('Error', {}).get('Code') != 'ConditionalCheckFailedException':
                    raise StoreError(f"Failed to update feed metadata: {e}") from e
                logger.warning(
                    f"Feed list of user {user_id} changed during sync, retrying lastSync update"
                )
                index = None
            except BotoCoreError as e:
                raise StoreError(f"Failed to update feed metadata: {e}") from e

        raise StoreError(
            f"Feed list of user {user_id} kept changing, lastSync not updated for {feed_url}"
        )

    def _mutation_to_transact_item(self, mutation: Mutation) -> dict:
        event = mutation.event
        if mutation.kind == MutationKind.CREATE:
            return {
                'Put': {
                    'TableName': self.events_table_name,
                    'Item': self._event_to_item(event),
                    'ConditionExpression': 'attribute_not_exists(eventId)'
                }
            }

        values = {
            ':title': event.title,
            ':notes': event.notes,
            ':start': format_timestamp(event.start_time),
            ':end': format_timestamp(event.end_time),
            ':updated_at': format_timestamp(event.updated_at),
            ':inc': mutation.version_increment
        }
        return {
            'Update': {
                'TableName': self.events_table_name,
                'Key': {'eventId': event.event_id},
                'UpdateExpression': (
                    'SET #title = :title, #notes = :notes, #start = :start, '
                    '#end = :end, #updatedAt = :updated_at, #version = #version + :inc'
                ),
                'ConditionExpression': 'attribute_exists(eventId)',
                'ExpressionAttributeNames': {
                    '#title': 'title',
                    '#notes': 'notes',
                    '#start': 'startTime',
                    '#end': 'endTime',
                    '#updatedAt': 'updatedAt',
                    '#version': 'version'
                },
                'ExpressionAttributeValues': values
            }
        }

    def _item_to_event(self, item: dict) -> Optional[Event]:
        """
        Convert DynamoDB item to Event object.

        Returns:
            Event object or None if conversion fails
        """
        try:
            start_time = parse_timestamp(item['startTime'])
            end_time = parse_timestamp(item['endTime'])
            updated_at = parse_timestamp(item['updatedAt'])
            if start_time is None or end_time is None or updated_at is None:
                raise ValueError(f"invalid timestamps on event {item['eventId']}")

            return Event(
                event_id=item['eventId'],
                user_id=item['userId'],
                title=item.get('title', ''),
                notes=item.get('notes', ''),
                start_time=start_time,
                end_time=end_time,
                color=item.get('color', DEFAULT_EVENT_COLOR),
                source=item.get('source', ''),
                ical_uid=item.get('icalUid'),
                version=int(item.get('version', 1)),
                created_at=parse_timestamp(item.get('createdAt')) or updated_at,
                updated_at=updated_at
            )
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Failed to convert item to Event: {e}")
            return None

    def _event_to_item(self, event: Event) -> dict:
        item = {
            'eventId': event.event_id,
            'userId': event.user_id,
            'title': event.title,
            'notes': event.notes,
            'startTime': format_timestamp(event.start_time),
            'endTime': format_timestamp(event.end_time),
            'color': event.color,
            'source': event.source,
            'version': event.version,
            'createdAt': format_timestamp(event.created_at),
            'updatedAt': format_timestamp(event.updated_at)
        }

        if event.ical_uid:
            item['icalUid'] = event.ical_uid

        return item

    def _item_to_user(self, item: dict) -> User:
        settings = item.get('notificationSettings')
        feeds = item.get('icalFeeds') or []

        return User(
            user_id=item['userId'],
            name=item.get('name'),
            partner_id=item.get('partnerId') or None,
            push_token=item.get('pushToken') or None,
            time_zone=item.get('timeZone'),
            notification_settings=self._item_to_settings(settings) if isinstance(settings, dict) else None,
            feeds=[
                FeedSubscription(url=feed['url'], last_sync=parse_timestamp(feed.get('lastSync')))
                for feed in feeds
                if isinstance(feed, dict) and feed.get('url')
            ]
        )

    @staticmethod
    def _item_to_settings(item: dict) -> NotificationSettings:
        return NotificationSettings(
            partner_changes=item.get('partnerChanges') is True,
            quiet_hours_enabled=item.get('quietHoursEnabled') is True,
            quiet_hours_start=item.get('quietHoursStart'),
            quiet_hours_end=item.get('quietHoursEnd'),
            time_zone=item.get('timeZone')
        )

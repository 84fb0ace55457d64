"""Runs feed reconciliation for every subscribed user."""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from processor.errors import ShiftSyncError
from processor.models import FeedOutcome, FeedSubscription, SyncResult, User
from processor.reconciler import EventReconciler

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Fans out one reconciliation task per (user, feed) and joins the outcomes."""

    def __init__(
        self,
        store,
        fetcher,
        parser,
        reconciler: Optional[EventReconciler] = None,
        max_concurrency: int = 0
    ):
        """
        Args:
            store: DynamoDBManager or compatible store
            fetcher: Object with fetch(url) -> str
            parser: Object with parse(raw_text) -> List[NormalizedEvent]
            reconciler: EventReconciler instance
            max_concurrency: Upper bound on feeds synced at once, 0 for none
        """
        self.store = store
        self.fetcher = fetcher
        self.parser = parser
        self.reconciler = reconciler or EventReconciler()
        self.max_concurrency = max_concurrency

    async def run(self, now: datetime) -> SyncResult:
        """
        Sync all feeds once.

        Failures of single feeds are counted and logged; only failing to
        enumerate users propagates.

        Args:
            now: Tick time, written as createdAt/updatedAt/lastSync

        Returns:
            SyncResult with successful and failed feed counts

        Raises:
            StoreError: If users cannot be listed
        """
        users = await asyncio.to_thread(self.store.list_users_with_feeds)

        if not users:
            logger.info("No users with iCal feeds found")
            return SyncResult(successful=0, failed=0)

        semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency > 0 else None
        tasks = [
            self._run_feed(user, index, feed, now, semaphore)
            for user in users
            for index, feed in enumerate(user.feeds)
        ]
        logger.info(f"Syncing {len(tasks)} feeds for {len(users)} users")

        results = await asyncio.gather(*tasks, return_exceptions=True)

        outcomes = []
        for result in results:
            if isinstance(result, BaseException):
                # _run_feed records its own failures; this only covers cancellation
                logger.error(f"Feed task ended abnormally: {result!r}")
                outcomes.append(FeedOutcome(user_id='', feed_url='', error=repr(result)))
            else:
                outcomes.append(result)

        successful = sum(1 for outcome in outcomes if outcome.succeeded)
        failed = len(outcomes) - successful

        logger.info(f"iCal import completed: {successful} successful, {failed} failed")
        return SyncResult(successful=successful, failed=failed, outcomes=outcomes)

    async def _run_feed(
        self,
        user: User,
        index: int,
        feed: FeedSubscription,
        now: datetime,
        semaphore: Optional[asyncio.Semaphore]
    ) -> FeedOutcome:
        if semaphore is None:
            return await self._sync_feed(user, index, feed, now)
        async with semaphore:
            return await self._sync_feed(user, index, feed, now)

    async def _sync_feed(
        self,
        user: User,
        index: int,
        feed: FeedSubscription,
        now: datetime
    ) -> FeedOutcome:
        """Fetch, parse, reconcile and commit one feed."""
        logger.info(f"Importing iCal feed for user {user.user_id}: {feed.url}")

        try:
            raw_text = await asyncio.to_thread(self.fetcher.fetch, feed.url)
            events = self.parser.parse(raw_text)

            existing = await asyncio.to_thread(
                self.store.get_ical_events,
                user.user_id,
                [event.uid for event in events]
            )
            result = self.reconciler.reconcile(user.user_id, feed.url, events, existing, now)

            await asyncio.to_thread(self.store.commit_mutations, result.mutations)
            await asyncio.to_thread(
                self.store.update_feed_last_sync, user.user_id, feed.url, now, index
            )

        except ShiftSyncError as e:
            logger.error(
                f"Error importing iCal feed for user {user.user_id}: {e}",
                extra={
                    'user_id': user.user_id,
                    'feed_url': feed.url,
                    'error_type': type(e).__name__
                }
            )
            return FeedOutcome(user_id=user.user_id, feed_url=feed.url, error=str(e))

        except Exception as e:
            logger.error(
                f"Unexpected error importing iCal feed for user {user.user_id}: {e}",
                extra={
                    'user_id': user.user_id,
                    'feed_url': feed.url,
                    'error_type': type(e).__name__
                },
                exc_info=True
            )
            return FeedOutcome(user_id=user.user_id, feed_url=feed.url, error=str(e) or type(e).__name__)

        logger.info(
            f"iCal import completed for user {user.user_id}: "
            f"{result.new_count} new, {result.updated_count} updated"
        )
        return FeedOutcome(
            user_id=user.user_id,
            feed_url=feed.url,
            new_count=result.new_count,
            updated_count=result.updated_count
        )

"""Reconciliation of parsed feed events against imported events."""
import hashlib
import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Mapping

from processor.models import (
    DEFAULT_EVENT_COLOR,
    Event,
    ICAL_SOURCE,
    Mutation,
    MutationKind,
    NormalizedEvent,
    ReconcileResult,
)

logger = logging.getLogger(__name__)


def generate_event_id(user_id: str, ical_uid: str, source: str = ICAL_SOURCE) -> str:
    """
    Generate the identifier of an imported event.

    The id is a SHA256 hash of user id, source and feed UID, so the same
    feed occurrence always maps to the same stored event.

    Args:
        user_id: Owning user
        ical_uid: UID assigned by the source feed
        source: Event source tag

    Returns:
        Event ID (64 character hex string)
    """
    composite = f"{user_id}|{source}|{ical_uid}"
    return hashlib.sha256(composite.encode('utf-8')).hexdigest()


class EventReconciler:
    """Decides create, update or no-op for each event of one feed."""

    def reconcile(
        self,
        user_id: str,
        feed_url: str,
        events: List[NormalizedEvent],
        existing: Mapping[str, Event],
        now: datetime
    ) -> ReconcileResult:
        """
        Compute the mutations needed to bring stored events in line with a feed.

        Args:
            user_id: Owning user
            feed_url: URL of the feed, for logging
            events: Parsed feed events in feed order
            existing: Stored imported events of the user keyed by icalUid
            now: Commit timestamp written to createdAt/updatedAt

        Returns:
            ReconcileResult with at most one mutation per event
        """
        pending: Dict[str, Mutation] = {}
        new_count = 0
        updated_count = 0

        for feed_event in events:
            current = pending.get(feed_event.uid)
            if current is not None:
                # Same UID seen earlier in this feed
                if self._should_update(feed_event, current.event):
                    applied = self._apply(current.event, feed_event, now)
                    if current.kind == MutationKind.UPDATE:
                        current.version_increment += 1
                    else:
                        # A pending create is still written as version 1
                        applied = replace(applied, version=current.event.version)
                    current.event = applied
                    updated_count += 1
                continue

            stored = existing.get(feed_event.uid)
            if stored is None:
                pending[feed_event.uid] = Mutation(
                    kind=MutationKind.CREATE,
                    event=self._new_event(user_id, feed_event, now)
                )
                new_count += 1
            elif self._should_update(feed_event, stored):
                pending[feed_event.uid] = Mutation(
                    kind=MutationKind.UPDATE,
                    event=self._apply(stored, feed_event, now),
                    version_increment=1
                )
                updated_count += 1
            else:
                # Keeps later duplicates comparing against the stored state
                pending[feed_event.uid] = Mutation(kind=MutationKind.UPDATE, event=stored)

        mutations = [
            mutation for mutation in pending.values()
            if mutation.kind == MutationKind.CREATE or mutation.version_increment > 0
        ]

        logger.info(
            f"Reconciled feed {feed_url} for user {user_id}: "
            f"{new_count} new, {updated_count} updated, "
            f"{len(events) - new_count - updated_count} unchanged"
        )
        return ReconcileResult(
            mutations=mutations,
            new_count=new_count,
            updated_count=updated_count
        )

    @staticmethod
    def _should_update(feed_event: NormalizedEvent, stored: Event) -> bool:
        """A feed event wins only if its LAST-MODIFIED is newer than updatedAt."""
        if feed_event.last_modified is None:
            return False
        return feed_event.last_modified > stored.updated_at

    @staticmethod
    def _apply(stored: Event, feed_event: NormalizedEvent, now: datetime) -> Event:
        return replace(
            stored,
            title=feed_event.title,
            notes=feed_event.description,
            start_time=feed_event.start,
            end_time=feed_event.end,
            version=stored.version + 1,
            updated_at=now
        )

    @staticmethod
    def _new_event(user_id: str, feed_event: NormalizedEvent, now: datetime) -> Event:
        return Event(
            event_id=generate_event_id(user_id, feed_event.uid),
            user_id=user_id,
            title=feed_event.title,
            notes=feed_event.description,
            start_time=feed_event.start,
            end_time=feed_event.end,
            color=DEFAULT_EVENT_COLOR,
            source=ICAL_SOURCE,
            ical_uid=feed_event.uid,
            version=1,
            created_at=now,
            updated_at=now
        )

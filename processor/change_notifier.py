"""Partner notifications for event changes."""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from processor.errors import DeliveryError, StoreError
from processor.models import ChangeEvent, ChangeKind, EventSnapshot, PushMessage, User
from processor.quiet_hours import is_suppressed, local_now, resolve_zone

logger = logging.getLogger(__name__)

DEFAULT_OWNER_NAME = 'Your partner'

TITLE_VERBS = {
    ChangeKind.CREATED: 'added',
    ChangeKind.UPDATED: 'updated',
    ChangeKind.DELETED: 'deleted',
}


def has_material_change(change: ChangeEvent) -> bool:
    """
    Check whether an update touched title, start or end.

    Times are compared as instants, so a re-serialized but equal timestamp
    is not a change.
    """
    before, after = change.before, change.after
    if before is None or after is None:
        return False
    return (
        before.title != after.title
        or before.start_time != after.start_time
        or before.end_time != after.end_time
    )


def format_date(value: datetime) -> str:
    """Format a date as e.g. "Jan 15, 2024"."""
    return f"{value:%b} {value.day}, {value.year}"


def format_time(value: datetime) -> str:
    """Format a time of day as e.g. "8:00 AM"."""
    hour = value.hour % 12 or 12
    return f"{hour}:{value.minute:02d} {'AM' if value.hour < 12 else 'PM'}"


class ChangeNotifier:
    """Decides whether a partner is notified about an event change and sends it."""

    def __init__(
        self,
        store,
        channel,
        default_time_zone: str = 'UTC',
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Args:
            store: Object with get_user(user_id) -> Optional[User]
            channel: Object with send(PushMessage)
            default_time_zone: Zone used when a user declares none
            clock: Returns the current time, defaults to UTC now
        """
        self.store = store
        self.channel = channel
        self.default_time_zone = default_time_zone
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def notify(self, change: ChangeEvent) -> bool:
        """
        Run the notification pipeline for one change.

        Never raises; every discarded change is logged with its reason.

        Returns:
            True if a notification was handed to the channel
        """
        try:
            return await self._notify(change)
        except Exception as e:
            logger.error(
                f"Unexpected error notifying about event {change.event_id}: {e}",
                extra={'event_id': change.event_id, 'error_type': type(e).__name__},
                exc_info=True
            )
            return False

    async def _notify(self, change: ChangeEvent) -> bool:
        if change.kind == ChangeKind.UPDATED and not has_material_change(change):
            logger.debug(f"Event {change.event_id} changed only bookkeeping fields")
            return False

        snapshot = change.snapshot
        if snapshot is None:
            logger.info(f"No event data for {change.kind.value} event {change.event_id}")
            return False

        owner = await self._load_user(change.user_id)
        if owner is None:
            logger.info(f"User {change.user_id} not found")
            return False

        if not owner.partner_id:
            logger.info(f"User {owner.user_id} has no partner")
            return False

        partner = await self._load_user(owner.partner_id)
        if partner is None:
            logger.info(f"Partner {owner.partner_id} not found")
            return False

        settings = partner.notification_settings
        if settings is None or settings.partner_changes is not True:
            logger.info(f"Partner {partner.user_id} has disabled partner change notifications")
            return False

        partner_now = local_now(settings, self.clock(), self.default_time_zone)
        if is_suppressed(settings, partner_now):
            logger.info(f"Partner {partner.user_id} is in quiet hours, suppressing notification")
            return False

        if not partner.push_token:
            logger.info(f"Partner {partner.user_id} has no push token")
            return False

        message = self.build_message(change, snapshot, owner, partner.push_token)

        try:
            await asyncio.to_thread(self.channel.send, message)
        except DeliveryError as e:
            logger.error(
                f"Failed to deliver notification to partner {partner.user_id}: {e}",
                extra={'event_id': change.event_id, 'error_type': type(e).__name__}
            )
            return False

        logger.info(
            f"Notification sent to partner {partner.user_id} about "
            f"{change.kind.value} event {change.event_id}"
        )
        return True

    async def _load_user(self, user_id: str) -> Optional[User]:
        """Read a user; a failed read counts as absent."""
        try:
            return await asyncio.to_thread(self.store.get_user, user_id)
        except StoreError as e:
            logger.warning(f"Could not load user {user_id}: {e}")
            return None

    def build_message(
        self,
        change: ChangeEvent,
        snapshot: EventSnapshot,
        owner: User,
        target: str
    ) -> PushMessage:
        """Build the push message text and data for a change."""
        owner_name = owner.name or DEFAULT_OWNER_NAME
        title = f"{owner_name} {TITLE_VERBS[change.kind]} a shift"

        if change.kind == ChangeKind.CREATED:
            body = self._created_body(snapshot, owner)
        elif change.kind == ChangeKind.UPDATED:
            body = f"{snapshot.title} was modified"
        else:
            body = f"{snapshot.title} was removed"

        return PushMessage(
            target=target,
            title=title,
            body=body,
            data={
                'type': f"event_{change.kind.value}",
                'eventId': change.event_id,
                'userId': change.user_id
            }
        )

    def _created_body(self, snapshot: EventSnapshot, owner: User) -> str:
        if snapshot.start_time is None or snapshot.end_time is None:
            return snapshot.title

        zone = resolve_zone(owner.time_zone, self.default_time_zone)
        start = snapshot.start_time.astimezone(zone)
        end = snapshot.end_time.astimezone(zone)
        return (
            f"{snapshot.title} on {format_date(start)} "
            f"({format_time(start)} - {format_time(end)})"
        )

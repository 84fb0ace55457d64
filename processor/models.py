"""Data models for feed sync and partner notifications."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


ICAL_SOURCE = 'ical'
DEFAULT_EVENT_COLOR = '#4285F4'
UNTITLED_EVENT = 'Untitled Event'


def format_timestamp(value: datetime) -> str:
    """Serialize an aware datetime as an ISO 8601 UTC string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a stored ISO 8601 timestamp into an aware UTC datetime.

    Returns None for missing or unparseable values.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class NotificationSettings:
    """Partner notification preferences of one user."""
    partner_changes: bool = False
    quiet_hours_enabled: bool = False
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    time_zone: Optional[str] = None


@dataclass
class FeedSubscription:
    """External calendar feed linked by a user, identified by URL."""
    url: str
    last_sync: Optional[datetime] = None


@dataclass
class User:
    """User record with partner link, push token and feed subscriptions."""
    user_id: str
    name: Optional[str] = None
    partner_id: Optional[str] = None
    push_token: Optional[str] = None
    time_zone: Optional[str] = None
    notification_settings: Optional[NotificationSettings] = None
    feeds: List[FeedSubscription] = field(default_factory=list)


@dataclass
class Event:
    """Stored calendar event."""
    event_id: str
    user_id: str
    title: str
    notes: str
    start_time: datetime
    end_time: datetime
    color: str
    source: str
    ical_uid: Optional[str]
    version: int
    created_at: datetime
    updated_at: datetime


@dataclass
class NormalizedEvent:
    """One occurrence read from a feed."""
    uid: str
    title: str
    start: datetime
    end: datetime
    description: str = ''
    last_modified: Optional[datetime] = None


class MutationKind(Enum):
    CREATE = 'create'
    UPDATE = 'update'


@dataclass
class Mutation:
    """
    Pending write for one stored event.

    `event` holds the state after the write. For updates the stored version
    is advanced by `version_increment` with an atomic counter update.
    """
    kind: MutationKind
    event: Event
    version_increment: int = 0


@dataclass
class ReconcileResult:
    """Mutations computed for one feed."""
    mutations: List[Mutation]
    new_count: int
    updated_count: int


@dataclass
class FeedOutcome:
    """Outcome of syncing one (user, feed) pair."""
    user_id: str
    feed_url: str
    new_count: int = 0
    updated_count: int = 0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class SyncResult:
    """Result of one sync run across all feeds."""
    successful: int
    failed: int
    outcomes: List[FeedOutcome] = field(default_factory=list)


class ChangeKind(Enum):
    CREATED = 'created'
    UPDATED = 'updated'
    DELETED = 'deleted'


@dataclass
class EventSnapshot:
    """User-visible fields of an event at one point in time."""
    title: str
    start_time: Optional[datetime]
    end_time: Optional[datetime]


@dataclass
class ChangeEvent:
    """A committed mutation to an event, as reported by the trigger source."""
    kind: ChangeKind
    event_id: str
    user_id: str
    before: Optional[EventSnapshot] = None
    after: Optional[EventSnapshot] = None

    @property
    def snapshot(self) -> Optional[EventSnapshot]:
        """State shown to the partner: the removed state for deletions."""
        if self.kind == ChangeKind.DELETED:
            return self.before
        return self.after


@dataclass
class PushMessage:
    """Notification handed to the push channel."""
    target: str
    title: str
    body: str
    data: Dict[str, str] = field(default_factory=dict)

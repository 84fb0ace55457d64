"""Conversion of events table stream records into change events."""
import logging
from typing import Any, Dict, List, Optional

from boto3.dynamodb.types import TypeDeserializer

from processor.models import ChangeEvent, ChangeKind, EventSnapshot, parse_timestamp

logger = logging.getLogger(__name__)

_deserializer = TypeDeserializer()

EVENT_NAMES = {
    'INSERT': ChangeKind.CREATED,
    'MODIFY': ChangeKind.UPDATED,
    'REMOVE': ChangeKind.DELETED,
}


def change_events_from_stream(event: Dict[str, Any]) -> List[ChangeEvent]:
    """
    Convert a DynamoDB Stream Lambda payload into ChangeEvents.

    Args:
        event: Lambda event with a 'Records' list

    Returns:
        One ChangeEvent per usable record, in stream order
    """
    changes = []
    for record in event.get('Records', []):
        change = change_event_from_record(record)
        if change is not None:
            changes.append(change)
    return changes


def change_event_from_record(record: Dict[str, Any]) -> Optional[ChangeEvent]:
    kind = EVENT_NAMES.get(record.get('eventName'))
    if kind is None:
        logger.warning(f"Skipping stream record with event name {record.get('eventName')}")
        return None

    data = record.get('dynamodb', {})
    new_image = _deserialize(data.get('NewImage'))
    old_image = _deserialize(data.get('OldImage'))

    image = old_image if kind == ChangeKind.DELETED else new_image
    if not image or not image.get('eventId') or not image.get('userId'):
        logger.warning(f"Skipping {kind.value} stream record without usable image")
        return None
    if kind == ChangeKind.UPDATED and not old_image:
        logger.warning("Skipping updated stream record without old image")
        return None

    return ChangeEvent(
        kind=kind,
        event_id=str(image['eventId']),
        user_id=str(image['userId']),
        before=_snapshot(old_image),
        after=_snapshot(new_image)
    )


def _deserialize(image: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not image:
        return None
    return {key: _deserializer.deserialize(value) for key, value in image.items()}


def _snapshot(image: Optional[Dict[str, Any]]) -> Optional[EventSnapshot]:
    if not image:
        return None
    return EventSnapshot(
        title=str(image.get('title', '')),
        start_time=parse_timestamp(image.get('startTime')),
        end_time=parse_timestamp(image.get('endTime'))
    )

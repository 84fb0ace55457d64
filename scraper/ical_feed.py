"""Fetching and parsing of external iCalendar feeds."""
import logging
import time
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional

import requests
from icalendar import Calendar

from processor.errors import FetchError, ParseError
from processor.models import NormalizedEvent, UNTITLED_EVENT

logger = logging.getLogger(__name__)


class IcalFeedFetcher:
    """Retrieves raw feed text over HTTP."""

    def __init__(
        self,
        timeout: float = 10,
        user_agent: str = 'ShiftCalendar/1.0',
        max_attempts: int = 1
    ):
        """
        Initialize the feed fetcher.

        Args:
            timeout: HTTP request timeout in seconds (default: 10)
            user_agent: Value of the User-Agent header
            max_attempts: Attempts per fetch before giving up (default: 1)
        """
        self.timeout = timeout
        self.user_agent = user_agent
        self.max_attempts = max(1, max_attempts)

    def fetch(self, url: str) -> str:
        """
        Fetch a calendar feed.

        Args:
            url: Feed URL (http, https or webcal)

        Returns:
            Feed content as text

        Raises:
            FetchError: On HTTP error status, network failure or timeout
        """
        request_url = self._normalize_url(url)
        base_delay = 1  # seconds

        for attempt in range(self.max_attempts):
            try:
                response = requests.get(
                    request_url,
                    headers={'User-Agent': self.user_agent},
                    timeout=self.timeout
                )
                response.raise_for_status()
                return response.text

            except requests.RequestException as e:
                error = self._to_fetch_error(e)
                if attempt < self.max_attempts - 1:
                    delay = base_delay * (2 ** attempt)
                    logger.warning(
                        f"Feed request failed (attempt {attempt + 1}/{self.max_attempts}): "
                        f"{error}. Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    raise error from e

    @staticmethod
    def _normalize_url(url: str) -> str:
        if url.lower().startswith('webcal://'):
            return 'https://' + url[len('webcal://'):]
        return url

    @staticmethod
    def _to_fetch_error(error: requests.RequestException) -> FetchError:
        if isinstance(error, requests.HTTPError) and error.response is not None:
            return FetchError(
                error.response.reason or 'HTTP error',
                status=error.response.status_code
            )
        if isinstance(error, requests.Timeout):
            return FetchError(f"Request timed out: {error}")
        return FetchError(f"Request failed: {error}")


class IcalFeedParser:
    """Converts iCalendar text into normalized events."""

    DEFAULT_DURATION = timedelta(hours=1)
    ALL_DAY_DURATION = timedelta(days=1)

    def parse(self, raw_text: str) -> List[NormalizedEvent]:
        """
        Parse feed content into one NormalizedEvent per VEVENT.

        Recurrence rules are not expanded. Components without a UID or a
        usable start are skipped.

        Args:
            raw_text: iCalendar document

        Returns:
            List of NormalizedEvent objects in feed order

        Raises:
            ParseError: If the document is not an iCalendar calendar
        """
        try:
            calendar = Calendar.from_ical(raw_text)
        except Exception as e:
            raise ParseError(f"Invalid iCalendar data: {e}") from e

        if calendar.name != 'VCALENDAR':
            raise ParseError(f"Expected VCALENDAR, found {calendar.name}")

        events = []
        for component in calendar.walk('VEVENT'):
            try:
                event = self._parse_component(component)
            except Exception as e:
                logger.warning(f"Failed to parse VEVENT: {e}")
                continue
            if event:
                events.append(event)

        logger.info(f"Parsed {len(events)} events from feed")
        return events

    def _parse_component(self, component) -> Optional[NormalizedEvent]:
        uid = component.get('UID')
        if uid is None or not str(uid).strip():
            logger.warning("Skipping VEVENT without UID")
            return None

        dtstart = component.get('DTSTART')
        if dtstart is None:
            logger.warning(f"Skipping VEVENT {uid} without DTSTART")
            return None

        all_day = not isinstance(dtstart.dt, datetime)
        start = self._to_utc(dtstart.dt)
        end = self._resolve_end(component, start, all_day)

        summary = component.get('SUMMARY')
        description = component.get('DESCRIPTION')
        last_modified = component.get('LAST-MODIFIED')

        return NormalizedEvent(
            uid=str(uid).strip(),
            title=str(summary) if summary else UNTITLED_EVENT,
            start=start,
            end=end,
            description=str(description) if description else '',
            last_modified=self._to_utc(last_modified.dt) if last_modified else None
        )

    def _resolve_end(self, component, start: datetime, all_day: bool) -> datetime:
        dtend = component.get('DTEND')
        if dtend is not None:
            return self._to_utc(dtend.dt)

        duration = component.get('DURATION')
        if duration is not None and isinstance(duration.dt, timedelta):
            return start + duration.dt

        return start + (self.ALL_DAY_DURATION if all_day else self.DEFAULT_DURATION)

    @staticmethod
    def _to_utc(value) -> datetime:
        """Normalize a DATE or DATE-TIME value to an aware UTC datetime."""
        if isinstance(value, datetime):
            if value.tzinfo is None:
                # Floating time
                return value.replace(tzinfo=timezone.utc)
            return value.astimezone(timezone.utc)
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
        raise ValueError(f"Unsupported date value: {value!r}")

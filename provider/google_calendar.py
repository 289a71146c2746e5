"""Google Calendar client fetching events with a service-account identity."""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, time as dt_time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote
from zoneinfo import ZoneInfo

import requests
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import AuthorizedSession
from google.oauth2 import service_account

from processor.models import CalendarEvent, FetchWindow, ProviderResult, parse_timestamp
from sync.errors import ProviderError

logger = logging.getLogger(__name__)

CALENDAR_SCOPES = ['https://www.googleapis.com/auth/calendar.readonly']
TOKEN_URI = 'https://oauth2.googleapis.com/token'


class GoogleCalendarClient:
    """Client for the Google Calendar v3 events.list endpoint."""

    EVENTS_URL = 'https://www.googleapis.com/calendar/v3/calendars/{calendar_id}/events'
    MAX_RESULTS = 2500
    RETRYABLE_STATUS = {429, 500, 502, 503, 504}

    def __init__(
        self,
        service_account_email: Optional[str] = None,
        private_key: Optional[str] = None,
        impersonate_user: Optional[str] = None,
        credentials=None,
        timeout: int = 30,
        max_retries: int = 3,
        base_delay: float = 1,
        max_workers: int = 4
    ):
        """
        Initialize the calendar client.

        Args:
            service_account_email: Service account client email
            private_key: PEM private key of the service account
            impersonate_user: Optional user to impersonate (domain-wide delegation)
            credentials: Pre-built google-auth credentials, overrides the above
            timeout: HTTP request timeout in seconds (default: 30)
            max_retries: Attempts per page request (default: 3)
            base_delay: Initial backoff delay in seconds (default: 1)
            max_workers: Calendars fetched concurrently (default: 4)
        """
        self.service_account_email = service_account_email
        self.private_key = private_key
        self.impersonate_user = impersonate_user
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_workers = max(1, max_workers)
        self._credentials = credentials
        self._credentials_lock = threading.Lock()

    def _get_credentials(self):
        with self._credentials_lock:
            if self._credentials is None:
                info = {
                    'type': 'service_account',
                    'client_email': self.service_account_email,
                    'private_key': self.private_key,
                    'token_uri': TOKEN_URI
                }
                self._credentials = service_account.Credentials.from_service_account_info(
                    info,
                    scopes=CALENDAR_SCOPES,
                    subject=self.impersonate_user or None
                )
            return self._credentials

    def fetch_all(self, calendar_ids: List[str], window: FetchWindow) -> List[ProviderResult]:
        """
        Fetch every calendar, isolating failures per calendar.

        Args:
            calendar_ids: Calendars to fetch
            window: Time range to query

        Returns:
            One ProviderResult per calendar, in the order given
        """
        if not calendar_ids:
            return []

        workers = min(self.max_workers, len(calendar_ids))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(executor.map(
                lambda calendar_id: self._fetch_result(calendar_id, window),
                calendar_ids
            ))

    def _fetch_result(self, calendar_id: str, window: FetchWindow) -> ProviderResult:
        logger.info(
            "googleCalendar.fetch.start",
            extra={
                'calendar_id': calendar_id,
                'time_min': window.time_min.isoformat(),
                'time_max': window.time_max.isoformat()
            }
        )
        try:
            events = self.fetch_events(calendar_id, window)
        except ProviderError as e:
            logger.warning(
                "googleCalendar.fetch.error",
                extra={'calendar_id': calendar_id, 'error': str(e)}
            )
            return ProviderResult.err(calendar_id, e)

        logger.info(
            "googleCalendar.fetch.success",
            extra={'calendar_id': calendar_id, 'total_events': len(events)}
        )
        return ProviderResult.ok(calendar_id, events)

    def fetch_events(self, calendar_id: str, window: FetchWindow) -> List[CalendarEvent]:
        """
        Fetch all events of one calendar inside the window, across pages.

        Args:
            calendar_id: Calendar to fetch
            window: Time range to query

        Returns:
            List of CalendarEvent objects

        Raises:
            ProviderError: If authentication or any page request fails
        """
        url = self.EVENTS_URL.format(calendar_id=quote(calendar_id, safe=''))
        params = {
            'timeMin': window.time_min.isoformat(),
            'timeMax': window.time_max.isoformat(),
            'timeZone': window.time_zone,
            'singleEvents': 'true',
            'orderBy': 'startTime',
            'maxResults': self.MAX_RESULTS
        }
        default_tz = ZoneInfo(window.time_zone)
        events = []

        try:
            credentials = self._get_credentials()
        except (GoogleAuthError, ValueError) as e:
            raise ProviderError(calendar_id, f"Invalid service account credentials: {e}") from e

        with AuthorizedSession(credentials) as session:
            page_token = None
            while True:
                if page_token:
                    params['pageToken'] = page_token
                page = self._get_page(session, calendar_id, url, params)

                for item in page.get('items', []):
                    event = self._parse_item(calendar_id, item, default_tz)
                    if event:
                        events.append(event)

                page_token = page.get('nextPageToken')
                if not page_token:
                    break

        logger.debug(f"Fetched {len(events)} events for calendar {calendar_id}")
        return events

    def _get_page(
        self,
        session: requests.Session,
        calendar_id: str,
        url: str,
        params: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Request one page with retry and exponential backoff.

        Network errors, 429 and 5xx responses are retried; other client
        errors fail immediately.

        Args:
            session: Authorized HTTP session
            calendar_id: Calendar being fetched (for error reporting)
            url: Events endpoint URL
            params: Query parameters

        Returns:
            Decoded JSON page

        Raises:
            ProviderError: If all retry attempts fail
        """
        last_error = None

        for attempt in range(self.max_retries):
            try:
                response = session.get(url, params=params, timeout=self.timeout)
                if response.status_code in self.RETRYABLE_STATUS:
                    response.raise_for_status()
                if response.status_code >= 400:
                    raise ProviderError(
                        calendar_id,
                        f"HTTP {response.status_code}: {response.text[:200]}",
                        status_code=response.status_code
                    )
                return response.json()

            except GoogleAuthError as e:
                raise ProviderError(calendar_id, f"Authentication failed: {e}") from e

            except ValueError as e:
                raise ProviderError(calendar_id, f"Invalid JSON response: {e}") from e

            except requests.RequestException as e:
                last_error = e
                if attempt < self.max_retries - 1:
                    delay = self.base_delay * (2 ** attempt)
                    logger.warning(
                        f"Request failed for {calendar_id} "
                        f"(attempt {attempt + 1}/{self.max_retries}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"All {self.max_retries} retry attempts failed for "
                        f"{calendar_id}. Last error: {e}"
                    )

        status_code = None
        if isinstance(last_error, requests.HTTPError) and last_error.response is not None:
            status_code = last_error.response.status_code
        raise ProviderError(calendar_id, str(last_error), status_code=status_code)

    def _parse_item(
        self,
        calendar_id: str,
        item: Dict[str, Any],
        default_tz: ZoneInfo
    ) -> Optional[CalendarEvent]:
        """
        Convert a provider item to a CalendarEvent.

        Args:
            calendar_id: Calendar the item belongs to
            item: Event resource from the API
            default_tz: Zone used for all-day events without their own zone

        Returns:
            CalendarEvent, or None if the item has no id
        """
        event_id = item.get('id')
        if not event_id:
            return None

        start, all_day = self._parse_event_time(item.get('start'), default_tz)
        end, _ = self._parse_event_time(item.get('end'), default_tz)

        return CalendarEvent(
            calendar_id=calendar_id,
            event_id=event_id,
            title=item.get('summary'),
            start=start,
            end=end,
            all_day=all_day,
            location=item.get('location'),
            description=item.get('description'),
            status=item.get('status'),
            event_type=item.get('eventType'),
            visibility=item.get('visibility'),
            transparency=item.get('transparency'),
            color_id=item.get('colorId'),
            hangout_link=item.get('hangoutLink'),
            created=parse_timestamp(item.get('created')),
            updated=parse_timestamp(item.get('updated')),
            raw=item
        )

    def _parse_event_time(
        self,
        value: Optional[Dict[str, Any]],
        default_tz: ZoneInfo
    ) -> Tuple[Optional[datetime], bool]:
        """
        Parse an EventDateTime resource.

        Args:
            value: Dict with either "dateTime" or "date" (all-day)
            default_tz: Zone for all-day dates

        Returns:
            Tuple of (timezone-aware datetime or None, is_all_day)
        """
        if not value:
            return None, False

        if value.get('dateTime'):
            return parse_timestamp(value['dateTime']), False

        if value.get('date'):
            tz = default_tz
            if value.get('timeZone'):
                try:
                    tz = ZoneInfo(value['timeZone'])
                except (KeyError, ValueError):
                    pass
            try:
                day = datetime.strptime(value['date'], '%Y-%m-%d').date()
            except ValueError:
                return None, True
            return datetime.combine(day, dt_time.min, tzinfo=tz), True

        return None, False

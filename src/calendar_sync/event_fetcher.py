from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone, tzinfo
from typing import Any, List, Optional
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from calendar_sync.config import DEFAULT_HTTP_TIMEOUT_S, GoogleOAuthConfig
from calendar_sync.errors import FetchError, NeedsTokenRefresh
from study_planner.models import CalendarConnection, ExternalEvent

logger = logging.getLogger(__name__)

# Google's upper bound for maxResults on events.list
PAGE_SIZE = 2500


def _rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _calendar_zone(name: Optional[str]) -> tzinfo:
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown calendar time zone {name!r}, falling back to UTC")
        return timezone.utc


def _parse_boundary(boundary: Any, tz: tzinfo) -> Optional[datetime]:
    """Parse a Google ``start``/``end`` object; all-day dates become local midnight."""
    if not isinstance(boundary, dict):
        return None

    raw = boundary.get("dateTime")
    if raw:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=tz)
        return parsed

    raw = boundary.get("date")
    if raw:
        return datetime.combine(date.fromisoformat(raw), time.min, tzinfo=tz)
    return None


class EventFetcher:
    """Lists events of one connection's calendar through the provider API."""

    def __init__(
        self,
        config: GoogleOAuthConfig,
        http_client: httpx.AsyncClient,
        timeout_s: float = DEFAULT_HTTP_TIMEOUT_S,
    ):
        self.config = config
        self._http_client = http_client
        self._timeout_s = timeout_s

    async def fetch(
        self, connection: CalendarConnection, start: datetime, end: datetime
    ) -> List[ExternalEvent]:
        """
        Return the events of ``connection.calendar_id`` between ``start`` and
        ``end``, recurring events expanded and ordered by start time.

        Raises NeedsTokenRefresh on HTTP 401 and FetchError on anything else
        that is not a success. Never retries.
        """
        url = (
            f"{self.config.api_base_url}/calendars/"
            f"{quote(connection.calendar_id, safe='')}/events"
        )
        params = {
            "timeMin": _rfc3339(start),
            "timeMax": _rfc3339(end),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": str(PAGE_SIZE),
        }

        events: List[ExternalEvent] = []
        page_token: Optional[str] = None
        while True:
            if page_token:
                params["pageToken"] = page_token
            payload = await self._get_page(connection, url, params)

            tz = _calendar_zone(payload.get("timeZone"))
            for item in payload.get("items") or []:
                event = self._to_external_event(item, connection, tz)
                if event is not None:
                    events.append(event)

            page_token = payload.get("nextPageToken")
            if not page_token:
                break

        logger.info(
            f"Fetched {len(events)} events from calendar {connection.calendar_id} "
            f"for connection {connection.id}"
        )
        return events

    async def _get_page(
        self, connection: CalendarConnection, url: str, params: dict
    ) -> dict[str, Any]:
        try:
            response = await self._http_client.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {connection.access_token}"},
                timeout=self._timeout_s,
            )
        except httpx.TimeoutException as exc:
            raise FetchError("fetch_timeout") from exc
        except httpx.HTTPError as exc:
            logger.error(f"Event listing request failed: {exc}")
            raise FetchError("fetch_failed") from exc

        if response.status_code == 401:
            raise NeedsTokenRefresh()
        if not response.is_success:
            raise FetchError(f"fetch_failed (HTTP {response.status_code})")

        try:
            payload = response.json()
        except ValueError as exc:
            raise FetchError("fetch_failed (invalid JSON)") from exc
        if not isinstance(payload, dict):
            raise FetchError("fetch_failed (unexpected payload)")
        return payload

    def _to_external_event(
        self, item: Any, connection: CalendarConnection, tz: tzinfo
    ) -> Optional[ExternalEvent]:
        if not isinstance(item, dict) or not item.get("id"):
            return None
        if item.get("status") == "cancelled":
            return None

        # pydantic's ValidationError is a ValueError
        try:
            start = _parse_boundary(item.get("start"), tz)
            if start is None:
                return None
            end = _parse_boundary(item.get("end"), tz)
            return ExternalEvent(
                id=item["id"],
                title=item.get("summary") or "(No title)",
                description=item.get("description"),
                start=start,
                end=end or start,
                location=item.get("location"),
                calendar_id=connection.calendar_id,
                source=connection.provider_type.value,
            )
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Skipping malformed event {item.get('id')!r}: {e}")
            return None

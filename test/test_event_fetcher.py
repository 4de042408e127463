from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import httpx
import pytest

from calendar_sync.config import GoogleOAuthConfig
from calendar_sync.errors import FetchError, NeedsTokenRefresh
from calendar_sync.event_fetcher import EventFetcher
from conftest import NOW, OAUTH_CONFIG, google_event, make_connection

START = NOW
END = NOW + timedelta(days=30)


async def test_fetch_requests_expanded_ordered_events(event_fetcher, fake_google):
    fake_google.items = [google_event("evt1", NOW + timedelta(days=1), location="Room 4")]

    events = await event_fetcher.fetch(make_connection(), START, END)

    assert len(events) == 1
    assert events[0].id == "evt1"
    assert events[0].title == "Lecture"
    assert events[0].location == "Room 4"
    assert events[0].source == "google"

    request = fake_google.event_requests[0]
    assert request.url.path == "/calendar/v3/calendars/primary/events"
    assert request.url.params["singleEvents"] == "true"
    assert request.url.params["orderBy"] == "startTime"
    assert request.url.params["timeMin"] == START.isoformat()
    assert request.headers["Authorization"] == "Bearer fresh-token"


async def test_fetch_skips_cancelled_and_defaults_title(event_fetcher, fake_google):
    untitled = google_event("evt2", NOW + timedelta(days=2))
    del untitled["summary"]
    fake_google.items = [
        google_event("evt1", NOW + timedelta(days=1), status="cancelled"),
        untitled,
    ]

    events = await event_fetcher.fetch(make_connection(), START, END)

    assert [e.id for e in events] == ["evt2"]
    assert events[0].title == "(No title)"


async def test_all_day_event_starts_at_midnight_in_calendar_zone(event_fetcher, fake_google):
    fake_google.time_zone = "Europe/Bratislava"
    fake_google.items = [
        {"id": "exam", "summary": "Exam", "start": {"date": "2026-03-12"}, "end": {"date": "2026-03-13"}}
    ]

    events = await event_fetcher.fetch(make_connection(), START, END)

    assert events[0].start == datetime(2026, 3, 12, tzinfo=ZoneInfo("Europe/Bratislava"))


async def test_unauthorized_signals_refresh_without_retrying(event_fetcher, fake_google):
    with pytest.raises(NeedsTokenRefresh):
        await event_fetcher.fetch(make_connection(access_token="revoked"), START, END)

    assert len(fake_google.event_requests) == 1


async def test_server_error_is_terminal(event_fetcher, fake_google):
    fake_google.event_statuses = [503]

    with pytest.raises(FetchError, match="HTTP 503"):
        await event_fetcher.fetch(make_connection(), START, END)

    assert len(fake_google.event_requests) == 1


async def test_timeout_is_a_fetch_failure():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    fetcher = EventFetcher(OAUTH_CONFIG, client, timeout_s=0.5)

    with pytest.raises(FetchError, match="fetch_timeout"):
        await fetcher.fetch(make_connection(), START, END)


async def test_follows_page_tokens():
    pages = {
        None: {"items": [google_event("a", NOW)], "nextPageToken": "p2"},
        "p2": {"items": [google_event("b", NOW + timedelta(hours=2))]},
    }

    def handler(request):
        return httpx.Response(200, json=pages[request.url.params.get("pageToken")])

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    config = GoogleOAuthConfig(client_id="cid", client_secret="secret")
    events = await EventFetcher(config, client).fetch(make_connection(), START, END)

    assert [e.id for e in events] == ["a", "b"]


async def test_fetch_uses_connection_calendar_id(event_fetcher, fake_google):
    connection = make_connection().model_copy(update={"calendar_id": "team@group.calendar.google.com"})

    await event_fetcher.fetch(connection, START, END)

    request = fake_google.event_requests[0]
    assert request.url.path == "/calendar/v3/calendars/team@group.calendar.google.com/events"


async def test_naive_window_is_sent_as_utc(event_fetcher, fake_google):
    await event_fetcher.fetch(make_connection(), datetime(2026, 3, 10), datetime(2026, 3, 11))

    params = fake_google.event_requests[0].url.params
    assert params["timeMin"] == datetime(2026, 3, 10, tzinfo=timezone.utc).isoformat()


async def test_malformed_items_are_skipped_without_failing_the_page(event_fetcher, fake_google):
    bad_start = google_event("bad-start", NOW + timedelta(days=1))
    bad_start["start"] = {"dateTime": 20260311}
    fake_google.items = [
        google_event(12345, NOW + timedelta(days=1)),
        google_event("bad-title", NOW + timedelta(days=1), summary={"text": "Lecture"}),
        bad_start,
        google_event("good", NOW + timedelta(days=2)),
    ]

    events = await event_fetcher.fetch(make_connection(), START, END)

    assert [e.id for e in events] == ["good"]

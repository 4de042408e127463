from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from study_planner.models import CalendarConnection, ExternalEvent, ProviderType, Task


def test_connection_defaults():
    c = CalendarConnection(user_id="u1", expires_at=datetime(2026, 1, 1, tzinfo=timezone.utc))
    assert c.provider_type is ProviderType.GOOGLE
    assert c.calendar_id == "primary"
    assert c.refresh_token is None


def test_connection_requires_aware_expiry():
    with pytest.raises(ValidationError):
        CalendarConnection(user_id="u1", expires_at=datetime(2026, 1, 1))


def test_connection_repr_hides_tokens():
    c = CalendarConnection(
        user_id="u1",
        access_token="ya29.secret",
        refresh_token="1//refresh-secret",
        expires_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    assert "secret" not in repr(c)
    assert "secret" not in str(c)
    assert "<REDACTED>" in repr(c)


def test_event_start_must_be_aware():
    with pytest.raises(ValidationError):
        ExternalEvent(id="e1", title="X", start=datetime(2026, 1, 1, 9, 0))


def test_task_defaults():
    t = Task(id="t1", title="Lecture", date=datetime(2026, 1, 1, tzinfo=timezone.utc), user_id="u1")
    assert t.type == "event"
    assert t.status == "not-started"
    assert t.archived is False
    assert t.class_id is None


def test_task_rejects_unknown_status():
    with pytest.raises(ValidationError):
        Task(
            id="t1",
            title="Lecture",
            date=datetime(2026, 1, 1, tzinfo=timezone.utc),
            user_id="u1",
            status="someday",
        )

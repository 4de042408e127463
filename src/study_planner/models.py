from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class ProviderType(str, Enum):
    GOOGLE = "google"


TaskStatus = Literal["not-started", "in-progress", "to-submit", "done"]


def _require_aware(v: datetime) -> datetime:
    if v.tzinfo is None or v.utcoffset() is None:
        raise ValueError("datetime must be timezone-aware")
    return v


class CalendarConnection(BaseModel):
    """One OAuth credential binding a user to a provider calendar."""

    id: Optional[str] = None
    user_id: str = Field(..., min_length=1)
    provider_type: ProviderType = ProviderType.GOOGLE
    access_token: str = ""
    refresh_token: Optional[str] = None

    # Absolute instant of expiry, never a duration.
    expires_at: datetime
    calendar_id: str = "primary"

    @field_validator("expires_at")
    @classmethod
    def expires_at_aware(cls, v: datetime) -> datetime:
        return _require_aware(v)

    def __repr__(self) -> str:
        return (
            f"CalendarConnection(id={self.id!r}, user_id={self.user_id!r}, "
            f"provider_type={self.provider_type.value!r}, access_token=<REDACTED>, "
            f"refresh_token=<REDACTED>, expires_at={self.expires_at.isoformat()!r}, "
            f"calendar_id={self.calendar_id!r})"
        )

    __str__ = __repr__


class ExternalEvent(BaseModel):
    """Read-only, provider-shaped calendar entry. Never persisted as-is."""

    id: str = Field(..., min_length=1)
    title: str
    description: Optional[str] = None
    start: datetime
    end: Optional[datetime] = None
    location: Optional[str] = None
    calendar_id: str = "primary"
    source: str = ProviderType.GOOGLE.value

    @field_validator("start")
    @classmethod
    def start_aware(cls, v: datetime) -> datetime:
        return _require_aware(v)


class TaskDraft(BaseModel):
    """A translated calendar event that has not been persisted yet."""

    title: str
    type: str = "event"
    status: TaskStatus = "not-started"
    date: datetime
    user_id: str
    source: Optional[str] = None
    source_id: Optional[str] = None
    location: str = ""
    archived: bool = False


class Task(TaskDraft):
    id: str
    class_id: Optional[str] = None
    created_at: Optional[datetime] = None

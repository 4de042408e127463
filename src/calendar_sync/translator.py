from __future__ import annotations

from datetime import datetime
from typing import Iterable, List

from study_planner.models import ExternalEvent, TaskDraft


def source_id_for(source: str, event_id: str) -> str:
    """Namespaced dedup key, e.g. ``google_abc123``."""
    return f"{source}_{event_id}"


def local_midnight(now: datetime) -> datetime:
    """Start of the current day in the server's local time zone."""
    return now.astimezone().replace(hour=0, minute=0, second=0, microsecond=0)


class EventTranslator:
    def to_task(self, event: ExternalEvent, user_id: str) -> TaskDraft:
        return TaskDraft(
            title=event.title,
            type="event",
            status="not-started",
            date=event.start,
            user_id=user_id,
            source=event.source,
            source_id=source_id_for(event.source, event.id),
            location=event.location or "",
        )

    def translate(
        self, events: Iterable[ExternalEvent], user_id: str, today: datetime
    ) -> List[TaskDraft]:
        """Drafts for events starting at or after ``today``; past events are dropped."""
        return [self.to_task(e, user_id) for e in events if e.start >= today]

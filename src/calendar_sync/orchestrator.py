"""
Top-level calendar sync coordinator.

For every calendar connection of a user: make sure the access token is
fresh, list events for the requested window, turn current/future events into
task drafts, drop the ones already imported and insert the rest one at a
time. Failures are recorded per connection and never stop the other
connections from syncing.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from calendar_sync.deduplicator import filter_new
from calendar_sync.errors import AuthError, FetchError, NeedsTokenRefresh
from calendar_sync.event_fetcher import EventFetcher
from calendar_sync.metrics import SYNC_DURATION_SECONDS, SYNC_RUNS_TOTAL, TASKS_IMPORTED_TOTAL
from calendar_sync.outcome import (
    Failure,
    NoConnections,
    PartialSuccess,
    Success,
    SyncOutcome,
    Unauthenticated,
    outcome_label,
)
from calendar_sync.token_manager import TokenManager
from calendar_sync.translator import EventTranslator, local_midnight
from storage.connection_store import CredentialStore
from storage.task_store import (
    Inserted,
    PersistenceConflict,
    PersistenceFailure,
    StorageError,
    TaskStore,
)
from study_planner.models import CalendarConnection, Task

logger = logging.getLogger(__name__)


@dataclass
class ConnectionReport:
    """What happened to one connection during a sync run."""

    tasks: List[Task] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class SyncOrchestrator:
    def __init__(
        self,
        credential_store: CredentialStore,
        task_store: TaskStore,
        token_manager: TokenManager,
        event_fetcher: EventFetcher,
        translator: Optional[EventTranslator] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.credential_store = credential_store
        self.task_store = task_store
        self.token_manager = token_manager
        self.event_fetcher = event_fetcher
        self.translator = translator or EventTranslator()
        self._now = now

    async def sync(
        self, user_id: Optional[str], start: datetime, end: datetime
    ) -> SyncOutcome:
        """Sync every calendar connection of ``user_id`` for the window [start, end]."""
        started = time.monotonic()
        outcome = await self._sync(user_id, start, end)

        label = outcome_label(outcome)
        SYNC_RUNS_TOTAL.labels(outcome=label).inc()
        SYNC_DURATION_SECONDS.observe(time.monotonic() - started)
        logger.info(f"Calendar sync for user {user_id} finished: {label}")
        return outcome

    async def _sync(
        self, user_id: Optional[str], start: datetime, end: datetime
    ) -> SyncOutcome:
        if not user_id:
            return Unauthenticated()

        # StorageError here propagates: nothing has been attempted yet.
        connections = await self.credential_store.list_for_user(user_id)
        if not connections:
            return NoConnections()

        today = local_midnight(self._now())
        tasks: List[Task] = []
        errors: List[str] = []
        errored = 0

        # One connection at a time, in store order; errors keep that order.
        for connection in connections:
            logger.info(f"Syncing calendar connection {connection.id}")
            report = await self._sync_connection(connection, start, end, today)
            tasks.extend(report.tasks)
            errors.extend(report.errors)
            if report.errors:
                errored += 1

        if not errors:
            return Success(tasks=tasks)
        # Failure only when every connection errored and nothing was imported
        if errored == len(connections) and not tasks:
            return Failure(errors=errors)
        return PartialSuccess(tasks=tasks, errors=errors)

    async def _sync_connection(
        self,
        connection: CalendarConnection,
        start: datetime,
        end: datetime,
        today: datetime,
    ) -> ConnectionReport:
        report = ConnectionReport()
        provider = connection.provider_type.value
        refreshed = False

        try:
            connection, refreshed = await self.token_manager.ensure_fresh(connection)
            try:
                events = await self.event_fetcher.fetch(connection, start, end)
            except NeedsTokenRefresh:
                # Stored expires_at is not trusted after a 401: refresh, retry once.
                logger.info(
                    f"Access token rejected for connection {connection.id}, refreshing"
                )
                connection, refreshed = await self.token_manager.ensure_fresh(
                    connection, force=True
                )
                try:
                    events = await self.event_fetcher.fetch(connection, start, end)
                except NeedsTokenRefresh as e:
                    raise FetchError("unauthorized after token refresh") from e
        except (AuthError, FetchError) as e:
            logger.error(
                f"Failed to sync {provider} calendar for connection {connection.id}: "
                f"{e} ({getattr(e, 'detail', None) or 'no detail'})"
            )
            report.errors.append(f"Failed to sync {provider} calendar: {e}")
            return report
        finally:
            if refreshed:
                await self._store_refreshed_tokens(connection)

        drafts = self.translator.translate(events, connection.user_id, today)
        logger.info(
            f"Fetched {len(events)} events, {len(drafts)} current or upcoming"
        )
        if not drafts:
            return report

        try:
            existing = await self.task_store.existing_source_ids(
                connection.user_id, provider
            )
        except StorageError as e:
            logger.error(f"Error fetching existing tasks: {e}")
            report.errors.append(f"Failed to fetch existing tasks for {provider} calendar")
            return report

        new_drafts = filter_new(drafts, existing)
        logger.info(
            f"Found {len(existing)} existing tasks, {len(new_drafts)} new tasks to insert"
        )

        for draft in new_drafts:
            result = await self.task_store.insert(draft)
            if isinstance(result, Inserted):
                report.tasks.append(result.task)
            elif isinstance(result, PersistenceConflict):
                logger.info(f"Task {result.source_id} already exists, skipping")
            elif isinstance(result, PersistenceFailure):
                report.errors.append(
                    f"Failed to insert task {draft.title}: {result.message}"
                )

        TASKS_IMPORTED_TOTAL.inc(len(report.tasks))
        logger.info(
            f"Inserted {len(report.tasks)} tasks for connection {connection.id}"
        )
        return report

    async def _store_refreshed_tokens(self, connection: CalendarConnection) -> None:
        try:
            await self.credential_store.update_tokens(connection)
        except StorageError as e:
            # The next sync simply refreshes again.
            logger.warning(
                f"Error updating tokens for connection {connection.id}: {e}"
            )

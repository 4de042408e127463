import asyncio
import logging
from datetime import datetime, timedelta, timezone

from api import state
from calendar_sync.config import SyncSettings
from calendar_sync.outcome import Failure, PartialSuccess, Success, outcome_label

logger = logging.getLogger(__name__)


async def sync_all_users(settings: SyncSettings) -> int:
    """Run one sync for every user with a calendar connection. Returns users synced."""
    if state.credential_store is None or state.sync_orchestrator is None:
        return 0

    start = datetime.now(timezone.utc)
    end = start + timedelta(days=settings.window_days)

    user_ids = await state.credential_store.list_user_ids()
    for user_id in user_ids:
        try:
            outcome = await state.sync_orchestrator.sync(user_id, start, end)
        except Exception as e:
            # one user's failure must not skip the users after it
            logger.exception(f"Scheduled sync for user {user_id} failed: {e}")
            continue

        if isinstance(outcome, (Success, PartialSuccess)):
            logger.info(
                f"Scheduled sync for user {user_id}: {outcome_label(outcome)}, "
                f"{len(outcome.tasks)} new tasks"
            )
        if isinstance(outcome, (PartialSuccess, Failure)):
            for error in outcome.errors:
                logger.warning(f"Scheduled sync for user {user_id}: {error}")
    return len(user_ids)


async def _periodic_sync_worker(settings: SyncSettings) -> None:
    """Background worker that pulls every user's calendar on a fixed interval."""
    logger.info(f"Periodic calendar sync worker started (every {settings.interval_s}s)")

    while True:
        await asyncio.sleep(settings.interval_s)
        try:
            await sync_all_users(settings)
        except Exception as e:
            logger.exception(f"Error in periodic calendar sync worker: {e}")

import asyncio
import logging
from typing import Optional

import httpx
from fastapi import FastAPI

from api import state
from api.routers import calendar, ops
from api.workers import _periodic_sync_worker
from calendar_sync.config import GoogleOAuthConfig, SyncSettings
from calendar_sync.event_fetcher import EventFetcher
from calendar_sync.orchestrator import SyncOrchestrator
from calendar_sync.token_manager import TokenManager
from storage import db
from storage.connection_store import PostgresCredentialStore
from storage.task_store import PostgresTaskStore

# Logging configuration
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Study Planner Calendar Sync")
app.include_router(calendar.router)
app.include_router(ops.router)

_sync_worker: Optional[asyncio.Task] = None


@app.on_event("startup")
async def startup() -> None:
    global _sync_worker

    oauth_config = GoogleOAuthConfig.from_env()
    settings = SyncSettings.from_env()
    if not oauth_config.configured:
        logger.warning("GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET not set, connect flow disabled")

    state.db_pool = await db.init_db_pool()
    await db.init_schema(state.db_pool)

    state.http_client = httpx.AsyncClient(timeout=settings.http_timeout_s)
    state.credential_store = PostgresCredentialStore(state.db_pool)
    state.task_store = PostgresTaskStore(state.db_pool)
    state.token_manager = TokenManager(
        oauth_config, state.http_client, timeout_s=settings.http_timeout_s
    )
    state.sync_orchestrator = SyncOrchestrator(
        credential_store=state.credential_store,
        task_store=state.task_store,
        token_manager=state.token_manager,
        event_fetcher=EventFetcher(
            oauth_config, state.http_client, timeout_s=settings.http_timeout_s
        ),
    )
    logger.info("Calendar sync service initialized")

    if settings.interval_s > 0:
        _sync_worker = asyncio.create_task(_periodic_sync_worker(settings))


@app.on_event("shutdown")
async def shutdown() -> None:
    if _sync_worker is not None:
        _sync_worker.cancel()
    if state.http_client is not None:
        await state.http_client.aclose()
        state.http_client = None
    state.sync_orchestrator = None
    await db.close_db_pool()
    state.db_pool = None

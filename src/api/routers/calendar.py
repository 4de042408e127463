import logging
import os
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api import state
from api.dependencies import (
    get_credential_store,
    get_current_user_id,
    get_sync_orchestrator,
    get_token_manager,
)
from api.metrics import REQUESTS_TOTAL
from calendar_sync.errors import TokenExchangeError
from calendar_sync.orchestrator import SyncOrchestrator
from calendar_sync.outcome import (
    Failure,
    NoConnections,
    PartialSuccess,
    Success,
    Unauthenticated,
)
from calendar_sync.token_manager import TokenManager
from storage.connection_store import CredentialStore
from storage.task_store import StorageError
from study_planner.models import ProviderType

router = APIRouter()
logger = logging.getLogger(__name__)

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")


class SyncRequestIn(BaseModel):
    startDate: Optional[str] = None  # ISO 8601
    endDate: Optional[str] = None  # ISO 8601


def _redirect(path: str, **params: str) -> Response:
    location = f"{FRONTEND_URL}{path}"
    if params:
        location += "?" + urlencode(params)
    return Response(status_code=307, headers={"Location": location})


def _parse_instant(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _json(endpoint: str, status_code: int, body: dict) -> JSONResponse:
    REQUESTS_TOTAL.labels(endpoint=endpoint, status=str(status_code)).inc()
    return JSONResponse(status_code=status_code, content=body)


@router.get("/calendar/connect")
async def calendar_connect(
    user_id: Optional[str] = Depends(get_current_user_id),
    token_manager: Optional[TokenManager] = Depends(get_token_manager),
):
    """Initiates the OAuth2 flow - redirects to Google."""
    if not user_id:
        return _redirect("/login")
    if token_manager is None or not token_manager.config.configured:
        raise HTTPException(status_code=500, detail="Google credentials not configured")

    authorization_url, _ = token_manager.authorization_url(
        state=state.pending_oauth_states.issue(user_id)
    )
    return Response(status_code=307, headers={"Location": authorization_url})


@router.get("/calendar/callback")
async def calendar_callback(
    code: Optional[str] = None,
    oauth_state: Optional[str] = Query(None, alias="state"),
    error: Optional[str] = None,
    user_id: Optional[str] = Depends(get_current_user_id),
    token_manager: Optional[TokenManager] = Depends(get_token_manager),
    credential_store: Optional[CredentialStore] = Depends(get_credential_store),
):
    """Handles the OAuth2 redirect and stores the new connection."""
    if not user_id:
        return _redirect("/login")

    if error:
        logger.error(f"OAuth error: {error}")
        return _redirect("/profile", error=error)

    if not code:
        return _redirect("/profile", error="missing_code")

    # Only states issued by /calendar/connect to this user, unexpired, used once
    issued_to = state.pending_oauth_states.consume(oauth_state) if oauth_state else None
    if issued_to != user_id:
        logger.warning("Rejecting calendar callback with unknown or foreign OAuth state")
        return _redirect("/profile", error="invalid_state")

    if token_manager is None or credential_store is None:
        logger.error("Calendar callback reached before the sync service was initialized")
        return _redirect("/profile", error="callback_failed")

    try:
        return await _store_new_connection(code, user_id, token_manager, credential_store)
    except Exception:
        logger.exception("Calendar callback error")
        return _redirect("/profile", error="callback_failed")


async def _store_new_connection(
    code: str,
    user_id: str,
    token_manager: TokenManager,
    credential_store: CredentialStore,
) -> Response:
    try:
        connection = await token_manager.exchange_code(code, user_id)
    except TokenExchangeError as e:
        logger.error(f"Token exchange failed: {e.detail}")
        return _redirect("/profile", error="token_exchange_failed")

    try:
        await credential_store.save(connection)
    except StorageError as e:
        logger.error(f"Error storing calendar connection: {e}")
        return _redirect("/profile", error="storage_failed")

    return _redirect("/profile", success="calendar_connected")


@router.post("/calendar/sync")
async def calendar_sync(
    payload: Optional[SyncRequestIn] = None,
    user_id: Optional[str] = Depends(get_current_user_id),
    orchestrator: Optional[SyncOrchestrator] = Depends(get_sync_orchestrator),
):
    """
    Sync the caller's calendars for ``[startDate, endDate]``.

    200 when every connection synced, 207 when some connections or inserts
    failed while others succeeded, 502 when every connection failed and no task
    was imported. 502 keeps a total failure distinguishable from a partial one.
    """
    endpoint = "/calendar/sync"
    if not user_id:
        return _json(endpoint, 401, {"error": "Not authenticated"})

    if payload is None or not payload.startDate or not payload.endDate:
        return _json(endpoint, 400, {"error": "Missing date range"})
    try:
        start = _parse_instant(payload.startDate)
        end = _parse_instant(payload.endDate)
    except ValueError:
        return _json(endpoint, 400, {"error": "Invalid date range"})
    if end < start:
        return _json(endpoint, 400, {"error": "Invalid date range"})

    if orchestrator is None:
        return _json(endpoint, 500, {"error": "Calendar sync is not available"})

    try:
        outcome = await orchestrator.sync(user_id, start, end)
    except Exception as e:
        logger.exception("Calendar sync error")
        return _json(
            endpoint, 500, {"error": "Failed to sync calendar", "details": str(e)}
        )

    if isinstance(outcome, Unauthenticated):
        return _json(endpoint, 401, {"error": "Not authenticated"})
    if isinstance(outcome, NoConnections):
        return _json(endpoint, 404, {"error": "No calendar connections found"})

    if isinstance(outcome, Success):
        synced = [t.model_dump(mode="json") for t in outcome.tasks]
        return _json(
            endpoint,
            200,
            {"message": f"Successfully synced {len(synced)} tasks", "syncedTasks": synced},
        )
    if isinstance(outcome, PartialSuccess):
        synced = [t.model_dump(mode="json") for t in outcome.tasks]
        return _json(
            endpoint,
            207,
            {"error": "Some syncs failed", "details": outcome.errors, "syncedTasks": synced},
        )
    if isinstance(outcome, Failure):
        return _json(
            endpoint,
            502,
            {"error": "All syncs failed", "details": outcome.errors, "syncedTasks": []},
        )

    raise AssertionError(f"unhandled sync outcome: {outcome!r}")


@router.get("/calendar/status")
async def calendar_status(
    user_id: Optional[str] = Depends(get_current_user_id),
    credential_store: Optional[CredentialStore] = Depends(get_credential_store),
) -> dict:
    """Check if user is connected."""
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    if credential_store is None:
        return {"connected": False, "error": "Credential store not initialized"}

    connections = await credential_store.list_for_user(user_id)
    return {
        "connected": bool(connections),
        "connections": [
            {
                "id": c.id,
                "type": c.provider_type.value,
                "calendar_id": c.calendar_id,
                "expires_at": c.expires_at.isoformat(),
            }
            for c in connections
        ],
    }


@router.post("/calendar/disconnect")
async def calendar_disconnect(
    user_id: Optional[str] = Depends(get_current_user_id),
    credential_store: Optional[CredentialStore] = Depends(get_credential_store),
) -> dict:
    """Delete the stored Google connection."""
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    if credential_store is None:
        raise HTTPException(status_code=500, detail="Credential store not initialized")

    deleted = await credential_store.delete(user_id, ProviderType.GOOGLE)
    return {"status": "disconnected" if deleted else "not_connected"}

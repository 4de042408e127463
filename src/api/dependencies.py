import os
from typing import Optional

from fastapi import Request

from api import state
from calendar_sync.orchestrator import SyncOrchestrator
from calendar_sync.token_manager import TokenManager
from storage.connection_store import CredentialStore

# Development fallback when no session resolver is installed
DEV_USER_ID = os.getenv("DEV_USER_ID", "").strip() or None

SESSION_COOKIE = "session"


def _session_token(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return request.cookies.get(SESSION_COOKIE)


async def get_current_user_id(request: Request) -> Optional[str]:
    """User id of the caller's session, or None when unauthenticated."""
    if state.session_resolver is None:
        return DEV_USER_ID

    token = _session_token(request)
    if not token:
        return None
    return await state.session_resolver(token)


def get_credential_store() -> Optional[CredentialStore]:
    return state.credential_store


def get_token_manager() -> Optional[TokenManager]:
    return state.token_manager


def get_sync_orchestrator() -> Optional[SyncOrchestrator]:
    return state.sync_orchestrator

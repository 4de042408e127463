from typing import Awaitable, Callable, Optional

import asyncpg
import httpx

from api.oauth_states import PendingOAuthStates
from calendar_sync.orchestrator import SyncOrchestrator
from calendar_sync.token_manager import TokenManager
from storage.connection_store import CredentialStore
from storage.task_store import TaskStore

# Global instances initialized at startup
db_pool: Optional[asyncpg.Pool] = None
http_client: Optional[httpx.AsyncClient] = None
credential_store: Optional[CredentialStore] = None
task_store: Optional[TaskStore] = None
token_manager: Optional[TokenManager] = None
sync_orchestrator: Optional[SyncOrchestrator] = None

# Resolves a session token to a user id; installed by the hosting app.
session_resolver: Optional[Callable[[str], Awaitable[Optional[str]]]] = None

# OAuth states issued by /calendar/connect, bounded and expiring
pending_oauth_states = PendingOAuthStates()

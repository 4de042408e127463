import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set
from urllib.parse import parse_qs

import httpx
import pytest

from calendar_sync.config import GoogleOAuthConfig
from calendar_sync.event_fetcher import EventFetcher
from calendar_sync.orchestrator import SyncOrchestrator
from calendar_sync.token_manager import TokenManager
from storage.connection_store import CredentialStore
from storage.task_store import (
    Inserted,
    PersistenceConflict,
    PersistenceFailure,
    StorageError,
    TaskStore,
)
from study_planner.models import CalendarConnection, ProviderType, Task, TaskDraft

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

OAUTH_CONFIG = GoogleOAuthConfig(
    client_id="cid",
    client_secret="secret",
    redirect_uri="http://testserver/calendar/callback",
)


def google_event(event_id: str, start: datetime, summary: str = "Lecture", **extra) -> dict:
    item = {
        "id": event_id,
        "summary": summary,
        "start": {"dateTime": start.isoformat()},
        "end": {"dateTime": (start + timedelta(hours=1)).isoformat()},
    }
    item.update(extra)
    return item


class FakeGoogle:
    """Google token endpoint and events.list behind httpx.MockTransport."""

    def __init__(self):
        self.items: List[dict] = []
        self.token_grants: List[str] = []
        self.event_requests: List[httpx.Request] = []
        self.valid_tokens: Set[str] = {"fresh-token"}
        # statuses returned by events.list before normal behaviour resumes
        self.event_statuses: List[int] = []
        self.refresh_status = 200
        self.exchange_status = 200
        self.token_timeout = False
        self.time_zone = "UTC"
        self._issued = 0

    @property
    def refresh_calls(self) -> int:
        return self.token_grants.count("refresh_token")

    def handler(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == OAUTH_CONFIG.token_uri:
            return self._token(request)
        if request.url.path.endswith("/events"):
            return self._events(request)
        return httpx.Response(404)

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode())
        grant = form["grant_type"][0]
        self.token_grants.append(grant)
        if self.token_timeout:
            raise httpx.ReadTimeout("timed out", request=request)

        status = self.refresh_status if grant == "refresh_token" else self.exchange_status
        if status != 200:
            return httpx.Response(status, json={"error": "invalid_grant"})

        self._issued += 1
        token = f"access-{self._issued}"
        self.valid_tokens.add(token)
        body = {"access_token": token, "expires_in": 3600, "token_type": "Bearer"}
        if grant == "authorization_code":
            body["refresh_token"] = "refresh-1"
        return httpx.Response(200, json=body)

    def _events(self, request: httpx.Request) -> httpx.Response:
        self.event_requests.append(request)
        if self.event_statuses:
            return httpx.Response(self.event_statuses.pop(0), json={"error": {}})

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token not in self.valid_tokens:
            return httpx.Response(401, json={"error": {"code": 401}})
        return httpx.Response(200, json={"timeZone": self.time_zone, "items": self.items})


class InMemoryCredentialStore(CredentialStore):
    def __init__(self, connections=()):
        self.connections: Dict[str, CalendarConnection] = {c.id: c for c in connections}
        self.token_updates: List[CalendarConnection] = []
        self.fail_updates = False

    async def list_for_user(self, user_id):
        return [c for c in self.connections.values() if c.user_id == user_id]

    async def get(self, user_id, provider_type):
        for c in self.connections.values():
            if c.user_id == user_id and c.provider_type == provider_type:
                return c
        return None

    async def save(self, connection):
        existing = await self.get(connection.user_id, connection.provider_type)
        if existing is not None:
            saved = connection.model_copy(
                update={
                    "id": existing.id,
                    "refresh_token": connection.refresh_token or existing.refresh_token,
                }
            )
        else:
            saved = connection.model_copy(update={"id": str(len(self.connections) + 1)})
        self.connections[saved.id] = saved
        return saved

    async def update_tokens(self, connection):
        if self.fail_updates:
            raise StorageError("connection table is read-only")
        self.token_updates.append(connection)
        self.connections[connection.id] = connection

    async def delete(self, user_id, provider_type):
        existing = await self.get(user_id, provider_type)
        if existing is None:
            return False
        del self.connections[existing.id]
        return True

    async def list_user_ids(self):
        return sorted({c.user_id for c in self.connections.values()})


class InMemoryTaskStore(TaskStore):
    def __init__(self):
        self.tasks: List[Task] = []
        self.failing_titles: Set[str] = set()
        # source ids another writer inserts between our read and our insert
        self.racing_source_ids: Set[str] = set()
        self.fail_reads = False

    async def existing_source_ids(self, user_id, source):
        if self.fail_reads:
            raise StorageError("tasks table unavailable")
        return {t.source_id for t in self.tasks if t.user_id == user_id and t.source == source}

    async def insert(self, draft: TaskDraft):
        if draft.title in self.failing_titles:
            return PersistenceFailure(message="value too long for type character varying")
        key = (draft.user_id, draft.source, draft.source_id)
        if draft.source_id in self.racing_source_ids or any(
            (t.user_id, t.source, t.source_id) == key for t in self.tasks
        ):
            return PersistenceConflict(source_id=draft.source_id)
        task = Task(id=str(uuid.uuid4()), created_at=NOW, **draft.model_dump())
        self.tasks.append(task)
        return Inserted(task=task)


def make_connection(
    connection_id: str = "1",
    user_id: str = "user-1",
    expires_at: Optional[datetime] = None,
    refresh_token: Optional[str] = "refresh-1",
    access_token: str = "fresh-token",
) -> CalendarConnection:
    return CalendarConnection(
        id=connection_id,
        user_id=user_id,
        provider_type=ProviderType.GOOGLE,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=expires_at or NOW + timedelta(hours=1),
    )


@pytest.fixture
def fake_google():
    return FakeGoogle()


@pytest.fixture
def http_client(fake_google):
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_google.handler))


@pytest.fixture
def token_manager(http_client):
    return TokenManager(OAUTH_CONFIG, http_client, now=lambda: NOW)


@pytest.fixture
def event_fetcher(http_client):
    return EventFetcher(OAUTH_CONFIG, http_client)


@pytest.fixture
def task_store():
    return InMemoryTaskStore()


@pytest.fixture
def orchestrator_factory(token_manager, event_fetcher, task_store):
    def _make(*connections: CalendarConnection):
        store = InMemoryCredentialStore(connections)
        orchestrator = SyncOrchestrator(
            credential_store=store,
            task_store=task_store,
            token_manager=token_manager,
            event_fetcher=event_fetcher,
            now=lambda: NOW,
        )
        return orchestrator, store

    return _make

import logging
import os
from abc import ABC, abstractmethod
from datetime import timezone
from typing import List, Optional

import asyncpg
from cryptography.fernet import Fernet, InvalidToken

from storage.task_store import StorageError
from study_planner.models import CalendarConnection, ProviderType

logger = logging.getLogger(__name__)


class CredentialStore(ABC):
    """Persists one CalendarConnection per (user, provider)."""

    @abstractmethod
    async def list_for_user(self, user_id: str) -> List[CalendarConnection]:
        raise NotImplementedError

    @abstractmethod
    async def get(
        self, user_id: str, provider_type: ProviderType
    ) -> Optional[CalendarConnection]:
        raise NotImplementedError

    @abstractmethod
    async def save(self, connection: CalendarConnection) -> CalendarConnection:
        """Insert or replace the user's connection for this provider."""
        raise NotImplementedError

    @abstractmethod
    async def update_tokens(self, connection: CalendarConnection) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, user_id: str, provider_type: ProviderType) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def list_user_ids(self) -> List[str]:
        raise NotImplementedError


class PostgresCredentialStore(CredentialStore):
    def __init__(self, pool: asyncpg.Pool, encryption_key: Optional[str] = None):
        self.pool = pool

        # Generate a key if not provided (for development/testing only)
        # In production, this MUST be provided via environment variable
        key = encryption_key or os.getenv("CALENDAR_TOKEN_ENCRYPTION_KEY")
        if not key:
            logger.warning(
                "CALENDAR_TOKEN_ENCRYPTION_KEY not set. Generating a temporary key."
            )
            key = Fernet.generate_key().decode()
        self.fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def _encrypt(self, data: Optional[str]) -> Optional[str]:
        if not data:
            return None
        return self.fernet.encrypt(data.encode()).decode()

    def _decrypt(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        try:
            return self.fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            logger.error("Failed to decrypt stored calendar token")
            return None

    def _from_record(self, record) -> CalendarConnection:
        expires_at = record["expires_at"]
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        return CalendarConnection(
            id=str(record["id"]),
            user_id=record["user_id"],
            provider_type=ProviderType(record["type"]),
            access_token=self._decrypt(record["access_token"]) or "",
            refresh_token=self._decrypt(record["refresh_token"]),
            expires_at=expires_at,
            calendar_id=record["calendar_id"],
        )

    async def list_for_user(self, user_id: str) -> List[CalendarConnection]:
        try:
            rows = await self.pool.fetch(
                """
                SELECT id, user_id, type, access_token, refresh_token, expires_at, calendar_id
                FROM calendar_connections WHERE user_id = $1 ORDER BY created_at, id
                """,
                user_id,
            )
        except (asyncpg.PostgresError, OSError) as e:
            raise StorageError(f"failed to load calendar connections: {e}") from e
        return [self._from_record(r) for r in rows]

    async def get(
        self, user_id: str, provider_type: ProviderType
    ) -> Optional[CalendarConnection]:
        row = await self.pool.fetchrow(
            """
            SELECT id, user_id, type, access_token, refresh_token, expires_at, calendar_id
            FROM calendar_connections WHERE user_id = $1 AND type = $2
            """,
            user_id,
            provider_type.value,
        )
        return self._from_record(row) if row else None

    async def save(self, connection: CalendarConnection) -> CalendarConnection:
        """Store OAuth tokens in PostgreSQL (encrypted)."""
        # Re-consent does not always return a refresh token; keep the stored one then.
        query = """
            INSERT INTO calendar_connections
                (user_id, type, access_token, refresh_token, expires_at, calendar_id)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (user_id, type) DO UPDATE SET
                access_token = EXCLUDED.access_token,
                refresh_token = COALESCE(EXCLUDED.refresh_token, calendar_connections.refresh_token),
                expires_at = EXCLUDED.expires_at,
                calendar_id = EXCLUDED.calendar_id,
                updated_at = NOW()
            RETURNING id, user_id, type, access_token, refresh_token, expires_at, calendar_id
        """
        try:
            row = await self.pool.fetchrow(
                query,
                connection.user_id,
                connection.provider_type.value,
                self._encrypt(connection.access_token),
                self._encrypt(connection.refresh_token),
                connection.expires_at,
                connection.calendar_id,
            )
        except (asyncpg.PostgresError, OSError) as e:
            raise StorageError(f"failed to store calendar connection: {e}") from e

        logger.info(
            f"Saved {connection.provider_type.value} connection for user {connection.user_id}"
        )
        return self._from_record(row)

    async def update_tokens(self, connection: CalendarConnection) -> None:
        try:
            await self.pool.execute(
                """
                UPDATE calendar_connections SET
                    access_token = $2,
                    refresh_token = COALESCE($3, refresh_token),
                    expires_at = $4,
                    updated_at = NOW()
                WHERE id = $1
                """,
                int(connection.id),
                self._encrypt(connection.access_token),
                self._encrypt(connection.refresh_token),
                connection.expires_at,
            )
        except (asyncpg.PostgresError, OSError, TypeError, ValueError) as e:
            raise StorageError(f"failed to update connection tokens: {e}") from e

    async def delete(self, user_id: str, provider_type: ProviderType) -> bool:
        """Remove stored credentials."""
        status = await self.pool.execute(
            "DELETE FROM calendar_connections WHERE user_id = $1 AND type = $2",
            user_id,
            provider_type.value,
        )
        logger.info(f"Deleted {provider_type.value} connection for user {user_id}")
        # asyncpg returns the command tag, e.g. "DELETE 1"
        return status.split()[-1] != "0"

    async def list_user_ids(self) -> List[str]:
        rows = await self.pool.fetch(
            "SELECT DISTINCT user_id FROM calendar_connections ORDER BY user_id"
        )
        return [r["user_id"] for r in rows]

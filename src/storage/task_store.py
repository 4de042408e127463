"""
Task persistence used by calendar sync.

Inserts report their result as a value instead of raising, so callers can
treat a uniqueness conflict on (user_id, source, source_id) as a no-op
without knowing anything about the database engine.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Set, Union

import asyncpg

from study_planner.models import Task, TaskDraft

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """A store could not be read or written."""


@dataclass(frozen=True)
class Inserted:
    task: Task


@dataclass(frozen=True)
class PersistenceConflict:
    source_id: str


@dataclass(frozen=True)
class PersistenceFailure:
    message: str


InsertResult = Union[Inserted, PersistenceConflict, PersistenceFailure]


class TaskStore(ABC):
    @abstractmethod
    async def existing_source_ids(self, user_id: str, source: str) -> Set[str]:
        """``source_id`` values already stored for (user, source). Raises StorageError."""
        raise NotImplementedError

    @abstractmethod
    async def insert(self, draft: TaskDraft) -> InsertResult:
        raise NotImplementedError


TASK_COLUMNS = (
    "id, title, type, status, date, user_id, source, source_id, "
    "location, archived, class_id, created_at"
)


def task_from_record(record) -> Task:
    return Task(
        id=str(record["id"]),
        title=record["title"],
        type=record["type"],
        status=record["status"],
        date=record["date"],
        user_id=record["user_id"],
        source=record["source"],
        source_id=record["source_id"],
        location=record["location"] or "",
        archived=record["archived"],
        class_id=str(record["class_id"]) if record["class_id"] else None,
        created_at=record["created_at"],
    )


class PostgresTaskStore(TaskStore):
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def existing_source_ids(self, user_id: str, source: str) -> Set[str]:
        try:
            rows = await self.pool.fetch(
                "SELECT source_id FROM tasks WHERE user_id = $1 AND source = $2",
                user_id,
                source,
            )
        except (asyncpg.PostgresError, OSError) as e:
            raise StorageError(f"failed to load existing tasks: {e}") from e
        return {row["source_id"] for row in rows if row["source_id"]}

    async def insert(self, draft: TaskDraft) -> InsertResult:
        query = f"""
            INSERT INTO tasks (title, type, status, date, user_id, source, source_id, location, archived)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING {TASK_COLUMNS}
        """
        try:
            row = await self.pool.fetchrow(
                query,
                draft.title,
                draft.type,
                draft.status,
                draft.date,
                draft.user_id,
                draft.source,
                draft.source_id,
                draft.location,
                draft.archived,
            )
        except asyncpg.UniqueViolationError:
            return PersistenceConflict(source_id=draft.source_id or "")
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Failed to insert task {draft.source_id}: {e}")
            return PersistenceFailure(message=str(e))

        return Inserted(task=task_from_record(row))

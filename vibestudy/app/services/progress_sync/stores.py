"""Progress stores: where sync writes are persisted.

Every store upserts on (user_id, day) and only touches the field a write
targets. Each field remembers the issue time of the last write applied to
it and ignores older writes, so a replayed or delayed write never
overwrites a newer value. Day completion is sticky: completing an already
completed day changes nothing.
"""

import asyncio
import weakref
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from vibestudy.app.core.config import Settings, settings
from vibestudy.app.core.http_client import get_http_client
from vibestudy.app.core.logging import get_logger
from vibestudy.app.db.async_session import (
    close_async_engine,
    create_session_maker,
    get_async_engine,
    init_async_db,
    session_scope,
)
from vibestudy.app.db.models import UserProgress
from vibestudy.app.exceptions import ProgressStoreError

from .models import DayProgress, SyncField, SyncTask

logger = get_logger(__name__)

TOPIC_PREFIX = "day_"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def version_key(task: SyncTask) -> str:
    if task.field is SyncField.TASK_COMPLETION:
        return f"{task.field.value}:{task.task_id}"
    return task.field.value


def _as_aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def apply_task(progress: DayProgress, versions: dict[str, str], task: SyncTask) -> bool:
    """Apply ``task`` to ``progress`` in place.

    Returns:
        False when the write is older than the value already stored (or the
        day is already complete), True when ``progress`` changed.
    """
    if task.field is SyncField.DAY_COMPLETION:
        if progress.day_completed:
            return False
        progress.day_completed = True
        progress.day_completed_at = task.issued_at
        progress.updated_at = _utcnow()
        return True

    key = version_key(task)
    previous = versions.get(key)
    if previous is not None and _as_aware(datetime.fromisoformat(previous)) > _as_aware(task.issued_at):
        logger.debug(
            "Ignoring write older than stored value",
            extra={"user_id": task.user_id, "day": task.day, "field": key},
        )
        return False

    if task.field is SyncField.CODE:
        progress.code = task.value
    elif task.field is SyncField.NOTES:
        progress.notes = task.value
    elif task.field is SyncField.RECAP_ANSWER:
        progress.recap_answer = task.value
    elif task.field is SyncField.TASK_COMPLETION:
        progress.completed_tasks[str(task.task_id)] = bool(task.value)

    versions[key] = task.issued_at.isoformat()
    progress.updated_at = _utcnow()
    return True


class ProgressStore(ABC):
    """Abstract base class for progress stores."""

    def __init__(self) -> None:
        # One lock per (user, day) row: different fields of the same day are
        # written concurrently and each apply is a read-modify-write.
        self._row_locks: weakref.WeakValueDictionary[tuple[str, int], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _row_lock(self, user_id: str, day: int) -> asyncio.Lock:
        key = (user_id, day)
        lock = self._row_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._row_locks[key] = lock
        return lock

    @abstractmethod
    async def apply(self, task: SyncTask) -> bool:
        """Upsert the task's field. Returns False if the write was a no-op."""

    @abstractmethod
    async def fetch(self, user_id: str) -> list[DayProgress]:
        """All stored days of a learner, ordered by day."""

    async def initialize(self) -> None:
        """Prepare the backend (create tables etc.)."""

    async def close(self) -> None:
        """Release backend resources."""

    async def health_check(self) -> bool:
        return True


class InMemoryProgressStore(ProgressStore):
    """Dict-backed store for local development and tests."""

    name = "memory"

    def __init__(self) -> None:
        super().__init__()
        self._rows: dict[tuple[str, int], tuple[DayProgress, dict[str, str]]] = {}
        self.apply_calls = 0

    async def apply(self, task: SyncTask) -> bool:
        self.apply_calls += 1
        async with self._row_lock(task.user_id, task.day):
            progress, versions = self._rows.setdefault(
                (task.user_id, task.day),
                (DayProgress(user_id=task.user_id, day=task.day), {}),
            )
            return apply_task(progress, versions, task)

    async def fetch(self, user_id: str) -> list[DayProgress]:
        rows = [p for (uid, _), (p, _) in self._rows.items() if uid == user_id]
        return sorted(rows, key=lambda p: p.day)

    def get(self, user_id: str, day: int) -> Optional[DayProgress]:
        row = self._rows.get((user_id, day))
        return row[0] if row else None


class SupabaseProgressStore(ProgressStore):
    """Stores progress in the Supabase ``user_progress`` table over PostgREST.

    Row layout:
        user_id, topic_id ("day_<n>"), completed, score, last_accessed,
        metadata {code, notes, recapAnswer, completedTasks, completedAt,
        fieldVersions}

    ``completedTasks`` is the list of completed task ids. Upserts conflict on
    (user_id, topic_id). HTTP failures raise ``httpx.HTTPStatusError`` so the
    retry policy can tell transient (5xx, 429) from permanent (4xx) errors.
    """

    name = "supabase"

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        table: Optional[str] = None,
    ):
        super().__init__()
        self._http_client = http_client
        self._base_url = (base_url if base_url is not None else settings.supabase_url).rstrip("/")
        self._api_key = api_key or settings.supabase_service_key or settings.supabase_anon_key
        self._table = table or settings.supabase_progress_table
        if not self._base_url:
            raise ValueError("SUPABASE_URL must be set for the supabase progress store")

    @property
    def http_client(self) -> httpx.AsyncClient:
        return self._http_client or get_http_client()

    @property
    def table_url(self) -> str:
        return f"{self._base_url}/rest/v1/{self._table}"

    def _headers(self, **extra: str) -> dict[str, str]:
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        headers.update(extra)
        return headers

    @staticmethod
    def _topic_id(day: int) -> str:
        return f"{TOPIC_PREFIX}{day}"

    @staticmethod
    def _row_to_progress(user_id: str, row: dict[str, Any]) -> Optional[DayProgress]:
        topic_id = str(row.get("topic_id", ""))
        if not topic_id.startswith(TOPIC_PREFIX):
            return None
        try:
            day = int(topic_id[len(TOPIC_PREFIX):])
        except ValueError:
            logger.warning(f"Invalid topic_id: {topic_id}, skipping entry")
            return None

        metadata = row.get("metadata") or {}
        completed_at = metadata.get("completedAt")
        last_accessed = row.get("last_accessed")
        return DayProgress(
            user_id=user_id,
            day=day,
            code=metadata.get("code"),
            notes=metadata.get("notes"),
            recap_answer=metadata.get("recapAnswer"),
            completed_tasks={str(t): True for t in metadata.get("completedTasks") or []},
            day_completed=bool(row.get("completed")),
            day_completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
            updated_at=datetime.fromisoformat(last_accessed) if last_accessed else None,
        )

    async def _get_row(self, user_id: str, day: int) -> Optional[dict[str, Any]]:
        response = await self.http_client.get(
            self.table_url,
            params={
                "select": "topic_id,completed,last_accessed,metadata",
                "user_id": f"eq.{user_id}",
                "topic_id": f"eq.{self._topic_id(day)}",
            },
            headers=self._headers(),
        )
        response.raise_for_status()
        rows = response.json()
        return rows[0] if rows else None

    async def apply(self, task: SyncTask) -> bool:
        async with self._row_lock(task.user_id, task.day):
            row = await self._get_row(task.user_id, task.day)
            metadata: dict[str, Any] = dict((row or {}).get("metadata") or {})
            versions: dict[str, str] = dict(metadata.get("fieldVersions") or {})
            progress = (
                self._row_to_progress(task.user_id, row)
                if row
                else None
            ) or DayProgress(user_id=task.user_id, day=task.day)

            if not apply_task(progress, versions, task):
                return False

            completed_tasks = [t for t, done in progress.completed_tasks.items() if done]
            metadata.update(
                {
                    "code": progress.code,
                    "notes": progress.notes,
                    "recapAnswer": progress.recap_answer,
                    "completedTasks": completed_tasks,
                    "completedAt": (
                        progress.day_completed_at.isoformat()
                        if progress.day_completed_at
                        else None
                    ),
                    "fieldVersions": versions,
                }
            )
            payload = {
                "user_id": task.user_id,
                "topic_id": self._topic_id(task.day),
                "completed": progress.day_completed,
                "score": len(completed_tasks) * 20,
                "last_accessed": (progress.updated_at or _utcnow()).isoformat(),
                "metadata": metadata,
            }
            response = await self.http_client.post(
                self.table_url,
                params={"on_conflict": "user_id,topic_id"},
                json=[payload],
                headers=self._headers(Prefer="resolution=merge-duplicates,return=minimal"),
            )
            response.raise_for_status()
            return True

    async def fetch(self, user_id: str) -> list[DayProgress]:
        response = await self.http_client.get(
            self.table_url,
            params={
                "select": "topic_id,completed,last_accessed,metadata",
                "user_id": f"eq.{user_id}",
            },
            headers=self._headers(),
        )
        response.raise_for_status()
        days = [
            progress
            for progress in (self._row_to_progress(user_id, row) for row in response.json())
            if progress is not None
        ]
        return sorted(days, key=lambda p: p.day)

    async def health_check(self) -> bool:
        try:
            response = await self.http_client.get(
                self.table_url, params={"select": "topic_id", "limit": "1"}, headers=self._headers()
            )
        except httpx.HTTPError:
            return False
        return response.status_code < 500


class DatabaseProgressStore(ProgressStore):
    """Stores progress in a SQL database through SQLAlchemy async sessions."""

    name = "database"

    def __init__(self, engine: Optional[AsyncEngine] = None, database_url: Optional[str] = None):
        super().__init__()
        self._engine = engine or get_async_engine(database_url)
        self._session_maker = create_session_maker(self._engine)

    async def initialize(self) -> None:
        await init_async_db(self._engine)

    @staticmethod
    def _to_progress(row: UserProgress) -> DayProgress:
        return DayProgress(
            user_id=row.user_id,
            day=row.day,
            code=row.code,
            notes=row.notes,
            recap_answer=row.recap_answer,
            completed_tasks=dict(row.completed_tasks or {}),
            day_completed=bool(row.day_completed),
            day_completed_at=row.day_completed_at,
            updated_at=row.updated_at,
        )

    async def apply(self, task: SyncTask) -> bool:
        async with self._row_lock(task.user_id, task.day):
            try:
                async with session_scope(self._session_maker) as session:
                    result = await session.execute(
                        select(UserProgress)
                        .where(UserProgress.user_id == task.user_id, UserProgress.day == task.day)
                        .with_for_update()
                    )
                    row = result.scalar_one_or_none()
                    if row is None:
                        row = UserProgress(
                            user_id=task.user_id,
                            day=task.day,
                            completed_tasks={},
                            day_completed=False,
                            field_versions={},
                            updated_at=_utcnow(),
                        )
                        session.add(row)

                    progress = self._to_progress(row)
                    versions = dict(row.field_versions or {})
                    if not apply_task(progress, versions, task):
                        return False

                    # Assign new objects so the JSON columns are flagged dirty
                    row.code = progress.code
                    row.notes = progress.notes
                    row.recap_answer = progress.recap_answer
                    row.completed_tasks = dict(progress.completed_tasks)
                    row.day_completed = progress.day_completed
                    row.day_completed_at = progress.day_completed_at
                    row.field_versions = versions
                    row.updated_at = progress.updated_at or _utcnow()
                    return True
            except IntegrityError as e:
                # Another instance inserted the row first; retrying updates it
                raise ProgressStoreError(f"Concurrent insert for day {task.day}") from e

    async def fetch(self, user_id: str) -> list[DayProgress]:
        async with session_scope(self._session_maker) as session:
            result = await session.execute(
                select(UserProgress)
                .where(UserProgress.user_id == user_id)
                .order_by(UserProgress.day)
            )
            return [self._to_progress(row) for row in result.scalars()]

    async def close(self) -> None:
        await close_async_engine(self._engine)


def build_progress_store(config: Optional[Settings] = None) -> ProgressStore:
    """Create the progress store selected by ``progress_store_backend``."""
    config = config or settings
    backend = config.progress_store_backend
    if backend == "supabase":
        store: ProgressStore = SupabaseProgressStore(
            base_url=config.supabase_url,
            api_key=config.supabase_service_key or config.supabase_anon_key,
            table=config.supabase_progress_table,
        )
    elif backend == "database":
        store = DatabaseProgressStore(database_url=config.database_url)
    else:
        store = InMemoryProgressStore()
    logger.info(f"Using {store.name} progress store")
    return store

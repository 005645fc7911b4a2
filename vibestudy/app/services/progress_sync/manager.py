"""Progress sync manager.

Turns learner progress mutations into background writes against a progress
store. Callers issue a write and get an ``asyncio.Task[SyncResult]`` back;
they may ignore it (fire and forget) or await it for the outcome.

Ordering: writes to the same (user, day, field) key are applied one at a
time in issue order. A write issued earlier never overwrites one issued
later, whatever order their user lookups or store calls finish in; the
earlier write is dropped as superseded instead. Writes to different keys
are independent.

Failures: user lookups and store calls are retried with exponential
backoff. When store retries are exhausted the write goes to the dead letter
queue and the result is ``FAILED``; a user lookup that keeps failing also
ends ``FAILED``, never ``SKIPPED``. No write raises for an unreachable
remote.
"""

import asyncio
import itertools
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Coroutine, Mapping, Optional

from vibestudy.app.core.config import settings
from vibestudy.app.core.logging import get_log_context, get_logger
from vibestudy.app.core.retry import RetryOutcome, RetryPolicy, retry_with_backoff
from vibestudy.app.exceptions import ProgressStoreError, SyncShutdownError

from .dead_letter import DeadLetterQueue
from .models import (
    CurrentUser,
    DayProgress,
    DayProgressSnapshot,
    SyncField,
    SyncResult,
    SyncStatus,
    SyncTask,
)
from .stores import InMemoryProgressStore, ProgressStore, build_progress_store

logger = get_logger(__name__)

CurrentUserResolver = Callable[[], Awaitable[Optional[CurrentUser]]]
FieldKey = tuple[str, int, str, Optional[str]]

# Above this many remembered keys, prune entries no pending write can be older than
_APPLIED_PRUNE_THRESHOLD = 10000


async def _signed_out() -> Optional[CurrentUser]:
    return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _debounce_from_settings() -> dict[SyncField, float]:
    return {
        SyncField.CODE: settings.sync_debounce_code_seconds,
        SyncField.NOTES: settings.sync_debounce_notes_seconds,
        SyncField.RECAP_ANSWER: settings.sync_debounce_recap_seconds,
    }


class ProgressSyncManager:
    """Background writer for learner progress.

    Args:
        store: Progress store writes are applied to
        dead_letter_queue: Where writes go after retries are exhausted
        retry_policy: Backoff policy for store calls
        get_current_user: Default resolver for the signed-in learner; a
            write with no learner is skipped (local-only mode)
        debounce: Per-field delay in seconds before a write is applied;
            writes issued meanwhile to the same key replace it

    Example:
        manager = ProgressSyncManager(store=InMemoryProgressStore())
        manager.sync_code(5, "print(1)", get_current_user=resolver)

        # On application shutdown:
        await manager.shutdown()
    """

    def __init__(
        self,
        store: Optional[ProgressStore] = None,
        dead_letter_queue: Optional[DeadLetterQueue] = None,
        retry_policy: Optional[RetryPolicy] = None,
        get_current_user: Optional[CurrentUserResolver] = None,
        debounce: Optional[Mapping[SyncField, float]] = None,
    ):
        self._store = store or InMemoryProgressStore()
        self._dead_letters = dead_letter_queue or DeadLetterQueue()
        self._retry_policy = retry_policy or RetryPolicy.from_settings()
        self._get_current_user = get_current_user or _signed_out
        self._debounce = dict(debounce) if debounce is not None else _debounce_from_settings()

        self._sequence = itertools.count(1)
        self._pending: set[asyncio.Task] = set()
        self._pending_sequences: set[int] = set()

        # Per field key: newest registered sequence, newest applied sequence,
        # writes currently registered, and the lock serializing applies.
        self._latest_issued: dict[FieldKey, int] = {}
        self._applied: dict[FieldKey, int] = {}
        self._inflight: dict[FieldKey, int] = {}
        self._locks: dict[FieldKey, asyncio.Lock] = {}

        self._closed = False

    @property
    def store(self) -> ProgressStore:
        return self._store

    @property
    def dead_letter_queue(self) -> DeadLetterQueue:
        return self._dead_letters

    # -- write operations -------------------------------------------------

    def sync_task_completion(
        self,
        day: int,
        task_id: str,
        is_completed: bool,
        *,
        get_current_user: Optional[CurrentUserResolver] = None,
    ) -> "asyncio.Task[SyncResult]":
        """Upsert the completion flag of ``task_id`` under ``day``."""
        return self._submit(
            SyncField.TASK_COMPLETION,
            day,
            bool(is_completed),
            task_id=str(task_id),
            get_current_user=get_current_user,
        )

    def sync_code(
        self, day: int, code: str, *, get_current_user: Optional[CurrentUserResolver] = None
    ) -> "asyncio.Task[SyncResult]":
        """Overwrite the stored code snapshot for ``day``."""
        return self._submit(SyncField.CODE, day, code, get_current_user=get_current_user)

    def sync_notes(
        self, day: int, notes: str, *, get_current_user: Optional[CurrentUserResolver] = None
    ) -> "asyncio.Task[SyncResult]":
        """Overwrite the stored notes for ``day``."""
        return self._submit(SyncField.NOTES, day, notes, get_current_user=get_current_user)

    def sync_recap_answer(
        self, day: int, answer: str, *, get_current_user: Optional[CurrentUserResolver] = None
    ) -> "asyncio.Task[SyncResult]":
        """Overwrite the stored recap answer for ``day``."""
        return self._submit(
            SyncField.RECAP_ANSWER, day, answer, get_current_user=get_current_user
        )

    def sync_day_completion(
        self, day: int, *, get_current_user: Optional[CurrentUserResolver] = None
    ) -> "asyncio.Task[SyncResult]":
        """Mark ``day`` complete. Completing a completed day changes nothing."""
        return self._submit(
            SyncField.DAY_COMPLETION, day, True, get_current_user=get_current_user
        )

    # -- other operations -------------------------------------------------

    def pending_count(self) -> int:
        return len(self._pending)

    def has_pending(self) -> bool:
        return bool(self._pending)

    async def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for every write issued so far.

        Returns:
            False if ``timeout`` elapsed with writes still pending.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._pending:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                logger.warning(f"Sync flush timed out with {len(self._pending)} writes pending")
                return False
            await asyncio.wait(set(self._pending), timeout=remaining)
        return True

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Refuse new writes, then wait for the pending ones."""
        self._closed = True
        logger.debug(f"Progress sync shutting down, {len(self._pending)} writes pending")
        await self.flush(timeout=timeout)
        logger.debug("Progress sync shutdown complete")

    async def fetch_progress(
        self, *, get_current_user: Optional[CurrentUserResolver] = None
    ) -> list[DayProgress]:
        """Read back the signed-in learner's stored progress.

        Returns an empty list when nobody is signed in.

        Raises:
            ProgressStoreError: If the store stays unreachable after retries.
            AuthServiceUnavailableError: If the user lookup keeps failing.
        """
        user = await self._require_lookup(get_current_user or self._get_current_user)
        if user is None:
            return []

        outcome = await retry_with_backoff(
            lambda: self._store.fetch(user.id),
            self._retry_policy,
            description="progress fetch",
            log_extra=get_log_context(user_id=user.id),
        )
        if not outcome.success:
            raise ProgressStoreError("Progress store unavailable") from outcome.error
        return outcome.value or []

    async def import_guest_progress(
        self,
        snapshots: Mapping[int, DayProgressSnapshot],
        *,
        get_current_user: Optional[CurrentUserResolver] = None,
    ) -> list["asyncio.Task[SyncResult]"]:
        """Queue writes for progress made before the learner signed in.

        One write per non-empty field of each day, in day order. Nothing is
        queued when nobody is signed in. A user lookup that keeps failing
        raises its last error.
        """
        user = await self._require_lookup(get_current_user or self._get_current_user)
        if user is None:
            logger.debug("Guest progress import skipped, no signed-in user")
            return []

        async def resolved() -> CurrentUser:
            return user

        tasks: list[asyncio.Task] = []
        for day in sorted(snapshots):
            snapshot = snapshots[day]
            if snapshot.code:
                tasks.append(self._submit(SyncField.CODE, day, snapshot.code,
                                          get_current_user=resolved, debounce=False))
            if snapshot.notes:
                tasks.append(self._submit(SyncField.NOTES, day, snapshot.notes,
                                          get_current_user=resolved, debounce=False))
            if snapshot.recap_answer:
                tasks.append(self._submit(SyncField.RECAP_ANSWER, day, snapshot.recap_answer,
                                          get_current_user=resolved, debounce=False))
            for task_id, done in snapshot.completed_tasks.items():
                tasks.append(self._submit(SyncField.TASK_COMPLETION, day, bool(done),
                                          task_id=str(task_id), get_current_user=resolved,
                                          debounce=False))
            if snapshot.day_completed:
                tasks.append(self._submit(SyncField.DAY_COMPLETION, day, True,
                                          get_current_user=resolved, debounce=False))

        logger.info(
            f"Queued {len(tasks)} writes for guest progress import",
            extra=get_log_context(user_id=user.id),
        )
        return tasks

    async def replay_dead_letters(self) -> int:
        """Re-queue every dead-lettered write and return how many were queued.

        Replayed writes keep their original issue time, so the store still
        ignores them where a newer value has been written since.
        """
        tasks = await self._dead_letters.drain()
        for task in tasks:
            task.sequence = next(self._sequence)
            task.attempts = 0
            self._spawn(self._dispatch(task), task.sequence, task.field)
        if tasks:
            logger.info(f"Replaying {len(tasks)} dead-lettered progress writes")
        return len(tasks)

    # -- internals ----------------------------------------------------------

    def _submit(
        self,
        field: SyncField,
        day: int,
        value: Any,
        *,
        task_id: Optional[str] = None,
        get_current_user: Optional[CurrentUserResolver] = None,
        debounce: bool = True,
    ) -> "asyncio.Task[SyncResult]":
        if self._closed:
            raise SyncShutdownError()
        if isinstance(day, bool) or not isinstance(day, int) or day < 1:
            raise ValueError(f"day must be a positive integer, got {day!r}")

        # Issue order is fixed here, before anything can suspend
        sequence = next(self._sequence)
        issued_at = _utcnow()
        resolver = get_current_user or self._get_current_user
        delay = self._debounce.get(field, 0.0) if debounce else 0.0

        return self._spawn(
            self._run(field, day, value, task_id, sequence, issued_at, resolver, delay),
            sequence,
            field,
        )

    def _spawn(
        self, coro: Coroutine[Any, Any, SyncResult], sequence: int, field: SyncField
    ) -> "asyncio.Task[SyncResult]":
        task = asyncio.get_running_loop().create_task(
            coro, name=f"progress-sync-{field.value}-{sequence}"
        )
        self._pending.add(task)
        self._pending_sequences.add(sequence)
        task.add_done_callback(lambda t: self._on_done(t, sequence))
        return task

    def _on_done(self, task: asyncio.Task, sequence: int) -> None:
        self._pending.discard(task)
        self._pending_sequences.discard(sequence)
        if not self._pending_sequences:
            self._applied.clear()
        elif len(self._applied) > _APPLIED_PRUNE_THRESHOLD:
            # Every write still able to run is newer than these entries
            oldest_pending = min(self._pending_sequences)
            for key in [k for k, seq in self._applied.items() if seq < oldest_pending]:
                del self._applied[key]

    async def _run(
        self,
        field: SyncField,
        day: int,
        value: Any,
        task_id: Optional[str],
        sequence: int,
        issued_at: datetime,
        resolver: CurrentUserResolver,
        delay: float,
    ) -> SyncResult:
        lookup = await self._resolve_user(resolver, day=day, field=field.value)
        if not lookup.success:
            error = f"{type(lookup.error).__name__}: {lookup.error}"
            logger.error(
                f"Current user lookup failed, {field.value} write not synced: {error}",
                extra=get_log_context(day=day, field=field.value),
            )
            return SyncResult(
                status=SyncStatus.FAILED, field=field, day=day, task_id=task_id, error=error
            )

        user = lookup.value
        if user is None:
            logger.debug(
                "No signed-in user, progress kept local only",
                extra=get_log_context(day=day, field=field.value),
            )
            return SyncResult(status=SyncStatus.SKIPPED, field=field, day=day, task_id=task_id)

        task = SyncTask(
            user_id=user.id,
            day=day,
            field=field,
            value=value,
            task_id=task_id,
            sequence=sequence,
            issued_at=issued_at,
        )
        return await self._dispatch(task, delay)

    async def _resolve_user(
        self, resolver: CurrentUserResolver, **context: Any
    ) -> RetryOutcome[Optional[CurrentUser]]:
        return await retry_with_backoff(
            resolver,
            self._retry_policy,
            description="current user lookup",
            log_extra=get_log_context(**context),
        )

    async def _require_lookup(self, resolver: CurrentUserResolver) -> Optional[CurrentUser]:
        lookup = await self._resolve_user(resolver)
        if not lookup.success:
            raise lookup.error  # type: ignore[misc]
        return lookup.value

    def _is_superseded(self, task: SyncTask) -> bool:
        key = task.field_key
        return (
            task.sequence < self._latest_issued.get(key, 0)
            or task.sequence <= self._applied.get(key, 0)
        )

    def _result(self, task: SyncTask, status: SyncStatus, error: Optional[str] = None) -> SyncResult:
        return SyncResult(
            status=status,
            field=task.field,
            day=task.day,
            task_id=task.task_id,
            attempts=task.attempts,
            error=error,
        )

    async def _dispatch(self, task: SyncTask, delay: float = 0.0) -> SyncResult:
        key = task.field_key
        self._latest_issued[key] = max(self._latest_issued.get(key, 0), task.sequence)
        self._inflight[key] = self._inflight.get(key, 0) + 1
        log_extra = get_log_context(
            user_id=task.user_id, day=task.day, field=task.field.value, sequence=task.sequence
        )
        try:
            if delay > 0:
                await asyncio.sleep(delay)

            lock = self._locks.setdefault(key, asyncio.Lock())
            async with lock:
                if self._is_superseded(task):
                    logger.debug("Sync write superseded by a later write", extra=log_extra)
                    return self._result(task, SyncStatus.SUPERSEDED)

                outcome = await retry_with_backoff(
                    lambda: self._attempt(task),
                    self._retry_policy,
                    description=f"{task.field.value} sync",
                    log_extra=log_extra,
                )

                if outcome.success:
                    if outcome.value is False:
                        logger.debug("Sync write superseded during retries", extra=log_extra)
                        return self._result(task, SyncStatus.SUPERSEDED)
                    self._applied[key] = max(self._applied.get(key, 0), task.sequence)
                    logger.debug("Progress write applied", extra=log_extra)
                    return self._result(task, SyncStatus.SYNCED)

                error = f"{type(outcome.error).__name__}: {outcome.error}"
                logger.error(
                    f"Progress write failed after {task.attempts} attempts: {error}",
                    extra=log_extra,
                )
                await self._dead_letters.append([task], error=error)
                return self._result(task, SyncStatus.FAILED, error=error)
        finally:
            self._inflight[key] -= 1
            if not self._inflight[key]:
                del self._inflight[key]
                self._latest_issued.pop(key, None)
                self._locks.pop(key, None)

    async def _attempt(self, task: SyncTask) -> bool:
        # A newer write registered while this one was backing off wins
        if task.attempts and self._is_superseded(task):
            return False
        task.attempts += 1
        await self._store.apply(task)
        return True


_sync_manager: Optional[ProgressSyncManager] = None


def get_sync_manager() -> ProgressSyncManager:
    """Get the global progress sync manager, built from settings on first use."""
    global _sync_manager
    if _sync_manager is None:
        _sync_manager = ProgressSyncManager(store=build_progress_store())
    return _sync_manager


def set_sync_manager(manager: Optional[ProgressSyncManager]) -> None:
    """Install the global progress sync manager (None clears it)."""
    global _sync_manager
    _sync_manager = manager


def reset_sync_manager() -> None:
    """Reset the global progress sync manager instance."""
    set_sync_manager(None)

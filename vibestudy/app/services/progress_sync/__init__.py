"""Learner progress sync.

This package turns progress mutations (code, notes, task completion, recap
answers, day completion) into ordered, retried writes against a progress
store, with a dead letter queue for writes that cannot be delivered.
"""

from .dead_letter import DeadLetterQueue
from .manager import (
    ProgressSyncManager,
    get_sync_manager,
    reset_sync_manager,
    set_sync_manager,
)
from .models import (
    CurrentUser,
    DayProgress,
    DayProgressSnapshot,
    SyncField,
    SyncResult,
    SyncStatus,
    SyncTask,
)
from .stores import (
    DatabaseProgressStore,
    InMemoryProgressStore,
    ProgressStore,
    SupabaseProgressStore,
    apply_task,
    build_progress_store,
)

__all__ = [
    "CurrentUser",
    "DayProgress",
    "DayProgressSnapshot",
    "DeadLetterQueue",
    "DatabaseProgressStore",
    "InMemoryProgressStore",
    "ProgressStore",
    "ProgressSyncManager",
    "SupabaseProgressStore",
    "SyncField",
    "SyncResult",
    "SyncStatus",
    "SyncTask",
    "apply_task",
    "build_progress_store",
    "get_sync_manager",
    "reset_sync_manager",
    "set_sync_manager",
]

"""Data models for learner progress sync."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class SyncField(str, Enum):
    """Progress field a sync write targets."""

    CODE = "code"
    NOTES = "notes"
    TASK_COMPLETION = "task_completion"
    RECAP_ANSWER = "recap_answer"
    DAY_COMPLETION = "day_completion"


class SyncStatus(str, Enum):
    """Terminal state of one sync write."""

    SYNCED = "synced"
    SKIPPED = "skipped"  # No signed-in learner, local-only mode
    SUPERSEDED = "superseded"  # A later write to the same key replaced it
    FAILED = "failed"  # Retries exhausted, sent to the dead letter queue


@dataclass(frozen=True)
class CurrentUser:
    """The signed-in learner a write belongs to."""

    id: str
    email: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncTask:
    """One pending progress mutation.

    ``sequence`` is the logical issue order, assigned when the write is
    issued. For the same ``field_key`` a higher sequence always wins.

    Attributes:
        user_id: Learner the write belongs to
        day: Curriculum day (1-based)
        field: Which progress field is written
        value: New value (str for code/notes/recap, bool for task completion,
            None for day completion)
        task_id: Task identifier, only for task completion writes
        sequence: Logical issue order across the manager
        issued_at: When the write was issued
        attempts: Store calls made so far
    """

    user_id: str
    day: int
    field: SyncField
    value: Any = None
    task_id: Optional[str] = None
    sequence: int = 0
    issued_at: datetime = field(default_factory=_utcnow)
    attempts: int = 0

    @property
    def field_key(self) -> tuple[str, int, str, Optional[str]]:
        """Ordering key: task completion is tracked per task, others per day."""
        return (self.user_id, self.day, self.field.value, self.task_id)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "user_id": self.user_id,
            "day": self.day,
            "field": self.field.value,
            "value": self.value,
            "task_id": self.task_id,
            "sequence": self.sequence,
            "issued_at": self.issued_at.isoformat(),
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SyncTask":
        """Create from dictionary."""
        issued_at = data.get("issued_at")
        return cls(
            user_id=data["user_id"],
            day=int(data["day"]),
            field=SyncField(data["field"]),
            value=data.get("value"),
            task_id=data.get("task_id"),
            sequence=int(data.get("sequence", 0)),
            issued_at=datetime.fromisoformat(issued_at) if issued_at else _utcnow(),
            attempts=int(data.get("attempts", 0)),
        )


@dataclass
class SyncResult:
    """Completion signal of one sync write."""

    status: SyncStatus
    field: SyncField
    day: int
    task_id: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        """Skipped and superseded writes are not failures."""
        return self.status is not SyncStatus.FAILED

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "field": self.field.value,
            "day": self.day,
            "task_id": self.task_id,
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass
class DayProgress:
    """Stored progress of one learner for one day."""

    user_id: str
    day: int
    code: Optional[str] = None
    notes: Optional[str] = None
    recap_answer: Optional[str] = None
    completed_tasks: dict[str, bool] = field(default_factory=dict)
    day_completed: bool = False
    day_completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "day": self.day,
            "code": self.code,
            "notes": self.notes,
            "recap_answer": self.recap_answer,
            "completed_tasks": dict(self.completed_tasks),
            "day_completed": self.day_completed,
            "day_completed_at": (
                self.day_completed_at.isoformat() if self.day_completed_at else None
            ),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class DayProgressSnapshot:
    """Locally held progress for one day, as migrated from a guest session."""

    code: Optional[str] = None
    notes: Optional[str] = None
    recap_answer: Optional[str] = None
    completed_tasks: dict[str, bool] = field(default_factory=dict)
    day_completed: bool = False

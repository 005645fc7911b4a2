from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Declarative base for the progress tables."""


class UserProgress(Base):
    """One learner's progress on one curriculum day.

    Each field is written by its own sync write, so a row is upserted on
    (user_id, day) and only the written column changes.
    """

    __tablename__ = "user_progress"
    __table_args__ = (
        UniqueConstraint("user_id", "day", name="uq_user_progress_user_day"),
        Index("idx_user_progress_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64))
    day: Mapped[int] = mapped_column(Integer)
    code: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    recap_answer: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_tasks: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    day_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    day_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Issue time of the last applied write per field; older writes are ignored
    field_versions: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

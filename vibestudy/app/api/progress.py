"""Learner progress sync API.

Mutating routes queue a background write and answer 202 right away. Pass
``?wait=true`` to wait for the write and get its outcome instead. Requests
without a signed-in learner are accepted and skipped (local-only mode).

The learner is resolved before anything is queued. When the auth server is
unreachable the request fails with 503 and nothing is queued, so the client
keeps its local copy and sends it again.
"""

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from vibestudy.app.middleware.auth import get_optional_user, require_user
from vibestudy.app.middleware.rate_limit import rate_limit
from vibestudy.app.services.progress_sync import (
    CurrentUser,
    DayProgressSnapshot,
    ProgressSyncManager,
    SyncResult,
    get_sync_manager,
)

# Auth first so the rate limit bucket keys on the learner id
router = APIRouter(
    prefix="/v1/progress",
    tags=["progress"],
    dependencies=[Depends(get_optional_user), Depends(rate_limit("PROGRESS_SYNC"))],
)

DayParam = Path(..., ge=1, le=10000, description="Curriculum day (1-based)")
WaitParam = Query(False, description="Wait for the write and return its outcome")


class CodeUpdate(BaseModel):
    code: str = Field(..., max_length=200_000)


class NotesUpdate(BaseModel):
    notes: str = Field(..., max_length=50_000)


class RecapUpdate(BaseModel):
    answer: str = Field(..., max_length=20_000)


class TaskCompletionUpdate(BaseModel):
    completed: bool


class DaySnapshotIn(BaseModel):
    """Progress a guest made on one day before signing in."""

    code: Optional[str] = Field(default=None, max_length=200_000)
    notes: Optional[str] = Field(default=None, max_length=50_000)
    recap_answer: Optional[str] = Field(default=None, max_length=20_000)
    completed_tasks: dict[str, bool] = Field(default_factory=dict)
    day_completed: bool = False

    @field_validator("completed_tasks", mode="before")
    @classmethod
    def accept_task_id_list(cls, v):
        # Local storage keeps completed tasks as a list of ids
        if isinstance(v, list):
            return {str(task_id): True for task_id in v}
        return v


class GuestImportRequest(BaseModel):
    days: dict[int, DaySnapshotIn]

    @field_validator("days")
    @classmethod
    def validate_days(cls, v: dict[int, DaySnapshotIn]) -> dict[int, DaySnapshotIn]:
        if any(day < 1 for day in v):
            raise ValueError("day numbers must be positive")
        return v


def _as_resolver(user: Optional[CurrentUser]):
    """Resolver handing the sync manager the learner this request already resolved."""

    async def resolve() -> Optional[CurrentUser]:
        return user

    return resolve


async def _respond(task: "asyncio.Task[SyncResult]", wait: bool) -> JSONResponse:
    if not wait:
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content={"status": "queued"})
    result = await task
    return JSONResponse(
        status_code=status.HTTP_200_OK if result.success else status.HTTP_502_BAD_GATEWAY,
        content=result.to_dict(),
    )


@router.put("/{day}/code", status_code=status.HTTP_202_ACCEPTED)
async def sync_code(
    body: CodeUpdate,
    user: Optional[CurrentUser] = Depends(get_optional_user),
    day: int = DayParam,
    wait: bool = WaitParam,
    manager: ProgressSyncManager = Depends(get_sync_manager),
) -> JSONResponse:
    """Save the code snapshot for a day."""
    task = manager.sync_code(day, body.code, get_current_user=_as_resolver(user))
    return await _respond(task, wait)


@router.put("/{day}/notes", status_code=status.HTTP_202_ACCEPTED)
async def sync_notes(
    body: NotesUpdate,
    user: Optional[CurrentUser] = Depends(get_optional_user),
    day: int = DayParam,
    wait: bool = WaitParam,
    manager: ProgressSyncManager = Depends(get_sync_manager),
) -> JSONResponse:
    """Save the notes for a day."""
    task = manager.sync_notes(day, body.notes, get_current_user=_as_resolver(user))
    return await _respond(task, wait)


@router.put("/{day}/recap", status_code=status.HTTP_202_ACCEPTED)
async def sync_recap_answer(
    body: RecapUpdate,
    user: Optional[CurrentUser] = Depends(get_optional_user),
    day: int = DayParam,
    wait: bool = WaitParam,
    manager: ProgressSyncManager = Depends(get_sync_manager),
) -> JSONResponse:
    """Save the recap answer for a day."""
    task = manager.sync_recap_answer(day, body.answer, get_current_user=_as_resolver(user))
    return await _respond(task, wait)


@router.put("/{day}/tasks/{task_id}", status_code=status.HTTP_202_ACCEPTED)
async def sync_task_completion(
    body: TaskCompletionUpdate,
    user: Optional[CurrentUser] = Depends(get_optional_user),
    day: int = DayParam,
    task_id: str = Path(..., min_length=1, max_length=128),
    wait: bool = WaitParam,
    manager: ProgressSyncManager = Depends(get_sync_manager),
) -> JSONResponse:
    """Mark a task done or not done."""
    task = manager.sync_task_completion(
        day, task_id, body.completed, get_current_user=_as_resolver(user)
    )
    return await _respond(task, wait)


@router.post("/{day}/complete", status_code=status.HTTP_202_ACCEPTED)
async def sync_day_completion(
    user: Optional[CurrentUser] = Depends(get_optional_user),
    day: int = DayParam,
    wait: bool = WaitParam,
    manager: ProgressSyncManager = Depends(get_sync_manager),
) -> JSONResponse:
    """Mark a day complete. Repeating the call changes nothing."""
    task = manager.sync_day_completion(day, get_current_user=_as_resolver(user))
    return await _respond(task, wait)


@router.get("")
async def get_progress(
    user: CurrentUser = Depends(require_user),
    manager: ProgressSyncManager = Depends(get_sync_manager),
) -> dict:
    """Stored progress of the signed-in learner."""
    days = await manager.fetch_progress(get_current_user=_as_resolver(user))
    return {"user_id": user.id, "days": [day.to_dict() for day in days]}


@router.post("/import", status_code=status.HTTP_202_ACCEPTED)
async def import_guest_progress(
    body: GuestImportRequest,
    user: CurrentUser = Depends(require_user),
    wait: bool = WaitParam,
    manager: ProgressSyncManager = Depends(get_sync_manager),
) -> JSONResponse:
    """Migrate progress made as a guest into the learner's account."""
    snapshots = {
        day: DayProgressSnapshot(**snapshot.model_dump()) for day, snapshot in body.days.items()
    }
    tasks = await manager.import_guest_progress(snapshots, get_current_user=_as_resolver(user))
    if not wait:
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={"status": "queued", "writes": len(tasks)},
        )

    results = await asyncio.gather(*tasks)
    failed = sum(1 for result in results if not result.success)
    return JSONResponse(
        status_code=status.HTTP_200_OK if not failed else status.HTTP_502_BAD_GATEWAY,
        content={"status": "done", "writes": len(results), "failed": failed},
    )

"""Dead letter queue for sync writes that exhausted their retries.

Writes are appended to a JSON-lines file so learner progress survives a
store outage; ``scripts/replay_sync_dead_letters.py`` or
``ProgressSyncManager.replay_dead_letters()`` feeds them back later.
"""

import asyncio
import json
import os
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from vibestudy.app.core.config import settings
from vibestudy.app.core.logging import get_logger

from .models import SyncTask

logger = get_logger(__name__)


class DeadLetterQueue:
    """Append-only JSONL file of failed sync writes.

    File I/O runs in the default executor to keep the event loop free.
    """

    def __init__(self, path: Optional[str | Path] = None):
        self.path = Path(path or settings.sync_dead_letter_path)
        self._lock = asyncio.Lock()

    async def append(self, tasks: Iterable[SyncTask], error: Optional[str] = None) -> bool:
        """Append tasks to the queue.

        Returns:
            False if the file could not be written; every task is then
            logged at CRITICAL so it can still be recovered from the logs.
        """
        tasks = list(tasks)
        if not tasks:
            return True

        def _write_sync() -> None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                for task in tasks:
                    record = task.to_dict()
                    record["failed_at"] = datetime.now().astimezone().isoformat()
                    record["error"] = error
                    f.write(json.dumps(record, ensure_ascii=False) + "\n")

        try:
            async with self._lock:
                await asyncio.get_running_loop().run_in_executor(None, _write_sync)
        except OSError as dlq_error:
            logger.critical(
                f"Failed to write to dead letter queue: {dlq_error}. "
                f"{len(tasks)} progress writes are permanently lost!",
                extra={"dead_letter_queue": str(self.path), "entry_count": len(tasks)},
            )
            for task in tasks:
                logger.critical(
                    "Permanently lost progress write",
                    extra={
                        "user_id": task.user_id,
                        "day": task.day,
                        "field": task.field.value,
                        "sync_task": task.to_dict(),
                    },
                )
            return False

        logger.error(
            f"Wrote {len(tasks)} failed progress writes to dead letter queue",
            extra={"dead_letter_queue": str(self.path)},
        )
        return True

    async def drain(self) -> List[SyncTask]:
        """Read and remove every queued task.

        The file is renamed before reading so writes failing meanwhile go to
        a fresh file. Unparseable lines are logged and skipped.
        """

        def _drain_sync() -> List[str]:
            if not self.path.exists():
                return []
            processing = self.path.with_suffix(self.path.suffix + ".processing")
            os.replace(self.path, processing)
            with open(processing, encoding="utf-8") as f:
                lines = f.readlines()
            processing.unlink()
            return lines

        async with self._lock:
            lines = await asyncio.get_running_loop().run_in_executor(None, _drain_sync)

        tasks: List[SyncTask] = []
        for line_no, line in enumerate(lines, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                tasks.append(SyncTask.from_dict(json.loads(line)))
            except (ValueError, KeyError) as e:
                logger.error(f"Skipping malformed dead letter line {line_no}: {e}")
        return tasks

    async def size(self) -> int:
        def _count_sync() -> int:
            if not self.path.exists():
                return 0
            with open(self.path, encoding="utf-8") as f:
                return sum(1 for line in f if line.strip())

        return await asyncio.get_running_loop().run_in_executor(None, _count_sync)

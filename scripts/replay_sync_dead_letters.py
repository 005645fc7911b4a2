"""
Replay progress writes from the sync dead letter queue after a store outage
"""
import asyncio
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from vibestudy.app.core.http_client import init_http_client
from vibestudy.app.core.logging import setup_logging
from vibestudy.app.services.progress_sync import (
    DeadLetterQueue,
    ProgressSyncManager,
    build_progress_store,
)


async def replay(path: str | None = None) -> int:
    """Replay every dead-lettered write; returns how many failed again"""
    async with init_http_client():
        store = build_progress_store()
        await store.initialize()
        manager = ProgressSyncManager(store=store, dead_letter_queue=DeadLetterQueue(path))

        print(f"=== Replaying {manager.dead_letter_queue.path} ===\n")
        count = await manager.replay_dead_letters()
        if not count:
            print("Nothing to replay.")
            await store.close()
            return 0

        await manager.shutdown()
        await store.close()

    # Writes that failed again are back in the queue file
    remaining = await DeadLetterQueue(path).size()
    print(f"  replayed:     {count}")
    print(f"  failed again: {remaining}")
    print("✅ Replay complete!" if not remaining else "⚠️  Some writes failed again")
    return remaining


if __name__ == "__main__":
    setup_logging()
    failed = asyncio.run(replay(sys.argv[1] if len(sys.argv) > 1 else None))
    sys.exit(1 if failed else 0)

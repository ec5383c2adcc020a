"""Fire-and-forget tasks.

Tasks are kept in a module-level set until done (so they are not garbage
collected mid-flight); failures are logged, never raised to the caller.
"""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger("uvicorn.error")

_tasks: set[asyncio.Task] = set()


def _on_done(task: asyncio.Task) -> None:
    _tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background task {task.get_name()} failed", exc_info=exc)


def spawn_background(coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
    task = asyncio.create_task(coro, name=name)
    _tasks.add(task)
    task.add_done_callback(_on_done)
    return task


def pending_count() -> int:
    return len(_tasks)


async def drain_background() -> None:
    """Wait for all in-flight background tasks (shutdown and tests)."""
    while True:
        pending = [t for t in _tasks if not t.done()]
        if not pending:
            break
        await asyncio.gather(*pending, return_exceptions=True)
    # Let done-callbacks run (they log failures).
    await asyncio.sleep(0)

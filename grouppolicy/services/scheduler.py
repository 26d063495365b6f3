"""Keyed single-flight task execution on the asyncio event loop."""

import asyncio
from typing import Awaitable, Callable, Dict, Optional

from grouppolicy.core.logging import get_logger

logger = get_logger(__name__)

WorkFn = Callable[[], Awaitable[None]]


class TaskScheduler:
    """Runs at most one task per key; a new submission supersedes the old one.

    The superseded task is cancelled and the replacement waits for it to
    finish unwinding before it starts. Blocking calls already handed to a
    worker thread by the superseded task may still complete.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._tasks: Dict[str, asyncio.Task] = {}

    def submit(self, key: str, work_fn: WorkFn) -> asyncio.Task:
        loop = self._loop or asyncio.get_running_loop()

        previous = self._tasks.get(key)
        if previous is not None and not previous.done():
            logger.debug(f"Superseding pending task {key}")
            previous.cancel()
        else:
            previous = None

        task = loop.create_task(self._run(key, work_fn, previous), name=key)
        self._tasks[key] = task
        return task

    async def _run(self, key: str, work_fn: WorkFn, previous: Optional[asyncio.Task]):
        if previous is not None:
            await asyncio.wait({previous})

        try:
            await work_fn()
            logger.debug(f"Task {key} completed")
        except asyncio.CancelledError:
            logger.debug(f"Task {key} cancelled")
            raise
        except Exception as e:
            logger.error(f"Task {key} failed: {e}", extra={"task_key": key})
        finally:
            if self._tasks.get(key) is asyncio.current_task():
                del self._tasks[key]

    def cancel(self, key: str) -> Optional[asyncio.Task]:
        """Cancel the task under key, returning it so callers can await it."""
        task = self._tasks.get(key)
        if task is None or task.done():
            return None
        logger.debug(f"Cancelling task {key}")
        task.cancel()
        return task

    def pending(self) -> Dict[str, asyncio.Task]:
        return {k: t for k, t in self._tasks.items() if not t.done()}

    async def wait_idle(self):
        """Wait until every submitted task, including replacements, is done."""
        while True:
            tasks = [t for t in self._tasks.values() if not t.done()]
            if not tasks:
                return
            await asyncio.wait(tasks)

    async def shutdown(self):
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)
        self._tasks.clear()

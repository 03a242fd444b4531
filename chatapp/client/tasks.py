import asyncio
import contextlib
from typing import Coroutine, Set

from ..errors import ChatError
from ..utils.logger import setup_logger

logger = setup_logger('chatapp.tasks')


class BackgroundTasks:
    """Owns fire-and-forget tasks started from synchronous event handlers.

    Tasks are referenced until they finish so they are not garbage
    collected mid-flight; ChatErrors they raise are logged, not lost.
    """

    def __init__(self, owner: str):
        self.owner = owner
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, ChatError):
            logger.warning(f"{self.owner}: background task failed: {exc.code}: {exc.message}")
        elif exc is not None:
            logger.error(f"{self.owner}: background task crashed", exc_info=exc)

    def __len__(self):
        return len(self._tasks)

    async def wait(self):
        """Wait until every task, including ones spawned meanwhile, is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel(self):
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

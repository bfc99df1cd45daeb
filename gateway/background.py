"""
Bounded queue for fire-and-forget work.

Archival and login binding are submitted here so the reply path never
waits on them. Each job runs on a worker task; failures are logged and
counted, never re-raised.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from gateway.metrics import record_background_job

logger = logging.getLogger(__name__)


@dataclass
class _Job:
    name: str
    func: Callable[..., Awaitable[Any]]
    args: tuple


class BackgroundWorker:
    """
    Args:
        max_queue_size: Jobs waiting beyond this are dropped
        workers: Number of concurrent worker tasks
    """

    def __init__(self, max_queue_size: int = 1000, workers: int = 2):
        self.max_queue_size = max_queue_size
        self.workers = workers
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        """Create the queue and worker tasks on the running loop."""
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._tasks = [
            asyncio.create_task(self._run(i), name=f"background-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info(f"Background worker started with {self.workers} task(s)")

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """Wait for queued jobs up to drain_timeout, then cancel the workers."""
        if not self.running:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Background worker stopped with {self._queue.qsize()} job(s) pending")
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Background worker stopped")

    async def drain(self) -> None:
        """Wait until every queued job has finished."""
        if self._queue is not None:
            await self._queue.join()

    def submit(self, name: str, func: Callable[..., Awaitable[Any]], *args: Any) -> bool:
        """
        Queue a coroutine function call without waiting for it.

        Returns:
            True if queued, False if the worker is not running or the queue is full
        """
        if not self.running:
            logger.error(f"Background job {name} dropped: worker not running")
            record_background_job(name, "dropped")
            return False
        try:
            self._queue.put_nowait(_Job(name=name, func=func, args=args))
        except asyncio.QueueFull:
            logger.warning(f"Background job {name} dropped: queue full")
            record_background_job(name, "dropped")
            return False
        return True

    async def _run(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await job.func(*job.args)
                record_background_job(job.name, "ok")
            except Exception:
                logger.exception(f"Background job {job.name} failed")
                record_background_job(job.name, "failed")
            finally:
                self._queue.task_done()

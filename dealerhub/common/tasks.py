"""Bounded background task queue for fire-and-forget side effects.

Callers submit coroutine factories; a fixed pool of worker tasks runs them and
logs any exception. A full queue drops the submission instead of blocking the
caller. `stop()` drains outstanding work up to a timeout.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from dealerhub.common.logging import logger
from dealerhub.common.metrics import (
    background_queue_depth,
    background_task_failures_total,
    background_tasks_dropped_total,
)


@dataclass
class _Job:
    name: str
    factory: Callable[[], Awaitable[object]]


class BackgroundTaskQueue:
    """Asyncio queue + worker pool owned by the application lifespan."""

    def __init__(self, maxsize: int = 1000, workers: int = 4) -> None:
        self.maxsize = maxsize
        self.worker_count = workers
        self._queue: asyncio.Queue[_Job] | None = None
        self._workers: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.maxsize)
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"delivery-worker-{index}")
            for index in range(self.worker_count)
        ]
        logger.info("background queue started workers=%s maxsize=%s", self.worker_count, self.maxsize)

    def submit(self, name: str, factory: Callable[[], Awaitable[object]]) -> bool:
        """Enqueue one job; returns False when it was dropped."""

        if self._queue is None:
            logger.warning("background queue not started, dropping task=%s", name)
            background_tasks_dropped_total.inc()
            return False
        try:
            self._queue.put_nowait(_Job(name=name, factory=factory))
        except asyncio.QueueFull:
            logger.warning("background queue full, dropping task=%s depth=%s", name, self._queue.qsize())
            background_tasks_dropped_total.inc()
            return False
        background_queue_depth.set(self._queue.qsize())
        return True

    async def join(self) -> None:
        """Wait until every submitted job has finished."""

        if self._queue is not None:
            await self._queue.join()

    async def stop(self, drain_timeout: float = 10.0) -> None:
        """Drain outstanding jobs (bounded by `drain_timeout`) and stop workers."""

        if not self.running:
            return
        try:
            await asyncio.wait_for(self.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning("background queue drain timed out pending=%s", self._queue.qsize())
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            job = await queue.get()
            background_queue_depth.set(queue.qsize())
            try:
                await job.factory()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                background_task_failures_total.labels(task=job.name).inc()
                logger.exception("background task failed task=%s worker=%s error=%s", job.name, index, exc)
            finally:
                queue.task_done()

"""
In-process background job queue.

Bookkeeping that must not hold up a response (usage increments, reservation
releases, analytics events, the delayed welcome email) is submitted here
instead of being fired as unobserved tasks. One worker drains the queue in
submission order; a failing job is logged and counted, never re-raised.
Jobs still queued at process shutdown are dropped, which is acceptable for
counters and analytics but not for billing state.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

logger = logging.getLogger(__name__)


@dataclass
class _Job:
    name: str
    func: Callable[..., Awaitable[Any]]
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BackgroundTaskQueue:
    """Fire-and-forget work with an explicit, observable error policy."""

    def __init__(self):
        self._queue: asyncio.Queue[_Job] = asyncio.Queue()
        self._delayed: Set[asyncio.Task] = set()
        self._worker_task: Optional[asyncio.Task] = None
        self.processed = 0
        self.failed = 0

    def submit(
        self,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        name: Optional[str] = None,
        delay: float = 0.0,
        **kwargs: Any,
    ) -> None:
        """Queue ``func(*args, **kwargs)``; with ``delay`` it is queued later."""
        job = _Job(name=name or getattr(func, "__name__", "job"), func=func, args=args, kwargs=kwargs)
        if delay and delay > 0:
            task = asyncio.create_task(self._enqueue_later(job, delay))
            self._delayed.add(task)
            task.add_done_callback(self._delayed.discard)
            return
        self._queue.put_nowait(job)
        logger.debug(f"Queued background job {job.name} (depth={self._queue.qsize()})")

    async def _enqueue_later(self, job: _Job, delay: float) -> None:
        await asyncio.sleep(delay)
        self._queue.put_nowait(job)

    @property
    def pending(self) -> int:
        return self._queue.qsize() + len(self._delayed)

    async def _run(self, job: _Job) -> None:
        try:
            await job.func(*job.args, **job.kwargs)
            self.processed += 1
        except Exception:
            self.failed += 1
            logger.exception(f"Background job {job.name} failed")

    async def worker_loop(self) -> None:
        logger.info("Background task worker started")
        while True:
            job = await self._queue.get()
            try:
                await self._run(job)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self.worker_loop())

    async def join(self) -> None:
        """Wait until every submitted job, delayed ones included, has run."""
        while self._delayed:
            await asyncio.gather(*list(self._delayed), return_exceptions=True)
        await self._queue.join()

    async def stop(self) -> None:
        for task in list(self._delayed):
            task.cancel()
        if self._worker_task is None:
            return
        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None
        logger.info("Background task worker stopped")

"""
Background queue for click/view tracking writes.

The redirect path submits a job and returns immediately. Workers run each job
with bounded retries and exponential backoff; a job that exhausts its
attempts (or arrives while the queue is full) lands in the dead-letter list
and is logged. Nothing here ever raises back into the caller of ``submit``.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from config.settings import settings

logger = logging.getLogger(__name__)

TrackingJob = Callable[[], Awaitable[None]]

_DEAD_LETTER_LIMIT = 1000


@dataclass
class DeadLetter:
    name: str
    error: str
    attempts: int
    failed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class TrackingQueue:
    """asyncio worker pool with retry/backoff and a dead-letter path."""

    def __init__(
        self,
        workers: int = settings.TRACKING_WORKERS,
        maxsize: int = settings.TRACKING_QUEUE_SIZE,
        max_retries: int = settings.TRACKING_MAX_RETRIES,
        backoff_seconds: float = settings.TRACKING_BACKOFF_SECONDS,
    ):
        self.workers = max(1, workers)
        self.maxsize = maxsize
        self.max_retries = max(1, max_retries)
        self.backoff_seconds = backoff_seconds
        self.dead_letters: deque[DeadLetter] = deque(maxlen=_DEAD_LETTER_LIMIT)
        self.processed = 0
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        """Spin up workers on the running loop (idempotent)."""
        if self.running:
            return
        loop = asyncio.get_running_loop()
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.maxsize)
        self._tasks = [
            loop.create_task(self._worker(i), name=f"tracking-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info("Tracking queue started with %d workers", self.workers)

    def submit(self, name: str, job: TrackingJob) -> bool:
        """Enqueue a job without waiting. Returns False if it was dead-lettered."""
        try:
            self.start()
            self._queue.put_nowait((name, job))
            return True
        except asyncio.QueueFull:
            self._dead_letter(name, "queue full", attempts=0)
        except RuntimeError as exc:  # no running loop
            self._dead_letter(name, str(exc), attempts=0)
        return False

    async def drain(self) -> None:
        """Wait until every submitted job has finished (or been dead-lettered)."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        """Finish queued work, then cancel the workers."""
        await self.drain()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queue = None

    async def _worker(self, index: int) -> None:
        while True:
            name, job = await self._queue.get()
            try:
                await self._run_with_retries(name, job)
            finally:
                self._queue.task_done()

    async def _run_with_retries(self, name: str, job: TrackingJob) -> None:
        for attempt in range(1, self.max_retries + 1):
            try:
                await job()
                self.processed += 1
                return
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if attempt >= self.max_retries:
                    self._dead_letter(name, repr(exc), attempts=attempt)
                    return
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Tracking job %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    name, attempt, self.max_retries, delay, exc,
                )
                await asyncio.sleep(delay)

    def _dead_letter(self, name: str, error: str, attempts: int) -> None:
        self.dead_letters.append(DeadLetter(name=name, error=error, attempts=attempts))
        logger.error("Tracking job %s dropped after %d attempt(s): %s", name, attempts, error)


tracking_queue = TrackingQueue()


def get_tracking_queue() -> TrackingQueue:
    """Dependency for FastAPI: the process-wide tracking queue."""
    return tracking_queue

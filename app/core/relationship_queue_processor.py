"""Background queue for relationship (re)computation.

Jobs are grouped into per-pair lanes. A pair key sits in the ready queue at
most once and is held by at most one worker at a time, so jobs for the same
document pair run one after another in enqueue order while distinct pairs
run concurrently up to the configured limit.
"""

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from app.core.backoff import BackoffPolicy, Clock, MonotonicClock
from app.core.logging import get_logger
from app.core.relevance_errors import PermanentJobFailure
from app.core.schemas_relationships import ProcessingJob

logger = get_logger(__name__)

# Configuration
DEFAULT_CONCURRENCY = 3

JobHandler = Callable[[ProcessingJob], Awaitable[None]]
ExhaustedHandler = Callable[[ProcessingJob, str], Awaitable[None]]


class BackgroundProcessingQueue:
    """Per-pair ordered job queue with a bounded worker pool and retry backoff."""

    def __init__(
        self,
        concurrency: int = DEFAULT_CONCURRENCY,
        backoff: BackoffPolicy | None = None,
        clock: Clock | None = None,
    ):
        """Initialize the queue.

        Args:
            concurrency: Number of pairs that may run at once
            backoff: Retry policy (attempt count -> delay, max attempts)
            clock: Time source, injectable for tests
        """
        self.concurrency = max(1, concurrency)
        self.backoff = backoff or BackoffPolicy()
        self.clock = clock or MonotonicClock()

        self._handler: JobHandler | None = None
        self._on_exhausted: ExhaustedHandler | None = None

        self._lanes: dict[str, deque[ProcessingJob]] = {}
        self._busy: set[str] = set()
        self._running_pairs: set[str] = set()
        self._ready: asyncio.Queue[str] | None = None
        self._idle: asyncio.Event | None = None
        self._workers: list[asyncio.Task] = []
        self._delayed: set[asyncio.Task] = set()

        self._running = False
        self._processed_count = 0
        self._retry_count = 0
        self._failed_count = 0
        self._start_time: float | None = None

    def bind(self, handler: JobHandler, on_exhausted: ExhaustedHandler) -> None:
        """Attach the job handler and the attempts-exhausted callback."""
        self._handler = handler
        self._on_exhausted = on_exhausted

    @property
    def stats(self) -> dict[str, Any]:
        """Get queue statistics."""
        uptime = time.time() - self._start_time if self._start_time else 0
        return {
            "running": self._running,
            "concurrency": self.concurrency,
            "queued_jobs": sum(len(lane) for lane in self._lanes.values()),
            "active_pairs": len(self._running_pairs),
            "processed_count": self._processed_count,
            "retry_count": self._retry_count,
            "failed_count": self._failed_count,
            "uptime_seconds": round(uptime, 1),
        }

    def _ensure_primitives(self) -> None:
        # Created lazily so they bind to the running event loop
        if self._ready is None:
            self._ready = asyncio.Queue()
        if self._idle is None:
            self._idle = asyncio.Event()
            if not self._busy:
                self._idle.set()

    def is_active(self, pair_key: str) -> bool:
        """True while a job for the pair is executing."""
        return pair_key in self._running_pairs

    def pending_for(self, pair_key: str) -> int:
        """Jobs waiting (not executing) for a pair."""
        return len(self._lanes.get(pair_key, ()))

    def enqueue(self, job: ProcessingJob) -> bool:
        """
        Add a job to its pair's lane.

        A job for a relationship that is already waiting (not yet started)
        is coalesced into the waiting one.

        Args:
            job: Job to run

        Returns:
            True if the job was queued, False if coalesced
        """
        self._ensure_primitives()
        key = job.pair.key
        lane = self._lanes.setdefault(key, deque())

        if any(waiting.relationship_id == job.relationship_id for waiting in lane):
            logger.debug(
                f"Relationship {job.relationship_id} already queued, coalescing",
                extra={"pair": key, "relationship_id": str(job.relationship_id)},
            )
            return False

        lane.append(job)
        logger.info(
            f"Enqueued job {job.job_id} for relationship {job.relationship_id}",
            extra={"pair": key, "relationship_id": str(job.relationship_id)},
        )

        if key not in self._busy:
            self._busy.add(key)
            self._idle.clear()
            self._ready.put_nowait(key)
        return True

    async def process_one(self, job: ProcessingJob) -> bool:
        """Run a single job through the handler.

        Args:
            job: Job to run; its attempt counter is incremented

        Returns:
            True if the job completed, False if it failed this attempt
        """
        if self._handler is None:
            raise RuntimeError("BackgroundProcessingQueue has no handler bound")

        job.attempt += 1
        key = job.pair.key

        try:
            await self._handler(job)
            self._processed_count += 1
            return True

        except PermanentJobFailure as e:
            job.last_error = str(e) or e.__class__.__name__
            logger.error(
                f"Job {job.job_id} failed permanently: {job.last_error}",
                extra={"pair": key, "attempt": job.attempt},
            )
            await self._exhaust(job)
            return False

        except Exception as e:
            job.last_error = str(e) or e.__class__.__name__
            logger.warning(
                f"Job {job.job_id} attempt {job.attempt}/{self.backoff.max_attempts} failed: {job.last_error}",
                extra={
                    "pair": key,
                    "relationship_id": str(job.relationship_id),
                    "attempt": job.attempt,
                },
            )

            if self.backoff.should_retry(job.attempt):
                self._retry_count += 1
                delay = self.backoff.delay_for(job.attempt)
                job.next_run_at = self.clock.now() + delay
                self._lanes.setdefault(key, deque()).appendleft(job)
            else:
                await self._exhaust(job)
            return False

    async def _exhaust(self, job: ProcessingJob) -> None:
        self._failed_count += 1
        logger.error(
            f"Dropping job {job.job_id} after {job.attempt} attempt(s)",
            extra={"pair": job.pair.key, "relationship_id": str(job.relationship_id)},
        )
        if self._on_exhausted is None:
            return
        try:
            await self._on_exhausted(job, job.last_error or "Unknown error")
        except Exception as e:
            logger.exception(
                f"Failed to record exhausted job {job.job_id}: {e}",
                extra={"pair": job.pair.key},
            )

    async def _release(self, key: str) -> None:
        """Hand the pair back: reschedule its next job, or mark it idle."""
        lane = self._lanes.get(key)

        if lane:
            delay = lane[0].next_run_at - self.clock.now()
            if delay > 0:
                task = asyncio.create_task(self._ready_after(key, delay))
                self._delayed.add(task)
                task.add_done_callback(self._delayed.discard)
            else:
                self._ready.put_nowait(key)
            return

        self._lanes.pop(key, None)
        self._busy.discard(key)
        if not self._busy:
            self._idle.set()

    async def _ready_after(self, key: str, delay: float) -> None:
        await self.clock.sleep(delay)
        self._ready.put_nowait(key)

    async def _worker(self, worker_id: int) -> None:
        while self._running:
            key = await self._ready.get()
            lane = self._lanes.get(key)

            if not lane:
                await self._release(key)
                continue

            job = lane.popleft()
            self._running_pairs.add(key)
            try:
                await self.process_one(job)
            except Exception as e:
                # process_one only raises when misconfigured
                logger.exception(f"Worker {worker_id} error in processing loop: {e}")
            finally:
                self._running_pairs.discard(key)
                await self._release(key)

    def start(self) -> None:
        """Start the worker pool on the running event loop."""
        if self._running:
            return

        self._ensure_primitives()
        self._running = True
        self._start_time = time.time()
        self._workers = [
            asyncio.create_task(self._worker(i)) for i in range(self.concurrency)
        ]
        logger.info(
            f"Starting relationship queue (concurrency={self.concurrency}, "
            f"max_attempts={self.backoff.max_attempts})"
        )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait until every queued job (including retries) has finished."""
        self._ensure_primitives()
        await asyncio.wait_for(self._idle.wait(), timeout=timeout)

    async def stop(self) -> None:
        """Stop workers and pending retry timers."""
        logger.info("Stopping relationship queue...")
        self._running = False

        tasks = [*self._workers, *self._delayed]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._workers = []
        self._delayed.clear()
        logger.info("Relationship queue stopped")

"""Job queue: FIFO admission under a concurrency ceiling."""

import asyncio
import logging
from collections import deque
from typing import Any, Deque, Dict, Optional, Union
from .exceptions import QueueClosedError, RetriesExhaustedError
from .handlers import HandlerRegistry
from .keypool import KeyPool
from .models import Job, JobKind, JobStatus, LogLevel
from .storage import Storage
from .worker import Worker, append_log

logger = logging.getLogger(__name__)


class JobQueue:
    """Owns the pending queue and the set of in-flight jobs.

    Everything here runs on one event loop. None of the bookkeeping methods
    await, so reads and writes of the queue, the in-flight map and the key
    pool never interleave with another job's. A finished job calls
    ``process_queue`` on its way out, which keeps the ceiling saturated
    without polling.

    Job ``priority`` is advisory: admission order is submission order.
    """

    def __init__(
        self,
        storage: Storage,
        pool: KeyPool,
        handlers: HandlerRegistry,
        notifier=None,
        max_concurrent: int = 3,
        max_retries: int = 3,
        timeout: float = 300.0,
        retry_delay: float = 3.0,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.storage = storage
        self.pool = pool
        self.notifier = notifier
        self.worker = Worker(
            storage,
            pool,
            handlers,
            notifier=notifier,
            max_retries=max_retries,
            timeout=timeout,
            retry_delay=retry_delay,
        )
        self.max_concurrent = max_concurrent
        self._queue: Deque[str] = deque()
        self._running: Dict[str, "asyncio.Task[None]"] = {}
        self._pumping = False
        self._accepting = True
        self._idle = asyncio.Event()
        self._idle.set()

    @classmethod
    def from_config(cls, storage: Storage, pool: KeyPool, handlers: HandlerRegistry, notifier=None) -> "JobQueue":
        """Build a queue from the settings persisted in ``storage``."""
        config = storage.get_config()
        return cls(
            storage,
            pool,
            handlers,
            notifier=notifier,
            max_concurrent=config.max_concurrent,
            max_retries=config.max_retries,
            timeout=config.task_timeout,
            retry_delay=config.retry_delay,
        )

    def _publish(self, job: Job) -> None:
        if self.notifier is not None:
            self.notifier.broadcast("task_update", job)

    def _log(self, job_id: str, level: LogLevel, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        append_log(self.storage, self.notifier, job_id, level, message, details)

    def _update_idle(self) -> None:
        if self._queue or self._running:
            self._idle.clear()
        else:
            self._idle.set()

    def submit(self, kind: Union[JobKind, str], payload: Optional[Dict[str, Any]] = None, priority: int = 0) -> Job:
        """Persist a new pending job and queue it.

        Returns the pending record straight away; execution happens in the
        background. Must be called from a running event loop.
        """
        kind = JobKind(kind)
        if not self._accepting:
            raise QueueClosedError()

        job = self.storage.create_job(kind, payload, priority)
        self._queue.append(job.id)
        self._update_idle()
        self._publish(job)
        self._log(job.id, LogLevel.INFO, "Job queued", {"queue_length": len(self._queue)})
        logger.info("Queued job %s (%s), queue length %d", job.id, kind.value, len(self._queue))

        self.process_queue()
        return job

    def process_queue(self) -> None:
        """Start queued jobs while there is spare capacity."""
        if self._pumping:
            return

        self._pumping = True
        try:
            loop = asyncio.get_running_loop() if self._queue else None
            while self._accepting and self._queue and len(self._running) < self.max_concurrent:
                job_id = self._queue.popleft()
                self._running[job_id] = loop.create_task(self._execute(job_id), name=f"inkqueue-job-{job_id}")
        finally:
            self._pumping = False
        self._update_idle()

    async def _execute(self, job_id: str) -> None:
        """Run one admitted job through to a terminal status."""
        try:
            job = self.storage.get_job(job_id)
            if job is None:
                logger.error("Job %s vanished before it could start", job_id)
                return

            job = self.storage.set_status(job_id, JobStatus.RUNNING)
            self._publish(job)
            self._log(job_id, LogLevel.INFO, "Job started", {"running": len(self._running)})
            logger.info("Started job %s (%d running)", job_id, len(self._running))

            try:
                result, key_id = await self.worker.run(job)
            except RetriesExhaustedError as e:
                self._fail(job_id, str(e), {"attempts": e.attempts})
                return

            try:
                job = self.storage.set_status(
                    job_id, JobStatus.COMPLETED, result=result, credential_id=key_id, progress=100
                )
            except ValueError as e:
                self._fail(job_id, f"Result could not be stored: {e}")
                return
            self._publish(job)
            self._log(job_id, LogLevel.INFO, "Job completed", {"key_id": key_id})
            logger.info("Completed job %s", job_id)
        except Exception:
            logger.exception("Unexpected error while running job %s", job_id)
        finally:
            self._running.pop(job_id, None)
            self.process_queue()

    def _fail(self, job_id: str, error: str, details: Optional[Dict[str, Any]] = None) -> None:
        job = self.storage.set_status(job_id, JobStatus.FAILED, error=error)
        self._publish(job)
        self._log(job_id, LogLevel.ERROR, f"Job failed: {error}", details)
        logger.error("Job %s failed: %s", job_id, error)

    def cancel(self, job_id: str) -> bool:
        """Cancel a job that is still waiting in the queue.

        Running jobs cannot be interrupted; for them, and for ids that are not
        queued at all, this returns False.
        """
        if job_id in self._queue:
            self._queue.remove(job_id)
            self._update_idle()
            job = self.storage.set_status(job_id, JobStatus.CANCELLED)
            self._publish(job)
            self._log(job_id, LogLevel.INFO, "Job cancelled")
            logger.info("Cancelled job %s", job_id)
            return True

        if job_id in self._running:
            logger.warning("Job %s is running and cannot be cancelled", job_id)
        return False

    def is_queued(self, job_id: str) -> bool:
        return job_id in self._queue

    def is_running(self, job_id: str) -> bool:
        return job_id in self._running

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of queue occupancy."""
        return {
            "queue_length": len(self._queue),
            "running_count": len(self._running),
            "max_concurrent": self.max_concurrent,
            "running_ids": list(self._running),
        }

    def set_max_concurrent(self, value: int) -> None:
        """Change the ceiling and use any capacity it frees up."""
        value = int(value)
        if value < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = value
        logger.info("Max concurrent jobs set to %d", value)
        self.process_queue()

    def recover(self) -> int:
        """Pick up where a previous process left off.

        Jobs left running were cut off mid-attempt and are marked failed;
        pending jobs are queued again in creation order. Returns how many
        were re-queued.
        """
        for job in self.storage.list_jobs(status=JobStatus.RUNNING, limit=None):
            self._fail(job.id, "Interrupted by service restart")

        pending = sorted(self.storage.list_jobs(status=JobStatus.PENDING, limit=None), key=lambda j: j.created_at)
        requeued = 0
        for job in pending:
            if job.id in self._queue or job.id in self._running:
                continue
            self._queue.append(job.id)
            requeued += 1
        if requeued:
            logger.info("Re-queued %d pending jobs", requeued)
        self.process_queue()
        return requeued

    async def wait_idle(self) -> None:
        """Wait until nothing is queued or running."""
        await self._idle.wait()

    async def shutdown(self) -> None:
        """Stop admitting work and let in-flight jobs finish.

        Jobs still queued stay pending on disk and are picked up by
        ``recover`` on the next start.
        """
        self._accepting = False
        running = list(self._running.values())
        if running:
            logger.info("Waiting for %d running jobs to finish", len(running))
            await asyncio.gather(*running, return_exceptions=True)
        logger.info("Queue stopped with %d jobs still pending", len(self._queue))

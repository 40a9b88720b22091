"""Attempt execution: deadlines, key rotation and retries for one job."""

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple
from .exceptions import (
    AttemptTimeoutError,
    PoolExhaustedError,
    RetriesExhaustedError,
    UnknownJobKindError,
)
from .handlers import HandlerRegistry, JobHandler
from .keypool import KeyPool
from .models import Job, LogEntry, LogLevel
from .storage import Storage

logger = logging.getLogger(__name__)


def describe_error(error: BaseException) -> str:
    """Error text for logs and job records."""
    return str(error) or type(error).__name__


def append_log(
    storage: Storage,
    notifier,
    job_id: str,
    level: LogLevel,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> LogEntry:
    """Write a job log entry and push it to live subscribers."""
    entry = storage.add_log(job_id, level, message, details)
    if notifier is not None:
        notifier.broadcast("log_update", entry)
    return entry


async def run_with_timeout(handler: JobHandler, secret: str, payload: Dict[str, Any], timeout: float) -> Any:
    """Race one handler call against a deadline.

    If the deadline wins the handler is cancelled, its eventual result is
    discarded and ``AttemptTimeoutError`` is raised.
    """
    task = asyncio.ensure_future(handler(secret, payload))
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        task.cancel()
        raise
    if not done:
        task.cancel()
        raise AttemptTimeoutError(timeout)
    return task.result()


class Worker:
    """Runs a job's handler with up to ``max_retries`` retries.

    Each attempt draws a key from the pool and reports the outcome back to
    it. Attempt errors are logged against the job and never escape; only
    ``RetriesExhaustedError`` does, once every attempt has failed.
    """

    def __init__(
        self,
        storage: Storage,
        pool: KeyPool,
        handlers: HandlerRegistry,
        notifier=None,
        max_retries: int = 3,
        timeout: float = 300.0,
        retry_delay: float = 3.0,
    ):
        self.storage = storage
        self.pool = pool
        self.handlers = handlers
        self.notifier = notifier
        self.max_retries = max_retries
        self.timeout = timeout
        self.retry_delay = retry_delay

    def _log(self, job_id: str, level: LogLevel, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        append_log(self.storage, self.notifier, job_id, level, message, details)

    async def run(self, job: Job) -> Tuple[Any, str]:
        """Execute ``job`` until an attempt succeeds. Returns ``(result, key_id)``."""
        attempts = self.max_retries + 1
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            try:
                handler = self.handlers.get(job.kind)
                key_id, secret = self.pool.select()
            except (UnknownJobKindError, PoolExhaustedError) as e:
                last_error = e
                self._log(job.id, LogLevel.ERROR, f"Attempt {attempt}/{attempts} failed: {e}", {"attempt": attempt})
                logger.warning("Job %s attempt %d could not start: %s", job.id, attempt, e)
                await self._pause(attempt, attempts)
                continue

            updated = self.storage.update_job(job.id, credential_id=key_id)
            if self.notifier is not None:
                self.notifier.broadcast("task_update", updated)
            self._log(
                job.id,
                LogLevel.INFO,
                f"Attempt {attempt}/{attempts} using {key_id}",
                {"attempt": attempt, "key_id": key_id},
            )

            try:
                result = await run_with_timeout(handler, secret, job.payload, self.timeout)
            except Exception as e:
                last_error = e
                message = describe_error(e)
                self.pool.report_failure(key_id, message)
                self._log(
                    job.id,
                    LogLevel.ERROR,
                    f"Attempt {attempt}/{attempts} failed: {message}",
                    {"attempt": attempt, "key_id": key_id, "error_type": type(e).__name__},
                )
                logger.warning("Job %s attempt %d with %s failed: %s", job.id, attempt, key_id, message)
                await self._pause(attempt, attempts)
                continue

            self.pool.report_success(key_id)
            return result, key_id

        raise RetriesExhaustedError(last_error, attempts)

    async def _pause(self, attempt: int, attempts: int) -> None:
        if attempt < attempts and self.retry_delay > 0:
            await asyncio.sleep(self.retry_delay)

"""Persistent job and log storage backed by a single JSON file."""

import json
import logging
import os
import sys
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple
from .exceptions import InvalidTransitionError, JobNotFoundError
from .models import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    Job,
    JobKind,
    JobStatus,
    LogEntry,
    LogLevel,
    QueueConfig,
    utcnow,
)

# Handle platform-specific locking
if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)

DB_FILENAME = "inkqueue.json"
LOCK_FILENAME = "inkqueue.lock"


class Storage:
    """File-backed store for jobs, job logs and queue settings.

    The data is kept in memory and every mutating call rewrites the file in
    full before returning, so a read always sees the caller's own writes.
    Several stores may share one data dir (the server and offline CLI
    commands): mutations hold an exclusive lock on ``inkqueue.lock`` and
    reload the file first if another store has replaced it since.

    Records handed out are copies; change them through
    ``update_job``/``set_status``.
    """

    def __init__(self, data_dir: str = ".inkqueue", defaults: Optional[QueueConfig] = None):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.db_file = self.data_dir / DB_FILENAME
        self.lock_file = self.data_dir / LOCK_FILENAME
        self._jobs: Dict[str, Job] = {}
        self._logs: List[LogEntry] = []
        self._settings: Dict[str, Any] = {}
        self._seen: Optional[Tuple[int, int, int]] = None

        with self._locked():
            # Initialize the file if it doesn't exist
            if not self.db_file.exists():
                settings = (defaults or QueueConfig()).model_dump()
                settings["created_at"] = utcnow().isoformat()
                self._settings = settings
                self._save()
                logger.info("Created new data file %s", self.db_file)

    def _write_json(self, file_path: Path, data: Any) -> None:
        """Write data to JSON file with atomic write."""
        temp_file = file_path.with_suffix(".tmp")
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)
        temp_file.replace(file_path)

    def _read_json(self, file_path: Path) -> Dict[str, Any]:
        """Read JSON file safely."""
        if not file_path.exists():
            return {}
        with open(file_path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _signature(self) -> Optional[Tuple[int, int, int]]:
        # Every save replaces the file, so the inode changes along with mtime and size.
        try:
            st = self.db_file.stat()
        except FileNotFoundError:
            return None
        return st.st_ino, st.st_mtime_ns, st.st_size

    def _refresh(self) -> None:
        """Reload the data file if another store has written it since we last did."""
        signature = self._signature()
        if signature is None or signature == self._seen:
            return

        data = self._read_json(self.db_file)
        jobs: Dict[str, Job] = {}
        for job_data in data.get("jobs", []):
            job = Job(**job_data)
            jobs[job.id] = job
        self._jobs = jobs
        self._logs = [LogEntry(**entry) for entry in data.get("logs", [])]
        self._settings = data.get("settings", {})
        self._seen = signature
        logger.debug("Loaded %d jobs and %d log entries from %s", len(self._jobs), len(self._logs), self.db_file)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the data dir lock around a read-modify-write of the file.

        Blocks until other processes release it. Not re-entrant: mutating
        methods must not call each other while holding it.
        """
        fd = os.open(str(self.lock_file), os.O_CREAT | os.O_WRONLY, 0o644)
        try:
            if sys.platform == "win32":
                msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
            else:
                fcntl.flock(fd, fcntl.LOCK_EX)
            try:
                self._refresh()
                yield
            finally:
                if sys.platform == "win32":
                    msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
                else:
                    fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _save(self) -> None:
        self._write_json(
            self.db_file,
            {
                "jobs": [job.model_dump(mode="json") for job in self._jobs.values()],
                "logs": [entry.model_dump(mode="json") for entry in self._logs],
                "settings": self._settings,
            },
        )
        self._seen = self._signature()

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    # Jobs

    def create_job(self, kind: JobKind, payload: Optional[Dict[str, Any]] = None, priority: int = 0) -> Job:
        """Create and persist a new pending job."""
        job = Job(kind=kind, payload=payload or {}, priority=priority)
        with self._locked():
            self._jobs[job.id] = job
            self._save()
        logger.debug("Created job %s (%s)", job.id, job.kind.value)
        return job.model_copy(deep=True)

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        self._refresh()
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        kind: Optional[JobKind] = None,
        limit: Optional[int] = 50,
        offset: int = 0,
    ) -> List[Job]:
        """List jobs in creation order, optionally filtered by status and kind.

        ``limit=None`` returns every match.
        """
        self._refresh()
        jobs = [
            job
            for job in self._jobs.values()
            if (status is None or job.status == status) and (kind is None or job.kind == kind)
        ]
        end = None if limit is None else offset + limit
        return [job.model_copy(deep=True) for job in jobs[offset:end]]

    def update_job(self, job_id: str, **changes: Any) -> Job:
        """Apply field changes to a job. Status changes go through ``set_status``."""
        if "status" in changes:
            raise ValueError("use set_status() to change a job's status")
        with self._locked():
            job = self._require(job_id)
            data = job.model_dump()
            data.update(changes)
            data["updated_at"] = utcnow()
            updated = Job.model_validate(data)
            updated.model_dump(mode="json")  # unserializable results fail here, before the swap
            self._jobs[job_id] = updated
            self._save()
        return updated.model_copy(deep=True)

    def set_status(self, job_id: str, status: JobStatus, **changes: Any) -> Job:
        """Move a job to a new status, stamping start and end times."""
        with self._locked():
            job = self._require(job_id)
            if status not in TRANSITIONS[job.status]:
                raise InvalidTransitionError(job_id, job.status.value, status.value)

            now = utcnow()
            data = job.model_dump()
            data.update(changes)
            data["status"] = status
            data["updated_at"] = now
            if status == JobStatus.RUNNING and data.get("start_time") is None:
                data["start_time"] = now
            if status in TERMINAL_STATUSES:
                data["end_time"] = now
            if status == JobStatus.COMPLETED:
                data["error"] = None
            else:
                data["result"] = None

            updated = Job.model_validate(data)
            updated.model_dump(mode="json")  # unserializable results fail here, before the swap
            self._jobs[job_id] = updated
            self._save()
        return updated.model_copy(deep=True)

    def delete_job(self, job_id: str) -> bool:
        """Delete a job and its logs. Returns False if it didn't exist."""
        with self._locked():
            if self._jobs.pop(job_id, None) is None:
                return False
            self._logs = [entry for entry in self._logs if entry.job_id != job_id]
            self._save()
        logger.info("Deleted job %s", job_id)
        return True

    def get_stats(self) -> Dict[str, int]:
        """Get job counts by status."""
        self._refresh()
        stats = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            stats[job.status.value] += 1
        stats["total"] = len(self._jobs)
        return stats

    def cleanup_jobs(self, keep: int = 100) -> int:
        """Drop terminal jobs that fall outside the ``keep`` most recently created.

        ``keep`` is a floor, not an exact count: pending and running jobs are
        never dropped, so more than ``keep`` jobs can remain. Logs of dropped
        jobs go with them.
        """
        with self._locked():
            newest_first = sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)
            removed_ids = {job.id for job in newest_first[keep:] if job.is_terminal}
            if not removed_ids:
                return 0

            self._jobs = {job_id: job for job_id, job in self._jobs.items() if job_id not in removed_ids}
            self._logs = [entry for entry in self._logs if entry.job_id not in removed_ids]
            self._save()
        logger.info("Cleaned up %d old jobs", len(removed_ids))
        return len(removed_ids)

    # Logs

    def add_log(
        self,
        job_id: str,
        level: LogLevel,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> LogEntry:
        """Append a log entry for a job."""
        entry = LogEntry(job_id=job_id, level=level, message=message, details=details)
        with self._locked():
            self._logs.append(entry)
            self._save()
        return entry

    def get_logs(
        self,
        job_id: str,
        level: Optional[LogLevel] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[LogEntry]:
        """Get a job's logs, oldest first."""
        self._refresh()
        logs = [
            entry
            for entry in self._logs
            if entry.job_id == job_id and (level is None or entry.level == level)
        ]
        logs.sort(key=lambda entry: entry.timestamp)
        return logs[offset:offset + limit]

    def list_logs(
        self,
        job_id: Optional[str] = None,
        level: Optional[LogLevel] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[LogEntry]:
        """List logs across jobs, newest first."""
        self._refresh()
        logs = [
            entry
            for entry in self._logs
            if (job_id is None or entry.job_id == job_id) and (level is None or entry.level == level)
        ]
        logs.reverse()
        logs.sort(key=lambda entry: entry.timestamp, reverse=True)
        return logs[offset:offset + limit]

    def delete_logs(self, job_id: str) -> int:
        """Delete every log entry of a job."""
        with self._locked():
            before = len(self._logs)
            self._logs = [entry for entry in self._logs if entry.job_id != job_id]
            deleted = before - len(self._logs)
            self._save()
        logger.info("Deleted %d log entries of job %s", deleted, job_id)
        return deleted

    def cleanup_logs(self, days: float = 7) -> int:
        """Drop log entries older than ``days`` days."""
        cutoff = utcnow() - timedelta(days=days)
        with self._locked():
            before = len(self._logs)
            self._logs = [entry for entry in self._logs if entry.timestamp > cutoff]
            deleted = before - len(self._logs)
            self._save()
        logger.info("Cleaned up %d log entries older than %g days", deleted, days)
        return deleted

    def get_log_stats(self) -> Dict[str, int]:
        """Get log counts by level."""
        self._refresh()
        stats = {level.value: 0 for level in LogLevel}
        for entry in self._logs:
            stats[entry.level.value] += 1
        stats["total"] = len(self._logs)
        return stats

    # Settings

    def get_config(self) -> QueueConfig:
        """Get current queue configuration."""
        self._refresh()
        return QueueConfig.model_validate(self._settings)

    def set_config(self, config: QueueConfig) -> None:
        """Update queue configuration."""
        with self._locked():
            self._settings.update(config.model_dump())
            self._save()

"""Data models for jobs, job logs, credentials and queue configuration."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, SecretStr


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class JobKind(str, Enum):
    """Kinds of generation work the queue accepts."""
    INSPIRATION_BATCH = "inspiration_batch"
    ARCHITECTURE_SYNTHESIS = "architecture_synthesis"
    CHAPTER_DRAFT = "chapter_draft"
    MAP_REGENERATION = "map_regeneration"
    NODE_EXPANSION = "node_expansion"
    TEXT_TRANSFORM = "text_transform"
    CHAPTER_REWRITE = "chapter_rewrite"
    TREND_ANALYSIS = "trend_analysis"


class JobStatus(str, Enum):
    """Job lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# Allowed status transitions. Terminal states have no way out.
TRANSITIONS = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class LogLevel(str, Enum):
    """Severity of a job log entry."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class Job(BaseModel):
    """A unit of queued, possibly retried generation work."""
    id: str = Field(default_factory=new_id)
    kind: JobKind
    status: JobStatus = JobStatus.PENDING
    priority: int = 0  # advisory only, the queue is FIFO
    payload: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Any] = None
    error: Optional[str] = None
    credential_id: Optional[str] = None
    progress: int = Field(default=0, ge=0, le=100)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class LogEntry(BaseModel):
    """One immutable audit line attached to a job."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    job_id: str
    level: LogLevel = LogLevel.INFO
    message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)


class Credential(BaseModel):
    """A provider access credential tracked by the key pool."""
    id: str
    secret: SecretStr
    alias: str = ""
    tags: List[str] = Field(default_factory=list)
    priority: int = 0
    last_used_at: Optional[datetime] = None
    total_usage: int = 0
    fail_count: int = 0
    is_active: bool = True


class QueueConfig(BaseModel):
    """Runtime queue settings persisted alongside the job data."""
    max_concurrent: int = Field(default=3, ge=1)
    task_timeout: float = Field(default=300.0, gt=0)  # seconds per attempt
    max_retries: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=3.0, ge=0)  # seconds between attempts

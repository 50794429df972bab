"""Domain models for the export job queue and agent dispatch."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class HandoffMode(str, Enum):
    """How the queue consumer hands a claimed job to the Agent Executor."""

    MAILBOX = "mailbox"
    DIRECT = "direct"


@dataclass(slots=True)
class JobCreate:
    """Producer input for enqueuing an export job."""

    organization_id: int
    list_name: str
    user_id: int | None = None
    priority: int = 0


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI and orchestrator logic."""

    id: int
    organization_id: int
    user_id: int | None
    list_name: str
    status: JobStatus
    priority: int
    retry_count: int
    started_at: datetime | None
    completed_at: datetime | None
    agent_session_key: str | None
    result_file_path: str | None
    row_count: int | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobLogView:
    """One append-only log entry narrating job progress."""

    log_id: int
    job_id: int
    level: LogLevel
    message: str
    created_at: datetime


@dataclass(slots=True)
class JobDetails:
    """Job with its most recent log entries, newest first."""

    job: JobView
    logs: list[JobLogView] = field(default_factory=list)


@dataclass(slots=True)
class SpawnRequest:
    """Single-slot mailbox message asking the relay to dispatch one job."""

    job_id: int
    list_name: str
    model: str | None
    timestamp: int


@dataclass(slots=True)
class AgentTask:
    """Task description submitted to the Agent Executor."""

    message: str
    name: str
    session_key: str


@dataclass(slots=True)
class DispatchResult:
    """Outcome of one dispatch or mailbox handoff attempt."""

    accepted: bool
    session_key: str | None = None
    status_code: int | None = None
    error: str | None = None


@dataclass(slots=True)
class OrganizationCreate:
    """Operator input for registering an organization."""

    name: str
    slug: str
    is_active: bool = True


@dataclass(slots=True)
class OrganizationView:
    """Organization that owns export jobs; its slug names export files."""

    id: int
    name: str
    slug: str
    is_active: bool
    created_at: datetime

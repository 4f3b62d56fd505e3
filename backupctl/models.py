"""Data models for backup jobs and metrics."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class JobType(str, Enum):
    """Kinds of backup a job can produce."""
    FULL = "full"
    INCREMENTAL = "incremental"
    LOG = "log"
    FILES = "files"
    CONFIG = "config"


class JobStatus(str, Enum):
    """Job lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    VERIFIED = "verified"


class VerificationStatus(str, Enum):
    """Outcome of the verification pipeline for a job."""
    UNSET = "unset"
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


SUCCESSFUL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.VERIFIED})
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.VERIFIED, JobStatus.FAILED})


class BackupJob(BaseModel):
    """A single backup attempt."""
    id: str
    type: JobType
    status: JobStatus = JobStatus.PENDING
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    size_bytes: Optional[int] = None
    location: str
    verification_status: VerificationStatus = VerificationStatus.UNSET
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        use_enum_values = False

    @property
    def successful(self) -> bool:
        return self.status in SUCCESSFUL_STATUSES

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def age_days(self, now: datetime) -> int:
        """Whole days elapsed since the job started."""
        return int((now - self.started_at).total_seconds() // 86400)


class JobFilter(BaseModel):
    """Selection criteria for listing jobs. Empty criteria match everything."""
    types: Optional[List[JobType]] = None
    statuses: Optional[List[JobStatus]] = None
    limit: Optional[int] = None

    def matches(self, job: BackupJob) -> bool:
        if self.types is not None and job.type not in self.types:
            return False
        if self.statuses is not None and job.status not in self.statuses:
            return False
        return True


class ExecutionResult(BaseModel):
    """What the executor reports back for one successful attempt."""
    size_bytes: int
    metadata: Dict[str, Any] = Field(default_factory=dict)


class VerificationResult(BaseModel):
    success: bool
    message: str


class BackupMetrics(BaseModel):
    """Rollup statistics derived from the registry."""
    total_backups: int
    successful_backups: int
    failed_backups: int
    average_duration_ms: float
    total_storage_bytes: int
    last_successful_backup: str
    next_scheduled_backup: str
    retention_compliance: bool

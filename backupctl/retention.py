"""Retention sweeps over the job registry."""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

from .capabilities import StorageCapability
from .config import RetentionConfig
from .errors import RetentionError
from .models import BackupJob, JobStatus, JobType, utcnow
from .registry import JobRegistry

logger = logging.getLogger(__name__)

# Incrementals and logs are superseded by the next full backup.
SHORT_LIVED_DAYS = 7


class SweepResult(BaseModel):
    deleted: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class RetentionManager:
    """Deletes jobs and their artifacts once they outlive their retention window."""

    def __init__(
        self,
        registry: JobRegistry,
        storage: StorageCapability,
        retention: RetentionConfig,
        clock: Callable[[], datetime] = utcnow,
        secondary: Optional[StorageCapability] = None,
        secondary_location: Optional[Callable[[BackupJob], str]] = None,
    ):
        self.registry = registry
        self.storage = storage
        self.retention = retention
        self.clock = clock
        self.secondary = secondary
        self.secondary_location = secondary_location

    def window_days(self, job_type: JobType) -> Optional[int]:
        """Retention window for a job type, or None if the sweep keeps it forever."""
        if job_type == JobType.FULL:
            return self.retention.daily_backups
        if job_type in (JobType.INCREMENTAL, JobType.LOG):
            return SHORT_LIVED_DAYS
        return None

    def is_expired(self, job: BackupJob, now: datetime) -> bool:
        if not job.terminal:
            return False
        window = self.window_days(job.type)
        return window is not None and job.age_days(now) > window

    def sweep(self) -> SweepResult:
        now = self.clock()
        result = SweepResult()

        for job in self.registry.list():
            if not self.is_expired(job, now):
                continue
            try:
                self._delete_artifact(job)
            except RetentionError as e:
                logger.error(str(e), exc_info=e.cause)
                result.errors.append(job.id)
                continue
            self.registry.delete(job.id)
            result.deleted.append(job.id)
            logger.info("Deleted expired %s backup %s (%d days old)", job.type.value, job.id, job.age_days(now))

        logger.info("Cleaned up %d old backups", len(result.deleted))
        return result

    def _delete_artifact(self, job: BackupJob) -> None:
        try:
            # A job that failed before writing has nothing to delete.
            if job.status == JobStatus.FAILED and not self.storage.exists(job.location):
                return
            self.storage.delete(job.location)
        except Exception as e:
            raise RetentionError(job.id, job.location, e) from e

        if self.secondary is not None and job.metadata.get("replicated"):
            location = self.secondary_location(job) if self.secondary_location else job.location
            try:
                self.secondary.delete(location)
            except Exception:
                logger.warning("Could not delete secondary copy %s of job %s", location, job.id, exc_info=True)

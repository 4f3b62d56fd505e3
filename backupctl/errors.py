"""Exception hierarchy for the backup engine.

Only ConfigurationError, InvalidTransition, JobNotFound and
OrchestratorClosed are raised to callers of the orchestrator. The rest are
raised inside a component and caught at the orchestrator, scheduler or sweep
boundary, where they are recorded on the job or logged.
"""

from typing import Optional


class BackupError(Exception):
    """Base class for backupctl errors."""


class ConfigurationError(BackupError):
    """Invalid configuration. Fatal at startup."""


class InvalidTransition(BackupError):
    """A caller attempted an illegal job state change."""

    def __init__(self, job_id: str, current: str, attempted: str):
        self.job_id = job_id
        self.current = current
        self.attempted = attempted
        super().__init__(f"Job {job_id}: cannot move from {current} to {attempted}")


class JobNotFound(BackupError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class OrchestratorClosed(BackupError):
    """A backup was triggered after the orchestrator was closed."""


class ExecutionError(BackupError):
    """The dump or storage capability failed during a backup attempt."""


class NoBaseBackup(ExecutionError):
    """An incremental or log backup has no successful full backup to build on."""


class VerificationError(BackupError):
    """The verification pipeline could not confirm an artifact."""


class RetentionError(BackupError):
    """Artifact deletion failed during a retention sweep."""

    def __init__(self, job_id: str, location: str, cause: Optional[BaseException] = None):
        self.job_id = job_id
        self.location = location
        self.cause = cause
        super().__init__(f"Failed to delete artifact {location} for job {job_id}: {cause}")


class NotificationError(BackupError):
    """The notification transport failed."""

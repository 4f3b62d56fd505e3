"""backupctl - scheduling, execution, verification and retention of backups."""

from .archive import FileArchiver
from .config import BackupConfig, load_config
from .errors import (
    BackupError,
    ConfigurationError,
    ExecutionError,
    InvalidTransition,
    JobNotFound,
    NoBaseBackup,
    NotificationError,
    OrchestratorClosed,
    RetentionError,
    VerificationError,
)
from .models import BackupJob, BackupMetrics, JobStatus, JobType, VerificationStatus
from .orchestrator import Orchestrator, build_orchestrator
from .registry import JobRegistry, MemoryJobRegistry
from .storage import FileJobRegistry

__version__ = "1.0.0"

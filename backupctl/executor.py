"""Backup executor: one dump, one stored artifact per call."""

import logging
from typing import Any, Callable, Dict, Optional, Sequence

from .artifacts import ArtifactCodec, checksum
from .capabilities import ArchiveCapability, DumpCapability, StorageCapability
from .errors import ExecutionError
from .models import BackupJob, ExecutionResult, JobType

logger = logging.getLogger(__name__)

BACKUP_METHODS = {
    JobType.FULL: "full_dump",
    JobType.INCREMENTAL: "incremental_dump",
    JobType.LOG: "log_archive",
    JobType.FILES: "file_archive",
    JobType.CONFIG: "config_archive",
}


class BackupExecutor:
    """Performs backup attempts against one target.

    The executor never touches the job registry; it hands an
    ``ExecutionResult`` back to the orchestrator. Every failure is raised as
    ``ExecutionError``.
    """

    def __init__(
        self,
        dump: DumpCapability,
        storage: StorageCapability,
        target: str = "default",
        codec: Optional[ArtifactCodec] = None,
        secondary: Optional[StorageCapability] = None,
        secondary_location: Optional[Callable[[BackupJob], str]] = None,
        archiver: Optional[ArchiveCapability] = None,
        file_paths: Sequence[str] = (),
        config_paths: Sequence[str] = (),
    ):
        self.dump = dump
        self.storage = storage
        self.target = target
        self.codec = codec or ArtifactCodec(compress=False)
        self.secondary = secondary
        self.secondary_location = secondary_location
        self.archiver = archiver
        self.file_paths = list(file_paths)
        self.config_paths = list(config_paths)

    def run_full(self, job: BackupJob) -> ExecutionResult:
        return self._run(job, lambda: self.dump.dump_full(self.target))

    def run_incremental(self, job: BackupJob, base: BackupJob) -> ExecutionResult:
        return self._run(job, lambda: self.dump.dump_incremental(self.target, base), base)

    def run_log(self, job: BackupJob, base: BackupJob) -> ExecutionResult:
        return self._run(job, lambda: self.dump.dump_log(self.target, base), base)

    def run_files(self, job: BackupJob) -> ExecutionResult:
        return self._run_archive(job, self.file_paths)

    def run_config(self, job: BackupJob) -> ExecutionResult:
        return self._run_archive(job, self.config_paths)

    def _run_archive(self, job: BackupJob, paths: Sequence[str]) -> ExecutionResult:
        if self.archiver is None:
            raise ExecutionError("No file archiver configured")
        if not paths:
            raise ExecutionError(f"No paths configured for {job.type.value} backups")
        result = self._run(job, lambda: self.archiver.archive(paths))
        result.metadata["archive_format"] = self.archiver.archive_format
        result.metadata["paths"] = list(paths)
        return result

    def _run(
        self,
        job: BackupJob,
        produce: Callable[[], bytes],
        base: Optional[BackupJob] = None,
    ) -> ExecutionResult:
        try:
            raw = produce()
            if not isinstance(raw, (bytes, bytearray)):
                raise ExecutionError(f"Dump returned {type(raw).__name__}, expected bytes")
            data = self.codec.encode(bytes(raw))
            self.storage.write(job.location, data)
        except ExecutionError:
            raise
        except Exception as e:
            raise ExecutionError(str(e) or type(e).__name__) from e

        metadata: Dict[str, Any] = {
            "backup_method": BACKUP_METHODS.get(job.type, job.type.value),
            "target": self.target,
            "compression": self.codec.compress,
            "encryption": self.codec.encrypt,
            "checksum": checksum(data),
            "raw_size_bytes": len(raw),
        }
        if base is not None:
            metadata["base_backup"] = base.id
        if self.secondary is not None:
            metadata["replicated"] = self._replicate(job, data)

        logger.info("Wrote %s artifact for job %s (%d bytes)", job.type.value, job.id, len(data))
        return ExecutionResult(size_bytes=len(data), metadata=metadata)

    def _replicate(self, job: BackupJob, data: bytes) -> bool:
        location = self.secondary_location(job) if self.secondary_location else job.location
        try:
            self.secondary.write(location, data)
        except Exception:
            logger.error("Secondary copy of job %s to %s failed", job.id, location, exc_info=True)
            return False
        return True

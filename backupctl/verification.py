"""Verification of stored backup artifacts."""

import logging
import re
import sqlite3
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .artifacts import ArtifactCodec, checksum
from .capabilities import RestoreCapability, StorageCapability, ValidatorCapability
from .errors import VerificationError
from .models import BackupJob, JobType, VerificationResult

logger = logging.getLogger(__name__)

STRUCTURED_TYPES = (JobType.FULL, JobType.INCREMENTAL)
ARCHIVE_TYPES = (JobType.FILES, JobType.CONFIG)

SQL_STATEMENT = re.compile(
    r"^\s*(CREATE|INSERT|ALTER|COPY|BEGIN|SET|DROP|UPDATE|DELETE|COMMIT)\b",
    re.IGNORECASE | re.MULTILINE,
)


class VerificationEngine:
    """Checks that an artifact exists, is well formed and, optionally, restores.

    Verification only reports; it never changes the job it inspects.
    """

    def __init__(
        self,
        storage: StorageCapability,
        codec: Optional[ArtifactCodec] = None,
        validator: Optional[ValidatorCapability] = None,
        restore: Optional[RestoreCapability] = None,
        test_restore: bool = False,
        archive_validator: Optional[ValidatorCapability] = None,
    ):
        self.storage = storage
        self.codec = codec or ArtifactCodec(compress=False)
        self.validator = validator
        self.restore = restore
        self.test_restore = test_restore
        self.archive_validator = archive_validator

    def verify(self, job: BackupJob) -> VerificationResult:
        logger.info("Verifying backup %s at %s", job.id, job.location)
        try:
            if not self.storage.exists(job.location):
                return VerificationResult(success=False, message="Backup file not found")

            payload = None
            if job.type in STRUCTURED_TYPES:
                payload = self._decode(job)
                if self.validator is not None:
                    result = self.validator.validate(job, payload)
                    if not result.success:
                        return VerificationResult(
                            success=False, message=f"Invalid backup format: {result.message}"
                        )

            if job.type in ARCHIVE_TYPES:
                # Archives are checked by listing their members, not restored.
                payload = self._decode(job)
                if self.archive_validator is not None:
                    result = self.archive_validator.validate(job, payload)
                    if not result.success:
                        return VerificationResult(
                            success=False, message=f"Invalid backup format: {result.message}"
                        )
                return VerificationResult(success=True, message="Backup verification passed")

            if self.test_restore:
                if self.restore is None:
                    return VerificationResult(
                        success=False,
                        message="Test restore requested but no restore capability is configured",
                    )
                if payload is None:
                    payload = self._decode(job)
                result = self._test_restore(job, payload)
                if not result.success:
                    return VerificationResult(
                        success=False, message=f"Test restore failed: {result.message}"
                    )

            return VerificationResult(success=True, message="Backup verification passed")

        except Exception as e:
            return VerificationResult(success=False, message=f"Verification error: {e}")

    def _decode(self, job: BackupJob) -> bytes:
        data = self.storage.read(job.location)
        expected = job.metadata.get("checksum")
        if expected and checksum(data) != expected:
            raise VerificationError("checksum mismatch")
        return self.codec.decode(
            data,
            compressed=bool(job.metadata.get("compression", False)),
            encrypted=bool(job.metadata.get("encryption", False)),
        )

    def _test_restore(self, job: BackupJob, payload: bytes) -> VerificationResult:
        logger.info("Performing test restore for job %s", job.id)
        with self.restore.environment() as environment:
            return self.restore.test_restore(environment, job, payload)


class SqlDumpValidator:
    """Accepts decoded artifacts that are UTF-8 text with SQL statements."""

    def validate(self, job: BackupJob, payload: bytes) -> VerificationResult:
        if not payload:
            return VerificationResult(success=False, message="artifact is empty")
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError:
            return VerificationResult(success=False, message="artifact is not UTF-8 text")
        if job.type == JobType.FULL and not SQL_STATEMENT.search(text):
            return VerificationResult(success=False, message="no SQL statements found")
        return VerificationResult(success=True, message="SQL dump looks valid")


class SqliteRestore:
    """Test-restores SQL text dumps into a scratch SQLite database."""

    @contextmanager
    def environment(self) -> Iterator[Path]:
        with tempfile.TemporaryDirectory(prefix="backupctl_restore_") as scratch:
            yield Path(scratch) / "restore.db"

    def test_restore(self, environment: Path, job: BackupJob, payload: bytes) -> VerificationResult:
        connection = sqlite3.connect(str(environment))
        try:
            connection.executescript(payload.decode("utf-8"))
            (tables,) = connection.execute(
                "SELECT count(*) FROM sqlite_master WHERE type = 'table'"
            ).fetchone()
        except (sqlite3.Error, UnicodeDecodeError) as e:
            return VerificationResult(success=False, message=str(e))
        finally:
            connection.close()
        if job.type == JobType.FULL and tables == 0:
            return VerificationResult(success=False, message="restored database has no tables")
        return VerificationResult(success=True, message=f"Restored {tables} table(s)")

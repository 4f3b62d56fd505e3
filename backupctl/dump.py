"""Dump capability backed by shell commands (pg_dump, mysqldump, tar, ...)."""

import logging
import subprocess
from typing import Optional

from .config import DumpConfig
from .errors import ExecutionError
from .models import BackupJob

logger = logging.getLogger(__name__)


class CommandDump:
    """Runs a configured command and captures its stdout as the backup bytes."""

    def __init__(
        self,
        full_command: Optional[str] = None,
        incremental_command: Optional[str] = None,
        log_command: Optional[str] = None,
        timeout: int = 3600,
    ):
        self.full_command = full_command
        self.incremental_command = incremental_command
        self.log_command = log_command
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: DumpConfig) -> "CommandDump":
        return cls(
            full_command=config.full_command,
            incremental_command=config.incremental_command,
            log_command=config.log_command,
            timeout=config.timeout,
        )

    def dump_full(self, target: str) -> bytes:
        return self._run("full", self.full_command, target=target)

    def dump_incremental(self, target: str, base: BackupJob) -> bytes:
        return self._run("incremental", self.incremental_command, target=target, **_base_fields(base))

    def dump_log(self, target: str, base: BackupJob) -> bytes:
        return self._run("log", self.log_command, target=target, **_base_fields(base))

    def _run(self, kind: str, template: Optional[str], **fields: str) -> bytes:
        if not template:
            raise ExecutionError(f"No {kind} dump command configured")
        command = template.format(**fields)
        logger.info("Executing %s dump for target %s", kind, fields.get("target"))

        try:
            result = subprocess.run(
                command,
                shell=True,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ExecutionError(f"Dump command timeout ({self.timeout} seconds)") from e
        except OSError as e:
            raise ExecutionError(f"Dump command could not start: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise ExecutionError(stderr or f"Exit code: {result.returncode}")
        return result.stdout


def _base_fields(base: BackupJob) -> dict:
    since = base.completed_at or base.started_at
    return {
        "base_id": base.id,
        "base_location": base.location,
        "since": since.isoformat(),
    }

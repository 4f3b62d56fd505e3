"""Interfaces to the collaborators the engine calls out to."""

from typing import Any, ContextManager, Dict, Protocol, Sequence, runtime_checkable

from .models import BackupJob, VerificationResult


@runtime_checkable
class DumpCapability(Protocol):
    """Produces backup bytes from a data source."""

    def dump_full(self, target: str) -> bytes: ...

    def dump_incremental(self, target: str, base: BackupJob) -> bytes: ...

    def dump_log(self, target: str, base: BackupJob) -> bytes: ...


@runtime_checkable
class StorageCapability(Protocol):
    def exists(self, location: str) -> bool: ...

    def read(self, location: str) -> bytes: ...

    def write(self, location: str, data: bytes) -> None: ...

    def delete(self, location: str) -> None: ...


@runtime_checkable
class ValidatorCapability(Protocol):
    """Format-specific structural check of a decoded artifact."""

    def validate(self, job: BackupJob, payload: bytes) -> VerificationResult: ...


@runtime_checkable
class RestoreCapability(Protocol):
    """Restores artifacts into throwaway environments.

    ``environment()`` must release whatever it acquired when the block exits,
    whether or not the restore succeeded.
    """

    def environment(self) -> ContextManager[Any]: ...

    def test_restore(self, environment: Any, job: BackupJob, payload: bytes) -> VerificationResult: ...


@runtime_checkable
class TransportCapability(Protocol):
    def post(self, url: str, payload: Dict[str, Any]) -> None: ...


@runtime_checkable
class ArchiveCapability(Protocol):
    """Packs local files and directories into one archive."""

    archive_format: str

    def archive(self, paths: Sequence[str]) -> bytes: ...

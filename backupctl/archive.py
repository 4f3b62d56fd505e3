"""File and config backups: directory trees packed into one archive."""

import fnmatch
import io
import logging
import tarfile
import zipfile
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple

from .errors import ExecutionError
from .models import BackupJob, VerificationResult

logger = logging.getLogger(__name__)

TAR_MODES = {"tar.gz": "w:gz", "tar": "w"}


class FileArchiver:
    """Packs files into a tar.gz, tar or zip archive held in memory.

    Directories are walked with ``include_patterns`` and filtered with
    ``exclude_patterns``; both are matched against the path relative to the
    directory. Files named directly are always included.
    """

    def __init__(
        self,
        archive_format: str = "tar.gz",
        include_patterns: Optional[Sequence[str]] = None,
        exclude_patterns: Optional[Sequence[str]] = None,
    ):
        if archive_format not in ("tar.gz", "tar", "zip"):
            raise ValueError(f"Unsupported archive format: {archive_format}")
        self.archive_format = archive_format
        self.include_patterns = list(include_patterns or ["**/*"])
        self.exclude_patterns = list(exclude_patterns or [])

    @classmethod
    def from_config(cls, config) -> "FileArchiver":
        return cls(
            archive_format=config.archive_format,
            include_patterns=config.include_patterns,
            exclude_patterns=config.exclude_patterns,
        )

    def collect(self, paths: Sequence[str]) -> List[Tuple[Path, str]]:
        """Files to archive as ``(path, name in archive)`` pairs, sorted by name."""
        found = {}
        for raw in paths:
            root = Path(raw)
            if root.is_file():
                found[root.name] = root
            elif root.is_dir():
                for path, relative in self._walk(root):
                    found[f"{root.name}/{relative}"] = path
            else:
                raise ExecutionError(f"Backup path {raw} does not exist")
        return [(found[name], name) for name in sorted(found)]

    def _walk(self, root: Path) -> Iterator[Tuple[Path, str]]:
        seen = set()
        for pattern in self.include_patterns:
            for path in root.glob(pattern):
                if not path.is_file() or path in seen:
                    continue
                seen.add(path)
                relative = path.relative_to(root).as_posix()
                if any(fnmatch.fnmatch(relative, ex) for ex in self.exclude_patterns):
                    continue
                yield path, relative

    def archive(self, paths: Sequence[str]) -> bytes:
        files = self.collect(paths)
        if not files:
            raise ExecutionError("No files matched the backup paths")

        buffer = io.BytesIO()
        if self.archive_format == "zip":
            with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                for path, name in files:
                    archive.write(path, arcname=name)
        else:
            with tarfile.open(fileobj=buffer, mode=TAR_MODES[self.archive_format]) as archive:
                for path, name in files:
                    archive.add(str(path), arcname=name)

        logger.info("Archived %d file(s) as %s", len(files), self.archive_format)
        return buffer.getvalue()

    def validate(self, job: BackupJob, payload: bytes) -> VerificationResult:
        """Check that an archive opens and lists at least one member."""
        archive_format = job.metadata.get("archive_format", self.archive_format)
        try:
            if archive_format == "zip":
                with zipfile.ZipFile(io.BytesIO(payload)) as archive:
                    broken = archive.testzip()
                    if broken is not None:
                        return VerificationResult(success=False, message=f"corrupt member {broken}")
                    count = len(archive.namelist())
            else:
                with tarfile.open(fileobj=io.BytesIO(payload), mode="r:*") as archive:
                    count = len(archive.getmembers())
        except (tarfile.TarError, zipfile.BadZipFile, EOFError, OSError) as e:
            return VerificationResult(success=False, message=f"unreadable {archive_format} archive: {e}")

        if count == 0:
            return VerificationResult(success=False, message="archive is empty")
        return VerificationResult(success=True, message=f"Archive holds {count} file(s)")

"""Tests for file and config archives."""

import io
import tarfile
import zipfile

import pytest

from backupctl.archive import FileArchiver
from backupctl.artifacts import ArtifactCodec, LocalStorage
from backupctl.errors import ExecutionError
from backupctl.executor import BackupExecutor
from backupctl.models import BackupJob, JobStatus, JobType
from backupctl.verification import VerificationEngine
from conftest import START, FakeDump


@pytest.fixture
def tree(tmp_path):
    root = tmp_path / "app"
    (root / "uploads").mkdir(parents=True)
    (root / "uploads" / "a.png").write_bytes(b"png")
    (root / "cache").mkdir()
    (root / "cache" / "tmp.bin").write_bytes(b"junk")
    (root / "settings.json").write_text("{}")
    (tmp_path / "nginx.conf").write_text("server {}")
    return tmp_path


def _tar_names(data):
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as archive:
        return sorted(archive.getnames())


def _job(job_type=JobType.FILES, **metadata):
    return BackupJob(
        id="j1", type=job_type, status=JobStatus.COMPLETED, started_at=START,
        location="backups/files/j1", metadata=metadata,
    )


class TestFileArchiver:
    def test_tar_gz_with_excludes(self, tree):
        """Test: Directories are walked, excluded paths are skipped, files are kept by name."""
        archiver = FileArchiver(exclude_patterns=["cache/*"])
        data = archiver.archive([str(tree / "app"), str(tree / "nginx.conf")])

        assert data[:2] == b"\x1f\x8b"
        assert _tar_names(data) == ["app/settings.json", "app/uploads/a.png", "nginx.conf"]

    def test_include_patterns(self, tree):
        archiver = FileArchiver(archive_format="tar", include_patterns=["*.json"])
        assert _tar_names(archiver.archive([str(tree / "app")])) == ["app/settings.json"]

    def test_zip(self, tree):
        data = FileArchiver(archive_format="zip").archive([str(tree / "app")])
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            assert sorted(archive.namelist()) == [
                "app/cache/tmp.bin", "app/settings.json", "app/uploads/a.png",
            ]
            assert archive.read("app/uploads/a.png") == b"png"

    def test_missing_path(self, tmp_path):
        with pytest.raises(ExecutionError, match="does not exist"):
            FileArchiver().archive([str(tmp_path / "nope")])

    def test_nothing_matched(self, tree):
        with pytest.raises(ExecutionError, match="No files matched"):
            FileArchiver(include_patterns=["*.sql"]).archive([str(tree / "app")])

    def test_unknown_format(self):
        with pytest.raises(ValueError):
            FileArchiver(archive_format="rar")

    def test_validate(self, tree):
        archiver = FileArchiver(archive_format="zip")
        data = archiver.archive([str(tree / "nginx.conf")])

        assert archiver.validate(_job(archive_format="zip"), data).success
        result = archiver.validate(_job(archive_format="zip"), data[:20])
        assert result.success is False
        assert "unreadable zip archive" in result.message


class TestArchiveBackups:
    def test_file_backup_round_trip(self, tree, tmp_path):
        """Test: A file backup is stored encoded and verifies by listing its members."""
        storage = LocalStorage(tmp_path / "store")
        codec = ArtifactCodec(compress=True)
        archiver = FileArchiver(exclude_patterns=["cache/*"])
        executor = BackupExecutor(
            FakeDump(), storage, codec=codec, archiver=archiver, file_paths=[str(tree / "app")]
        )

        job = _job()
        result = executor.run_files(job)
        assert result.metadata["backup_method"] == "file_archive"
        assert result.metadata["archive_format"] == "tar.gz"
        assert result.metadata["paths"] == [str(tree / "app")]

        job.metadata.update(result.metadata)
        engine = VerificationEngine(storage, codec=codec, archive_validator=archiver)
        assert engine.verify(job).success

        (tmp_path / "store" / job.location).write_bytes(b"garbage")
        assert engine.verify(job).success is False

    def test_config_backup_without_paths(self, tmp_path):
        executor = BackupExecutor(FakeDump(), LocalStorage(tmp_path), archiver=FileArchiver())
        with pytest.raises(ExecutionError, match="No paths configured for config backups"):
            executor.run_config(_job(JobType.CONFIG))

    def test_without_archiver(self, tmp_path):
        executor = BackupExecutor(FakeDump(), LocalStorage(tmp_path), file_paths=["/etc"])
        with pytest.raises(ExecutionError, match="No file archiver"):
            executor.run_files(_job())

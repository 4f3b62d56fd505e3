"""Tests for the executor, artifact codec, verification and notifications."""

import os
from contextlib import contextmanager

import pytest
import requests

from backupctl.artifacts import ArtifactCodec, LocalStorage, checksum
from backupctl.dump import CommandDump
from backupctl.errors import ExecutionError, NotificationError
from backupctl.executor import BackupExecutor
from backupctl.models import BackupJob, JobStatus, JobType, VerificationResult
from backupctl.notify import NotificationDispatcher, WebhookTransport
from backupctl.verification import SqlDumpValidator, SqliteRestore, VerificationEngine
from conftest import START, FakeDump, FakeStorage, make_config

KEY = os.urandom(32)


def _location(job_type, job_id):
    return f"backups/{job_type.value}/{job_id}"


def _run_full(registry, executor):
    """Run a full backup through the executor and record it like the orchestrator would."""
    job = registry.mark_running(registry.create(JobType.FULL, _location).id)
    result = executor.run_full(job)
    return registry.mark_completed(job.id, result.size_bytes, 5, result.metadata)


@pytest.fixture
def local(tmp_path):
    return LocalStorage(tmp_path)


class TestArtifactCodec:
    def test_compressed_and_encrypted(self):
        codec = ArtifactCodec(compress=True, key=KEY)
        data = b"CREATE TABLE t (id INTEGER);\n" * 100
        encoded = codec.encode(data)

        assert data not in encoded
        assert codec.decode(encoded, compressed=True, encrypted=True) == data

    def test_tampered_ciphertext_rejected(self):
        codec = ArtifactCodec(compress=False, key=KEY)
        encoded = bytearray(codec.encode(b"payload"))
        encoded[15] ^= 0xFF
        with pytest.raises(Exception):
            codec.decode(bytes(encoded), compressed=False, encrypted=True)

    def test_encrypted_without_key(self):
        encoded = ArtifactCodec(compress=False, key=KEY).encode(b"payload")
        with pytest.raises(ValueError):
            ArtifactCodec(compress=False).decode(encoded, compressed=False, encrypted=True)

    def test_bad_key_length(self):
        with pytest.raises(ValueError):
            ArtifactCodec(key=b"short")


class TestLocalStorage:
    def test_write_read_delete(self, local, tmp_path):
        local.write("backups/full/a", b"data")
        assert (tmp_path / "backups" / "full" / "a").read_bytes() == b"data"
        assert local.exists("backups/full/a")
        assert local.read("backups/full/a") == b"data"

        local.delete("backups/full/a")
        assert not local.exists("backups/full/a")
        local.delete("backups/full/a")

    def test_file_uri(self, tmp_path):
        storage = LocalStorage()
        location = f"file://{tmp_path}/x"
        storage.write(location, b"1")
        assert (tmp_path / "x").exists()


class TestExecutor:
    def test_full_backup_writes_artifact(self, registry, local):
        dump = FakeDump()
        executor = BackupExecutor(dump, local, target="db", codec=ArtifactCodec(compress=True, key=KEY))
        job = _run_full(registry, executor)

        stored = local.read(job.location)
        assert job.size_bytes == len(stored)
        assert job.metadata["backup_method"] == "full_dump"
        assert job.metadata["checksum"] == checksum(stored)
        assert job.metadata["compression"] is True
        assert job.metadata["encryption"] is True
        assert job.metadata["raw_size_bytes"] == len(dump.payload)
        assert dump.calls == [("full", "db")]

    def test_incremental_records_base(self, registry, local):
        executor = BackupExecutor(FakeDump(), local)
        base = _run_full(registry, executor)
        job = registry.mark_running(registry.create(JobType.INCREMENTAL, _location).id)

        result = executor.run_incremental(job, base)
        assert result.metadata["base_backup"] == base.id
        assert result.metadata["backup_method"] == "incremental_dump"

    def test_dump_failure_becomes_execution_error(self, registry, local):
        dump = FakeDump()
        dump.error = OSError("disk full")
        executor = BackupExecutor(dump, local)
        job = registry.mark_running(registry.create(JobType.FULL, _location).id)

        with pytest.raises(ExecutionError, match="disk full"):
            executor.run_full(job)
        assert not local.exists(job.location)

    def test_secondary_copy(self, registry, local):
        secondary = FakeStorage()
        executor = BackupExecutor(
            FakeDump(), local, secondary=secondary, secondary_location=lambda job: f"offsite/{job.id}"
        )
        job = _run_full(registry, executor)

        assert job.metadata["replicated"] is True
        assert secondary.objects[f"offsite/{job.id}"] == local.read(job.location)

    def test_secondary_failure_is_not_fatal(self, registry, local):
        class BrokenStorage(FakeStorage):
            def write(self, location, data):
                raise OSError("offsite unreachable")

        executor = BackupExecutor(FakeDump(), local, secondary=BrokenStorage())
        job = _run_full(registry, executor)
        assert job.status == JobStatus.COMPLETED
        assert job.metadata["replicated"] is False


class TestCommandDump:
    def test_captures_stdout(self):
        dump = CommandDump(full_command="printf 'CREATE TABLE {target} (id INTEGER);'")
        assert dump.dump_full("users") == b"CREATE TABLE users (id INTEGER);"

    def test_incremental_gets_base_fields(self):
        base = BackupJob(
            id="abc", type=JobType.FULL, status=JobStatus.COMPLETED,
            started_at=START, completed_at=START, location="backups/full/abc",
        )
        dump = CommandDump(incremental_command="printf '%s' '{base_id} {base_location} {since}'")
        output = dump.dump_incremental("db", base).decode()
        assert output == f"abc backups/full/abc {START.isoformat()}"

    def test_nonzero_exit(self):
        dump = CommandDump(full_command="echo 'pg_dump: connection refused' >&2; exit 3")
        with pytest.raises(ExecutionError, match="connection refused"):
            dump.dump_full("db")

    def test_exit_code_without_stderr(self):
        with pytest.raises(ExecutionError, match="Exit code: 1"):
            CommandDump(full_command="exit 1").dump_full("db")

    def test_missing_command(self):
        with pytest.raises(ExecutionError, match="No full dump command"):
            CommandDump().dump_full("db")

    def test_timeout(self):
        with pytest.raises(ExecutionError, match="timeout"):
            CommandDump(full_command="sleep 5", timeout=1).dump_full("db")


class TestVerificationEngine:
    def test_roundtrip_passes(self, registry, local):
        """Test: A compressed, encrypted SQL dump decodes and validates."""
        codec = ArtifactCodec(compress=True, key=KEY)
        job = _run_full(registry, BackupExecutor(FakeDump(), local, codec=codec))
        engine = VerificationEngine(local, codec=codec, validator=SqlDumpValidator())

        result = engine.verify(job)
        assert result.success
        assert result.message == "Backup verification passed"

    def test_missing_artifact(self, registry, local):
        """Test: Verification of a deleted artifact fails without touching the job."""
        job = _run_full(registry, BackupExecutor(FakeDump(), local))
        local.delete(job.location)

        result = VerificationEngine(local).verify(job)
        assert result.success is False
        assert result.message == "Backup file not found"
        assert registry.get(job.id) == job

    def test_checksum_mismatch(self, registry, local, tmp_path):
        job = _run_full(registry, BackupExecutor(FakeDump(), local))
        (tmp_path / job.location).write_bytes(b"CREATE TABLE corrupted (id INTEGER);")

        result = VerificationEngine(local).verify(job)
        assert result.success is False
        assert "checksum mismatch" in result.message

    def test_invalid_format(self, registry, local):
        job = _run_full(registry, BackupExecutor(FakeDump(payload=b"not a dump"), local))
        result = VerificationEngine(local, validator=SqlDumpValidator()).verify(job)
        assert result.success is False
        assert result.message.startswith("Invalid backup format")

    def test_log_backups_skip_format_check(self, registry, local):
        executor = BackupExecutor(FakeDump(payload=b"\x00\x01binary wal"), local)
        base = _run_full(registry, BackupExecutor(FakeDump(), local))
        job = registry.mark_running(registry.create(JobType.LOG, _location).id)
        result = executor.run_log(job, base)
        job = registry.mark_completed(job.id, result.size_bytes, 1, result.metadata)

        assert VerificationEngine(local, validator=SqlDumpValidator()).verify(job).success

    def test_sqlite_test_restore(self, registry, local):
        job = _run_full(registry, BackupExecutor(FakeDump(), local))
        engine = VerificationEngine(local, restore=SqliteRestore(), test_restore=True)
        assert engine.verify(job).success

    def test_broken_restore(self, registry, local):
        job = _run_full(registry, BackupExecutor(FakeDump(payload=b"CREATE TABLE (;"), local))
        engine = VerificationEngine(local, restore=SqliteRestore(), test_restore=True)

        result = engine.verify(job)
        assert result.success is False
        assert result.message.startswith("Test restore failed")

    def test_restore_environment_is_torn_down(self, registry, local):
        events = []

        class RecordingRestore:
            @contextmanager
            def environment(self):
                events.append("setup")
                try:
                    yield "scratch"
                finally:
                    events.append("teardown")

            def test_restore(self, environment, job, payload):
                raise RuntimeError("restore crashed")

        job = _run_full(registry, BackupExecutor(FakeDump(), local))
        result = VerificationEngine(local, restore=RecordingRestore(), test_restore=True).verify(job)
        assert result.success is False
        assert "restore crashed" in result.message
        assert events == ["setup", "teardown"]

    def test_test_restore_without_capability_fails(self, registry, local):
        job = _run_full(registry, BackupExecutor(FakeDump(), local))
        result = VerificationEngine(local, test_restore=True).verify(job)
        assert result.success is False
        assert "no restore capability" in result.message


class TestNotifications:
    def _job(self, registry):
        job = registry.mark_running(registry.create(JobType.FULL, "backups/full/x").id)
        return registry.mark_failed(job.id, "disk full")

    def test_payload(self, registry, transport, clock):
        dispatcher = NotificationDispatcher(transport, make_config().notification, clock=clock)
        job = self._job(registry)

        assert dispatcher.notify(job, False) is True
        url, payload = transport.posts[0]
        assert url == "https://hooks.example.com/fail"
        assert payload == {
            "backup_id": job.id,
            "type": "full",
            "status": "failed",
            "started_at": START.isoformat(),
            "completed_at": START.isoformat(),
            "duration_ms": None,
            "size_bytes": None,
            "error_message": "disk full",
            "timestamp": START.isoformat(),
        }

    def test_transport_errors_are_swallowed(self, registry, clock):
        class Broken:
            def post(self, url, payload):
                raise NotificationError("503")

        dispatcher = NotificationDispatcher(Broken(), make_config().notification, clock=clock)
        assert dispatcher.notify(self._job(registry), False) is False

    def test_webhook_transport(self):
        class Response:
            def __init__(self, status):
                self.status = status

            def raise_for_status(self):
                if self.status >= 400:
                    raise requests.HTTPError(f"{self.status} Server Error")

        class Session:
            def __init__(self, status):
                self.status = status
                self.calls = []

            def post(self, url, json=None, timeout=None):
                self.calls.append((url, json, timeout))
                return Response(self.status)

        ok = Session(200)
        WebhookTransport(timeout=3, session=ok).post("https://hooks.example.com/ok", {"a": 1})
        assert ok.calls == [("https://hooks.example.com/ok", {"a": 1}, 3)]

        with pytest.raises(NotificationError):
            WebhookTransport(session=Session(500)).post("https://hooks.example.com/ok", {})


def test_sql_validator():
    job = BackupJob(id="x", type=JobType.FULL, status=JobStatus.COMPLETED, started_at=START, location="x")
    validator = SqlDumpValidator()
    assert validator.validate(job, b"-- dump\nCREATE TABLE a (id int);") == VerificationResult(
        success=True, message="SQL dump looks valid"
    )
    assert not validator.validate(job, b"").success
    assert not validator.validate(job, b"\xff\xfe").success

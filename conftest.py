"""Shared fixtures and fake collaborators for the backupctl test suite."""

import os
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from backupctl.config import BackupConfig
from backupctl.models import BackupJob, ExecutionResult, VerificationResult
from backupctl.notify import NotificationDispatcher
from backupctl.orchestrator import Orchestrator
from backupctl.registry import MemoryJobRegistry
from backupctl.retention import RetentionManager

START = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeStorage:
    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.deleted: List[str] = []
        self.fail_delete = False

    def exists(self, location: str) -> bool:
        return location in self.objects

    def read(self, location: str) -> bytes:
        return self.objects[location]

    def write(self, location: str, data: bytes) -> None:
        self.objects[location] = data

    def delete(self, location: str) -> None:
        self.deleted.append(location)
        if self.fail_delete:
            raise OSError("storage unavailable")
        self.objects.pop(location, None)


class FakeDump:
    def __init__(self, payload: bytes = b"CREATE TABLE t (id INTEGER);\nINSERT INTO t VALUES (1);\n"):
        self.payload = payload
        self.calls: List[tuple] = []
        self.error: Optional[Exception] = None

    def _result(self, *call) -> bytes:
        self.calls.append(call)
        if self.error is not None:
            raise self.error
        return self.payload

    def dump_full(self, target):
        return self._result("full", target)

    def dump_incremental(self, target, base):
        return self._result("incremental", target, base.id)

    def dump_log(self, target, base):
        return self._result("log", target, base.id)


class FakeExecutor:
    """Executor returning canned sizes, optionally blocking until released."""

    def __init__(self, size_bytes: int = 1000):
        self.size_bytes = size_bytes
        self.error: Optional[Exception] = None
        self.gate: Optional[threading.Event] = None
        self.started = threading.Semaphore(0)
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()
        self.calls: List[tuple] = []

    def _run(self, *call) -> ExecutionResult:
        with self._lock:
            self.calls.append(call)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.started.release()
        try:
            if self.gate is not None:
                self.gate.wait(timeout=5)
            if self.error is not None:
                raise self.error
            return ExecutionResult(size_bytes=self.size_bytes, metadata={"backup_method": "fake"})
        finally:
            with self._lock:
                self.active -= 1

    def run_full(self, job: BackupJob) -> ExecutionResult:
        return self._run("full", job.id)

    def run_incremental(self, job: BackupJob, base: BackupJob) -> ExecutionResult:
        return self._run("incremental", job.id, base.id)

    def run_log(self, job: BackupJob, base: BackupJob) -> ExecutionResult:
        return self._run("log", job.id, base.id)

    def run_files(self, job: BackupJob) -> ExecutionResult:
        return self._run("files", job.id)

    def run_config(self, job: BackupJob) -> ExecutionResult:
        return self._run("config", job.id)


class FakeVerifier:
    def __init__(self, success: bool = True, message: str = "Backup verification passed"):
        self.result = VerificationResult(success=success, message=message)
        self.restore = None
        self.verified: List[str] = []

    def verify(self, job: BackupJob) -> VerificationResult:
        self.verified.append(job.id)
        return self.result


class FakeTransport:
    def __init__(self, error: Optional[Exception] = None):
        self.posts: List[tuple] = []
        self.error = error

    def post(self, url, payload):
        self.posts.append((url, payload))
        if self.error is not None:
            raise self.error


def make_config(**overrides) -> BackupConfig:
    """Build a config without reading the environment of the test runner."""
    data = {
        "data_dir": "unused",
        "storage": {"primary_location": "backups", "compression_enabled": False},
        "notification": {
            "success_webhook": "https://hooks.example.com/ok",
            "failure_webhook": "https://hooks.example.com/fail",
        },
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            data[key] = {**data[key], **value}
        else:
            data[key] = value
    return BackupConfig(**data)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("BACKUPCTL_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return MemoryJobRegistry(clock=clock)


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def orchestrator_factory(registry, executor, verifier, storage, transport, clock):
    """Build orchestrators around the shared fakes and close them afterwards."""
    created = []

    def build(config: Optional[BackupConfig] = None, **kwargs) -> Orchestrator:
        config = config or make_config()
        orchestrator = Orchestrator(
            registry=kwargs.get("registry", registry),
            executor=kwargs.get("executor", executor),
            verifier=kwargs.get("verifier", verifier),
            retention=RetentionManager(registry, storage, config.retention, clock=clock),
            dispatcher=NotificationDispatcher(kwargs.get("transport", transport), config.notification, clock=clock),
            config=config,
            clock=clock,
            slot_poll_interval=kwargs.get("slot_poll_interval", 0.05),
        )
        created.append(orchestrator)
        return orchestrator

    yield build
    for orchestrator in created:
        orchestrator.close(wait=True)

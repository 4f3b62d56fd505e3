"""Job registry and the backup job state machine."""

import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Union

from .errors import InvalidTransition, JobNotFound
from .models import BackupJob, JobFilter, JobStatus, JobType, VerificationStatus, utcnow

Clock = Callable[[], datetime]


class JobRegistry(ABC):
    """Authoritative store of backup jobs and the only writer of job state.

    Subclasses provide the storage primitives; transitions, id allocation and
    per-job locking live here. Everything returned is a copy, so callers can
    never change a stored job except through the ``mark_*`` methods.
    """

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._issued: Set[str] = set()
        self._claim_lock = threading.Lock()

    # Storage primitives

    @abstractmethod
    def _insert(self, job: BackupJob) -> None:
        """Store a new job."""

    @abstractmethod
    def _load(self, job_id: str) -> Optional[BackupJob]:
        """Return the stored job or None."""

    @abstractmethod
    def _save(self, job: BackupJob) -> None:
        """Replace a stored job."""

    @abstractmethod
    def _remove(self, job_id: str) -> bool:
        """Drop a stored job, returning whether it existed."""

    @abstractmethod
    def _all(self) -> Iterable[BackupJob]:
        """Every stored job, in any order."""

    # Locking

    def _lock_for(self, job_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(job_id)
            if lock is None:
                lock = self._locks[job_id] = threading.Lock()
            return lock

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        """Hold the store-wide lock used by ``mark_running_exclusive``."""
        with self._claim_lock:
            yield

    def _new_id(self) -> str:
        with self._guard:
            while True:
                job_id = uuid.uuid4().hex
                if job_id not in self._issued and self._load(job_id) is None:
                    self._issued.add(job_id)
                    return job_id

    def _transition(self, job_id: str, apply: Callable[[BackupJob], None]) -> BackupJob:
        with self._lock_for(job_id):
            job = self._load(job_id)
            if job is None:
                raise JobNotFound(job_id)
            apply(job)
            self._save(job)
            return job.model_copy(deep=True)

    # Public API

    def create(
        self,
        job_type: JobType,
        location: Union[str, Callable[[JobType, str], str]],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BackupJob:
        """Allocate a new pending job.

        ``location`` may be a string or a callable ``(type, id) -> location``
        for locations derived from the freshly allocated id.
        """
        job_type = JobType(job_type)
        job_id = self._new_id()
        resolved = location(job_type, job_id) if callable(location) else location
        job = BackupJob(
            id=job_id,
            type=job_type,
            status=JobStatus.PENDING,
            started_at=self.clock(),
            location=resolved,
            metadata=dict(metadata or {}),
        )
        with self._lock_for(job_id):
            self._insert(job)
        return job.model_copy(deep=True)

    def mark_running(self, job_id: str) -> BackupJob:
        def apply(job: BackupJob) -> None:
            if job.status != JobStatus.PENDING:
                raise InvalidTransition(job.id, job.status.value, JobStatus.RUNNING.value)
            job.status = JobStatus.RUNNING

        return self._transition(job_id, apply)

    def mark_running_exclusive(self, job_id: str) -> Optional[BackupJob]:
        """Move a pending job to running unless a job of the same type and
        target is already running. Returns None when the slot is taken.

        The check and the update happen under ``_exclusive()``, so two
        processes sharing a store never both claim the slot.
        """
        with self._lock_for(job_id):
            with self._exclusive():
                job = self._load(job_id)
                if job is None:
                    raise JobNotFound(job_id)
                if job.status != JobStatus.PENDING:
                    raise InvalidTransition(job.id, job.status.value, JobStatus.RUNNING.value)
                target = job.metadata.get("target")
                for other in self._all():
                    if (
                        other.id != job.id
                        and other.type == job.type
                        and other.status == JobStatus.RUNNING
                        and other.metadata.get("target") == target
                    ):
                        return None
                job.status = JobStatus.RUNNING
                self._save(job)
                return job.model_copy(deep=True)

    def mark_completed(
        self,
        job_id: str,
        size_bytes: int,
        duration_ms: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BackupJob:
        def apply(job: BackupJob) -> None:
            if job.status != JobStatus.RUNNING:
                raise InvalidTransition(job.id, job.status.value, JobStatus.COMPLETED.value)
            job.status = JobStatus.COMPLETED
            job.completed_at = self.clock()
            job.size_bytes = int(size_bytes)
            job.duration_ms = int(duration_ms)
            job.error_message = None
            if metadata:
                job.metadata.update(metadata)

        return self._transition(job_id, apply)

    def mark_failed(self, job_id: str, error_message: str) -> BackupJob:
        def apply(job: BackupJob) -> None:
            if job.status not in (JobStatus.PENDING, JobStatus.RUNNING):
                raise InvalidTransition(job.id, job.status.value, JobStatus.FAILED.value)
            self._record_failure(job, error_message)

        return self._transition(job_id, apply)

    def cancel(self, job_id: str, error_message: str = "Job cancelled by user") -> BackupJob:
        """Fail a job that has not started. Running and finished jobs raise InvalidTransition."""
        def apply(job: BackupJob) -> None:
            if job.status != JobStatus.PENDING:
                raise InvalidTransition(job.id, job.status.value, "cancelled")
            self._record_failure(job, error_message)

        return self._transition(job_id, apply)

    def _record_failure(self, job: BackupJob, error_message: str) -> None:
        job.status = JobStatus.FAILED
        job.completed_at = self.clock()
        job.size_bytes = None
        job.duration_ms = None
        job.error_message = error_message or "Unknown error"

    def mark_verification(
        self,
        job_id: str,
        verification_status: VerificationStatus,
        message: Optional[str] = None,
    ) -> BackupJob:
        """Record a verification outcome. A pass promotes the job to verified."""
        verification_status = VerificationStatus(verification_status)

        def apply(job: BackupJob) -> None:
            if job.status != JobStatus.COMPLETED or verification_status == VerificationStatus.UNSET:
                raise InvalidTransition(
                    job.id, job.status.value, f"verification:{verification_status.value}"
                )
            job.verification_status = verification_status
            if message is not None:
                job.metadata["verification_message"] = message
            if verification_status == VerificationStatus.PASSED:
                job.status = JobStatus.VERIFIED

        return self._transition(job_id, apply)

    def delete(self, job_id: str) -> bool:
        """Remove a record. The caller must already have removed its artifact."""
        with self._lock_for(job_id):
            removed = self._remove(job_id)
        with self._guard:
            self._locks.pop(job_id, None)
        return removed

    def find(self, job_id: str) -> Optional[BackupJob]:
        job = self._load(job_id)
        return job.model_copy(deep=True) if job is not None else None

    def get(self, job_id: str) -> BackupJob:
        job = self.find(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def list(self, job_filter: Optional[JobFilter] = None) -> List[BackupJob]:
        """Snapshot of matching jobs, newest first by start time."""
        job_filter = job_filter or JobFilter()
        jobs = [job.model_copy(deep=True) for job in self._all() if job_filter.matches(job)]
        jobs.sort(key=lambda j: j.started_at, reverse=True)
        if job_filter.limit is not None:
            jobs = jobs[: job_filter.limit]
        return jobs

    def latest_successful(self, *job_types: JobType) -> Optional[BackupJob]:
        """Most recently started completed or verified job of the given types."""
        jobs = self.list(
            JobFilter(
                types=list(job_types) or None,
                statuses=[JobStatus.COMPLETED, JobStatus.VERIFIED],
                limit=1,
            )
        )
        return jobs[0] if jobs else None


class MemoryJobRegistry(JobRegistry):
    """Registry kept in a dict. Lost when the process exits."""

    def __init__(self, clock: Clock = utcnow):
        super().__init__(clock)
        self._jobs: Dict[str, BackupJob] = {}
        self._jobs_lock = threading.Lock()

    def _insert(self, job: BackupJob) -> None:
        with self._jobs_lock:
            self._jobs[job.id] = job.model_copy(deep=True)

    def _load(self, job_id: str) -> Optional[BackupJob]:
        with self._jobs_lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job is not None else None

    def _save(self, job: BackupJob) -> None:
        with self._jobs_lock:
            self._jobs[job.id] = job.model_copy(deep=True)

    def _remove(self, job_id: str) -> bool:
        with self._jobs_lock:
            return self._jobs.pop(job_id, None) is not None

    def _all(self) -> List[BackupJob]:
        with self._jobs_lock:
            return list(self._jobs.values())

"""Orchestrator: drives backup jobs from trigger to notification."""

import logging
import os
import socket
import sys
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from .archive import FileArchiver
from .artifacts import ArtifactCodec, LocalStorage
from .capabilities import (
    ArchiveCapability,
    DumpCapability,
    RestoreCapability,
    StorageCapability,
    TransportCapability,
    ValidatorCapability,
)
from .config import BackupConfig
from .dump import CommandDump
from .errors import InvalidTransition, JobNotFound, NoBaseBackup, OrchestratorClosed
from .executor import BackupExecutor
from .metrics import compute_metrics
from .models import (
    BackupJob,
    BackupMetrics,
    ExecutionResult,
    JobFilter,
    JobStatus,
    JobType,
    VerificationStatus,
    utcnow,
)
from .notify import NotificationDispatcher, WebhookTransport
from .registry import JobRegistry
from .retention import RetentionManager, SweepResult
from .storage import FileJobRegistry
from .verification import SqlDumpValidator, VerificationEngine

logger = logging.getLogger(__name__)

Work = Callable[[BackupJob], ExecutionResult]

INTERRUPTED = "Interrupted before completion"
SHUT_DOWN = "Orchestrator shut down before the job started"


def process_owner() -> str:
    """Identifies this process in job metadata as ``host:pid``."""
    return f"{socket.gethostname()}:{os.getpid()}"


def _process_alive(pid: int) -> bool:
    if sys.platform == "win32":
        # No cheap liveness check; assume the owner is still working.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class Orchestrator:
    """Creates jobs, runs them in the background and records every outcome.

    ``trigger_*`` return the pending job immediately; the attempt itself runs
    on a worker thread. At most one full backup of the target runs at a time,
    across every process sharing the registry. Further full jobs wait in
    ``pending``, in trigger order, without holding a worker thread.
    """

    def __init__(
        self,
        registry: JobRegistry,
        executor: BackupExecutor,
        verifier: VerificationEngine,
        retention: RetentionManager,
        dispatcher: NotificationDispatcher,
        config: BackupConfig,
        clock: Callable[[], datetime] = utcnow,
        slot_poll_interval: float = 1.0,
    ):
        self.registry = registry
        self.executor = executor
        self.verifier = verifier
        self.retention = retention
        self.dispatcher = dispatcher
        self.config = config
        self.clock = clock
        self.slot_poll_interval = slot_poll_interval
        self.owner = process_owner()

        self._pool = ThreadPoolExecutor(max_workers=config.max_workers, thread_name_prefix="backupctl")
        self._trigger_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._dispatch_lock = threading.Lock()
        self._in_flight: Dict[str, threading.Event] = {}
        self._full_queue: Deque[str] = deque()
        self._full_active: Optional[str] = None
        self._slot_timer: Optional[threading.Timer] = None
        self._queued: Set[str] = set()
        self._closed = False

        verification = config.verification
        if verification.enabled and verification.test_restore and getattr(verifier, "restore", None) is None:
            logger.warning("Test restore is enabled but no restore capability is wired; verification will fail")

    @property
    def target(self) -> str:
        return self.config.dump.target

    def location_for(self, job_type: JobType, job_id: str) -> str:
        return f"{self.config.storage.primary_location}/{job_type.value}/{job_id}"

    # Triggers

    def trigger_full_backup(self, skip_if_busy: bool = False) -> Optional[BackupJob]:
        """Create a full backup job and queue it for the background.

        With ``skip_if_busy`` (scheduled firings) nothing is created while
        another full backup of the target is pending or running, and None is
        returned. Jobs left behind by a dead process do not count as busy.
        """
        with self._trigger_lock:
            self._ensure_open()
            if skip_if_busy and self._full_in_flight():
                self.recover_interrupted()
                if self._full_in_flight():
                    logger.warning("Full backup of %s is already in progress, skipping", self.target)
                    return None
            job = self.registry.create(JobType.FULL, self.location_for, self._job_metadata())
            self._track(job.id)
            with self._state_lock:
                self._full_queue.append(job.id)
        logger.info("Created full backup job %s", job.id)
        self._dispatch_full()
        return job

    def trigger_incremental_backup(self) -> BackupJob:
        return self._trigger_chained(JobType.INCREMENTAL, self.executor.run_incremental)

    def trigger_log_backup(self) -> BackupJob:
        return self._trigger_chained(JobType.LOG, self.executor.run_log)

    def trigger_file_backup(self) -> BackupJob:
        return self._trigger_archive(JobType.FILES, self.executor.run_files)

    def trigger_config_backup(self) -> BackupJob:
        return self._trigger_archive(JobType.CONFIG, self.executor.run_config)

    def _trigger_chained(self, job_type: JobType, run: Callable[[BackupJob, BackupJob], ExecutionResult]) -> BackupJob:
        with self._trigger_lock:
            self._ensure_open()
            base = self.registry.latest_successful(JobType.FULL)
            metadata = self._job_metadata()
            metadata["base_backup"] = base.id if base else None
            job = self.registry.create(job_type, self.location_for, metadata)
            self._track(job.id)
        logger.info("Created %s backup job %s (base %s)", job_type.value, job.id, metadata["base_backup"])
        self._submit(job.id, lambda job_id: self._run_chained(job_id, run))
        return job

    def _trigger_archive(self, job_type: JobType, run: Work) -> BackupJob:
        with self._trigger_lock:
            self._ensure_open()
            job = self.registry.create(job_type, self.location_for, self._job_metadata())
            self._track(job.id)
        logger.info("Created %s backup job %s", job_type.value, job.id)
        self._submit(job.id, lambda job_id: self._execute(job_id, run))
        return job

    def _ensure_open(self) -> None:
        if self._closed:
            raise OrchestratorClosed("Orchestrator is closed; no new backups are accepted")

    def _full_in_flight(self) -> bool:
        busy = self.registry.list(
            JobFilter(types=[JobType.FULL], statuses=[JobStatus.PENDING, JobStatus.RUNNING])
        )
        return any(job.metadata.get("target", self.target) == self.target for job in busy)

    def _job_metadata(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "compression": self.config.storage.compression_enabled,
            "encryption": self.config.storage.encryption_enabled,
            "owner": self.owner,
        }

    # Background work

    def _track(self, job_id: str) -> None:
        with self._state_lock:
            self._in_flight[job_id] = threading.Event()

    def _settle(self, job_id: str) -> None:
        with self._state_lock:
            done = self._in_flight.pop(job_id, None)
        if done is not None:
            done.set()

    def _submit(self, job_id: str, run: Callable[[str], Any]) -> None:
        try:
            self._pool.submit(self._guarded, job_id, run)
        except RuntimeError:
            # Pool shut down between the trigger and the submit.
            self._abandon(job_id, SHUT_DOWN)

    def _abandon(self, job_id: str, error_message: str, pending_only: bool = False) -> None:
        with self._state_lock:
            if self._full_active == job_id:
                self._full_active = None
        fail = self.registry.cancel if pending_only else self.registry.mark_failed
        try:
            job = fail(job_id, error_message)
        except (InvalidTransition, JobNotFound) as e:
            logger.warning("Could not mark %s failed: %s", job_id, e)
        else:
            logger.error("Backup %s failed: %s", job.id, error_message)
            self.dispatcher.notify(job, False)
        finally:
            self._settle(job_id)

    def _guarded(self, job_id: str, run: Callable[[str], Any]) -> None:
        try:
            run(job_id)
        except Exception:
            # Never let a background failure go unnoticed or kill the worker.
            logger.error("Unexpected error while running job %s", job_id, exc_info=True)
        finally:
            self._settle(job_id)

    def _dispatch_full(self) -> None:
        """Start the oldest queued full backup once the target's slot is free."""
        with self._dispatch_lock:
            while True:
                with self._state_lock:
                    if self._full_active is not None or not self._full_queue:
                        return
                    job_id = self._full_queue[0]

                try:
                    claimed = self.registry.mark_running_exclusive(job_id)
                except (InvalidTransition, JobNotFound) as e:
                    # Cancelled or removed while it waited.
                    logger.info("Dropping queued full backup %s: %s", job_id, e)
                    with self._state_lock:
                        self._discard_queued(job_id)
                    self._settle(job_id)
                    continue

                if claimed is None:
                    logger.info("Full backup of %s is running elsewhere; %s waits", self.target, job_id)
                    self._dispatch_later()
                    return

                with self._state_lock:
                    self._discard_queued(job_id)
                    self._full_active = job_id
                self._submit(job_id, self._run_full)

    def _discard_queued(self, job_id: str) -> None:
        try:
            self._full_queue.remove(job_id)
        except ValueError:
            pass

    def _dispatch_later(self) -> None:
        with self._state_lock:
            if self._slot_timer is not None:
                return
            timer = threading.Timer(self.slot_poll_interval, self._on_slot_timer)
            timer.daemon = True
            self._slot_timer = timer
        timer.start()

    def _on_slot_timer(self) -> None:
        with self._state_lock:
            self._slot_timer = None
        self._dispatch_full()

    def _run_full(self, job_id: str) -> BackupJob:
        try:
            return self._execute(job_id, self.executor.run_full, claimed=True)
        finally:
            with self._state_lock:
                self._full_active = None
            self._dispatch_full()

    def _run_chained(self, job_id: str, run: Callable[[BackupJob, BackupJob], ExecutionResult]) -> BackupJob:
        job = self.registry.get(job_id)
        if job.status != JobStatus.PENDING:
            logger.info("Backup %s is %s, not starting it", job.id, job.status.value)
            return job
        base_id = job.metadata.get("base_backup")
        base = self.registry.find(base_id) if base_id else None
        if base is None or not base.successful:
            error = NoBaseBackup(f"No successful full backup to base {job.type.value} backup on")
            return self._fail(job_id, str(error))
        return self._execute(job_id, lambda running: run(running, base))

    def _execute(self, job_id: str, work: Work, claimed: bool = False) -> BackupJob:
        if claimed:
            job = self.registry.get(job_id)
        else:
            try:
                job = self.registry.mark_running(job_id)
            except InvalidTransition as e:
                logger.info("Not starting backup %s: %s", job_id, e)
                return self.registry.get(job_id)
        logger.info("Running %s backup %s", job.type.value, job.id)
        started = time.monotonic()

        try:
            result = work(job)
        except Exception as e:
            return self._fail(job_id, str(e) or type(e).__name__)

        duration_ms = int((time.monotonic() - started) * 1000)
        job = self.registry.mark_completed(job_id, result.size_bytes, duration_ms, result.metadata)
        logger.info("Backup %s completed (%d bytes, %d ms)", job.id, job.size_bytes, job.duration_ms)

        if self.config.verification.enabled:
            job = self._verify(job)

        self.dispatcher.notify(job, True)
        self.queue_retention_sweep()
        return job

    def _fail(self, job_id: str, error_message: str) -> BackupJob:
        job = self.registry.mark_failed(job_id, error_message)
        logger.error("Backup %s failed: %s", job.id, error_message)
        self.dispatcher.notify(job, False)
        self.queue_retention_sweep()
        return job

    def _verify(self, job: BackupJob) -> BackupJob:
        try:
            self.registry.mark_verification(job.id, VerificationStatus.PENDING)
            result = self.verifier.verify(job)
            outcome = VerificationStatus.PASSED if result.success else VerificationStatus.FAILED
            job = self.registry.mark_verification(job.id, outcome, result.message)
        except (InvalidTransition, JobNotFound) as e:
            # Another verification or a sweep got to the job first.
            logger.warning("Skipping verification of %s: %s", job.id, e)
            return self.registry.find(job.id) or job
        if result.success:
            logger.info("Backup %s verified", job.id)
        else:
            logger.warning("Backup %s failed verification: %s", job.id, result.message)
        return job

    def queue_retention_sweep(self) -> bool:
        """Run a retention sweep on the pool. At most one is queued at a time."""
        return self._queue_background("retention", self.retention.sweep)

    def queue_verification_sweep(self) -> bool:
        """Run ``verify_pending`` on the pool. At most one is queued at a time."""
        return self._queue_background("verification", self.verify_pending)

    def _queue_background(self, name: str, work: Callable[[], Any]) -> bool:
        with self._state_lock:
            if self._closed or name in self._queued:
                return False
            self._queued.add(name)
        try:
            self._pool.submit(self._background, name, work)
        except RuntimeError:
            # Pool shut down between the check and the submit.
            with self._state_lock:
                self._queued.discard(name)
            return False
        return True

    def _background(self, name: str, work: Callable[[], Any]) -> None:
        with self._state_lock:
            self._queued.discard(name)
        try:
            work()
        except Exception:
            logger.error("Background %s sweep failed", name, exc_info=True)

    # Operations for surrounding tooling

    def recover_interrupted(self) -> List[BackupJob]:
        """Fail pending and running jobs whose owning process has died.

        A job is orphaned when it records no owner, or when its owner ran on
        this host under a pid that is no longer alive. Jobs owned by other
        hosts are left alone.
        """
        recovered = []
        for job in self.registry.list(JobFilter(statuses=[JobStatus.PENDING, JobStatus.RUNNING])):
            if not self._orphaned(job):
                continue
            try:
                job = self.registry.mark_failed(job.id, INTERRUPTED)
            except (InvalidTransition, JobNotFound):
                continue
            logger.warning("Recovered interrupted %s backup %s", job.type.value, job.id)
            self.dispatcher.notify(job, False)
            recovered.append(job)
        return recovered

    def _orphaned(self, job: BackupJob) -> bool:
        owner = job.metadata.get("owner")
        if not owner:
            return True
        host, _, pid = owner.rpartition(":")
        if host != socket.gethostname() or not pid.isdigit():
            return False
        if int(pid) == os.getpid():
            return False
        return not _process_alive(int(pid))

    def cancel_job(self, job_id: str) -> BackupJob:
        """Cancel a job that has not started. Running and finished jobs raise InvalidTransition."""
        job = self.registry.cancel(job_id)
        with self._state_lock:
            self._discard_queued(job_id)
        logger.info("Cancelled %s backup %s", job.type.value, job.id)
        self.dispatcher.notify(job, False)
        self._settle(job_id)
        return job

    def get_running_jobs(self) -> List[BackupJob]:
        return self.registry.list(JobFilter(statuses=[JobStatus.RUNNING]))

    def verify_job(self, job_id: str) -> BackupJob:
        """Verify a completed job now. Raises InvalidTransition for any other status."""
        job = self.registry.get(job_id)
        if job.status != JobStatus.COMPLETED:
            raise InvalidTransition(job.id, job.status.value, "verification")
        return self._verify(job)

    def verify_pending(self) -> List[BackupJob]:
        """Verification sweep over completed jobs that are not yet confirmed.

        Covers unverified and failed verifications, and verifications left
        ``pending`` by a run that stopped halfway. Jobs this orchestrator is
        still working on are skipped.
        """
        unconfirmed = (VerificationStatus.UNSET, VerificationStatus.PENDING, VerificationStatus.FAILED)
        with self._state_lock:
            busy = set(self._in_flight)
        candidates = [
            job
            for job in self.registry.list(JobFilter(statuses=[JobStatus.COMPLETED]))
            if job.verification_status in unconfirmed and job.id not in busy
        ]
        return [self._verify(job) for job in candidates]

    def run_retention_sweep(self) -> SweepResult:
        return self.retention.sweep()

    def get_metrics(self) -> BackupMetrics:
        return compute_metrics(self.registry.list(), self.config, self.clock())

    def list_jobs(self, limit: int = 50) -> List[BackupJob]:
        return self.registry.list(JobFilter(limit=limit))

    def get_job(self, job_id: str) -> BackupJob:
        return self.registry.get(job_id)

    def wait_for(self, job_id: str, timeout: Optional[float] = None) -> BackupJob:
        """Block until the background run of ``job_id`` has finished."""
        with self._state_lock:
            done = self._in_flight.get(job_id)
        if done is not None and not done.wait(timeout):
            raise TimeoutError(f"Job {job_id} still running after {timeout}s")
        return self.registry.get(job_id)

    def close(self, wait: bool = True) -> None:
        """Stop accepting work.

        With ``wait`` every accepted job, queued full backups included, runs
        to the end first. Without it queued full backups are failed and only
        the jobs already on a worker finish.
        """
        with self._trigger_lock, self._state_lock:
            self._closed = True
            pending = list(self._in_flight.values())
        if wait:
            for done in pending:
                done.wait()
        else:
            with self._state_lock:
                queued = list(self._full_queue)
                self._full_queue.clear()
                timer, self._slot_timer = self._slot_timer, None
            if timer is not None:
                timer.cancel()
            for job_id in queued:
                # A job claimed in the meantime is left to finish.
                self._abandon(job_id, SHUT_DOWN, pending_only=True)
        self._pool.shutdown(wait=wait)


def build_orchestrator(
    config: BackupConfig,
    registry: Optional[JobRegistry] = None,
    dump: Optional[DumpCapability] = None,
    storage: Optional[StorageCapability] = None,
    secondary: Optional[StorageCapability] = None,
    transport: Optional[TransportCapability] = None,
    validator: Optional[ValidatorCapability] = None,
    restore: Optional[RestoreCapability] = None,
    archiver: Optional[ArchiveCapability] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Orchestrator:
    """Wire an orchestrator from configuration, filling in the local defaults.

    Jobs orphaned by a process that died mid-run are failed before the
    orchestrator is returned.
    """
    registry = registry or FileJobRegistry(config.data_dir, clock=clock)
    storage = storage or LocalStorage()
    if secondary is None and config.storage.secondary_location:
        secondary = LocalStorage()
    dump = dump or CommandDump.from_config(config.dump)
    archiver = archiver or FileArchiver.from_config(config.files)
    if transport is None and (config.notification.success_webhook or config.notification.failure_webhook):
        transport = WebhookTransport(timeout=config.notification.timeout)

    def secondary_location(job: BackupJob) -> str:
        return f"{config.storage.secondary_location}/{job.type.value}/{job.id}"

    codec = ArtifactCodec(
        compress=config.storage.compression_enabled,
        key=config.storage.key_bytes(),
    )
    executor = BackupExecutor(
        dump,
        storage,
        target=config.dump.target,
        codec=codec,
        secondary=secondary,
        secondary_location=secondary_location,
        archiver=archiver,
        file_paths=config.files.paths,
        config_paths=config.files.config_paths,
    )
    verifier = VerificationEngine(
        storage,
        codec=codec,
        validator=validator or SqlDumpValidator(),
        restore=restore,
        test_restore=config.verification.test_restore,
        archive_validator=archiver if isinstance(archiver, ValidatorCapability) else None,
    )
    retention = RetentionManager(
        registry,
        storage,
        config.retention,
        clock=clock,
        secondary=secondary,
        secondary_location=secondary_location,
    )
    dispatcher = NotificationDispatcher(transport, config.notification, clock=clock)
    orchestrator = Orchestrator(registry, executor, verifier, retention, dispatcher, config, clock=clock)
    recovered = orchestrator.recover_interrupted()
    if recovered:
        logger.warning("Marked %d interrupted job(s) as failed", len(recovered))
    return orchestrator

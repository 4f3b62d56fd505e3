"""Persistent job registry using a JSON file."""

import json
import os
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional, Union

from .models import BackupJob, utcnow
from .registry import Clock, JobRegistry

# Handle platform-specific locking
if sys.platform == "win32":
    import msvcrt
else:
    import fcntl


class FileJobRegistry(JobRegistry):
    """Job registry stored in ``<data_dir>/jobs.json``.

    Each read-modify-write holds an exclusive lock on ``jobs.lock`` so that
    several processes (a scheduler and the CLI, say) can share a data
    directory.
    """

    def __init__(self, data_dir: Union[str, Path] = ".backupctl", clock: Clock = utcnow):
        super().__init__(clock)
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.jobs_file = self.data_dir / "jobs.json"
        self.lock_file = self.data_dir / "jobs.lock"
        self._thread_lock = threading.RLock()
        self._lock_depth = 0

        # Initialize files if they don't exist
        if not self.jobs_file.exists():
            with self._locked():
                if not self.jobs_file.exists():
                    self._write_json([])

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the thread lock and the ``jobs.lock`` file lock. Re-entrant."""
        with self._thread_lock:
            if self._lock_depth:
                self._lock_depth += 1
                try:
                    yield
                finally:
                    self._lock_depth -= 1
                return

            fd = os.open(str(self.lock_file), os.O_CREAT | os.O_WRONLY, 0o644)
            try:
                if sys.platform == "win32":
                    msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
                else:
                    fcntl.flock(fd, fcntl.LOCK_EX)
                self._lock_depth = 1
                try:
                    yield
                finally:
                    self._lock_depth = 0
                    if sys.platform == "win32":
                        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
                    else:
                        fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        # The file lock spans every process sharing the data directory.
        with self._locked():
            yield

    def _write_json(self, data: Any) -> None:
        """Write data to the jobs file with an atomic replace."""
        temp_file = self.jobs_file.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            json.dump(data, f, indent=2, default=str)
        temp_file.replace(self.jobs_file)

    def _read_json(self) -> List[dict]:
        if not self.jobs_file.exists():
            return []
        with open(self.jobs_file, "r") as f:
            return json.load(f)

    def _insert(self, job: BackupJob) -> None:
        with self._locked():
            jobs = self._read_json()
            jobs.append(job.model_dump(mode="json"))
            self._write_json(jobs)

    def _load(self, job_id: str) -> Optional[BackupJob]:
        with self._locked():
            for job_data in self._read_json():
                if job_data["id"] == job_id:
                    return BackupJob(**job_data)
        return None

    def _save(self, job: BackupJob) -> None:
        with self._locked():
            jobs = self._read_json()
            for i, job_data in enumerate(jobs):
                if job_data["id"] == job.id:
                    jobs[i] = job.model_dump(mode="json")
                    self._write_json(jobs)
                    return
        raise ValueError(f"Job {job.id} not found")

    def _remove(self, job_id: str) -> bool:
        with self._locked():
            jobs = self._read_json()
            kept = [j for j in jobs if j["id"] != job_id]
            if len(kept) == len(jobs):
                return False
            self._write_json(kept)
            return True

    def _all(self) -> List[BackupJob]:
        with self._locked():
            return [BackupJob(**job_data) for job_data in self._read_json()]

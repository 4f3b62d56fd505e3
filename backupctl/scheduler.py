"""Cron-driven trigger loop for scheduled backups."""

import logging
import signal
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from apscheduler.triggers.cron import CronTrigger

from .config import BackupConfig
from .models import utcnow

logger = logging.getLogger(__name__)


class ScheduledEntry:
    """One named cron trigger and the callback it fires."""

    def __init__(self, name: str, trigger: CronTrigger, callback: Callable[[], object], now: datetime):
        self.name = name
        self.trigger = trigger
        self.callback = callback
        self.next_run: Optional[datetime] = trigger.get_next_fire_time(None, now)

    def advance(self, now: datetime) -> None:
        self.next_run = self.trigger.get_next_fire_time(None, now + timedelta(microseconds=1))


class Scheduler:
    """Fires callbacks when their cron expressions come due.

    ``run_pending(now)`` does one deterministic pass, which is what tests
    drive. ``run()`` repeats it until ``stop()`` is called. A firing that was
    missed while the loop was busy runs once, not once per missed slot.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow, timezone: str = "UTC"):
        self.clock = clock
        self.timezone = timezone
        self.entries: Dict[str, ScheduledEntry] = {}
        self._stop = threading.Event()

    def add(self, name: str, expression: str, callback: Callable[[], object]) -> ScheduledEntry:
        trigger = CronTrigger.from_crontab(expression, timezone=self.timezone)
        entry = ScheduledEntry(name, trigger, callback, self.clock())
        self.entries[name] = entry
        logger.info("Scheduled %s (%s), next run %s", name, expression, entry.next_run)
        return entry

    def remove(self, name: str) -> None:
        self.entries.pop(name, None)

    def next_run(self, name: str) -> Optional[datetime]:
        entry = self.entries.get(name)
        return entry.next_run if entry else None

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run_pending(self, now: Optional[datetime] = None) -> List[str]:
        """Fire every entry due at ``now``. Returns the names that fired."""
        now = now or self.clock()
        fired = []
        for entry in list(self.entries.values()):
            if self._stop.is_set():
                break
            if entry.next_run is None or entry.next_run > now:
                continue
            entry.advance(now)
            fired.append(entry.name)
            try:
                entry.callback()
            except Exception as e:
                logger.error("Scheduled %s failed: %s", entry.name, e, exc_info=True)
        return fired

    def run(self, poll_interval: float = 1.0, install_signals: bool = False) -> None:
        """Run the scheduler loop until stopped."""
        if install_signals:
            # Setup signal handlers for graceful shutdown
            signal.signal(signal.SIGTERM, self._handle_shutdown)
            signal.signal(signal.SIGINT, self._handle_shutdown)

        logger.info("Backup scheduler started")
        while not self._stop.is_set():
            self.run_pending()
            self._stop.wait(poll_interval)
        logger.info("Backup scheduler stopped")

    def start(self, poll_interval: float = 1.0) -> threading.Thread:
        """Run the loop on a daemon thread."""
        self._stop.clear()
        thread = threading.Thread(
            target=self.run, kwargs={"poll_interval": poll_interval}, name="backupctl-scheduler", daemon=True
        )
        thread.start()
        return thread

    def stop(self) -> None:
        """Prevent further firings. Callbacks already running are not interrupted."""
        self._stop.set()

    def _handle_shutdown(self, signum, frame):
        """Handle shutdown signal gracefully."""
        logger.info("Received signal %s, stopping scheduler", signum)
        self.stop()


def build_scheduler(orchestrator, config: BackupConfig, clock: Callable[[], datetime] = utcnow) -> Scheduler:
    """Register the configured backup, verification and retention triggers."""
    scheduler = Scheduler(clock=clock, timezone=config.schedule.timezone)
    schedule = config.schedule

    scheduler.add("full_backup", schedule.full_backup, lambda: orchestrator.trigger_full_backup(skip_if_busy=True))
    scheduler.add("incremental", schedule.incremental, orchestrator.trigger_incremental_backup)
    if schedule.log_backup:
        scheduler.add("log_backup", schedule.log_backup, orchestrator.trigger_log_backup)
    if schedule.file_backup:
        scheduler.add("file_backup", schedule.file_backup, orchestrator.trigger_file_backup)
    if schedule.config_backup:
        scheduler.add("config_backup", schedule.config_backup, orchestrator.trigger_config_backup)
    # Sweeps only queue work on the orchestrator's pool; the loop never waits on them.
    if config.verification.enabled:
        scheduler.add("verification", config.verification.schedule, orchestrator.queue_verification_sweep)
    scheduler.add("retention", schedule.retention, orchestrator.queue_retention_sweep)
    return scheduler

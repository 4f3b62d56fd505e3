"""Rollup statistics over a registry snapshot."""

from datetime import datetime
from typing import Optional, Sequence

from apscheduler.triggers.cron import CronTrigger

from .config import BackupConfig
from .models import BackupJob, BackupMetrics, JobStatus

NEVER = "Never"


def next_fire_time(expression: str, now: datetime, timezone: str = "UTC") -> Optional[datetime]:
    """Next time after ``now`` that a crontab expression fires, or None."""
    trigger = CronTrigger.from_crontab(expression, timezone=timezone)
    return trigger.get_next_fire_time(None, now)


def compute_metrics(jobs: Sequence[BackupJob], config: BackupConfig, now: datetime) -> BackupMetrics:
    """Derive metrics from a snapshot. Same inputs always give the same result."""
    successful = [job for job in jobs if job.successful]
    failed = [job for job in jobs if job.status == JobStatus.FAILED]

    average_duration = (
        sum(job.duration_ms or 0 for job in successful) / len(successful) if successful else 0
    )
    total_size = sum(job.size_bytes or 0 for job in successful)

    last_successful = max(successful, key=lambda job: job.started_at, default=None)
    if last_successful is not None and last_successful.completed_at is not None:
        last_successful_backup = last_successful.completed_at.isoformat()
    else:
        last_successful_backup = NEVER

    next_full = next_fire_time(config.schedule.full_backup, now, config.schedule.timezone)

    daily = config.retention.daily_backups
    recent = [job for job in jobs if job.age_days(now) <= daily]
    # An empty registry is never compliant, even with a zero-day window.
    compliant = bool(jobs) and len(recent) >= min(daily, 7)

    return BackupMetrics(
        total_backups=len(jobs),
        successful_backups=len(successful),
        failed_backups=len(failed),
        average_duration_ms=average_duration,
        total_storage_bytes=total_size,
        last_successful_backup=last_successful_backup,
        next_scheduled_backup=next_full.isoformat() if next_full else NEVER,
        retention_compliance=compliant,
    )

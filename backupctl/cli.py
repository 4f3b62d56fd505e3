"""CLI interface for backupctl."""

import json
import logging
import os
import sys
from typing import Optional

import click

from .config import BackupConfig, load_config
from .errors import BackupError, ConfigurationError, InvalidTransition, JobNotFound
from .models import BackupJob, JobFilter, JobStatus, JobType
from .orchestrator import Orchestrator, build_orchestrator
from .retry import retry_backup
from .scheduler import build_scheduler
from .verification import SqliteRestore

# Global orchestrator instance
_orchestrator: Optional[Orchestrator] = None
_config_path: Optional[str] = None


def get_config() -> BackupConfig:
    try:
        return load_config(_config_path)
    except ConfigurationError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)


def get_orchestrator() -> Orchestrator:
    """Get or create the orchestrator for this process."""
    global _orchestrator
    if _orchestrator is None:
        config = get_config()
        restore = SqliteRestore() if config.verification.test_restore else None
        _orchestrator = build_orchestrator(config, restore=restore)
    return _orchestrator


def _format_size(size: Optional[int]) -> str:
    if size is None:
        return "-"
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}TB"


def _echo_job(job: BackupJob) -> None:
    click.echo(json.dumps(job.model_dump(mode="json"), indent=2))


@click.group()
@click.option("--config", "config_path", envvar="BACKUPCTL_CONFIG_FILE", type=click.Path(), help="JSON config file")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(config_path: Optional[str], verbose: bool):
    """backupctl - Backup Orchestration Engine"""
    global _config_path
    _config_path = config_path
    level = "DEBUG" if verbose else os.environ.get("BACKUPCTL_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@cli.command()
@click.argument("kind", type=click.Choice(["full", "incremental", "log", "files", "config"]))
@click.option("--retry", is_flag=True, help="Retry failed attempts with exponential backoff")
def run(kind: str, retry: bool):
    """Run a backup now and wait for it to finish.

    Example:
        backupctl run full
        backupctl run incremental --retry
        backupctl run files
    """
    global _orchestrator
    orchestrator = get_orchestrator()
    triggers = {
        "full": orchestrator.trigger_full_backup,
        "incremental": orchestrator.trigger_incremental_backup,
        "log": orchestrator.trigger_log_backup,
        "files": orchestrator.trigger_file_backup,
        "config": orchestrator.trigger_config_backup,
    }
    try:
        if retry:
            attempts = retry_backup(triggers[kind], orchestrator.wait_for, orchestrator.config.retry)
            job = attempts[-1] if attempts else None
        else:
            created = triggers[kind]()
            job = orchestrator.wait_for(created.id) if created else None
    finally:
        orchestrator.close(wait=True)
        _orchestrator = None

    if job is None:
        click.echo("✗ No backup job was created", err=True)
        sys.exit(1)

    if job.status == JobStatus.FAILED:
        click.echo(f"✗ Backup {job.id} failed: {job.error_message}", err=True)
        sys.exit(1)
    click.echo(f"✓ Backup {job.id} {job.status.value} ({_format_size(job.size_bytes)}, {job.duration_ms} ms)")
    if job.verification_status.value == "failed":
        click.echo(f"  Verification failed: {job.metadata.get('verification_message')}")


@cli.command("list")
@click.option("--status", type=click.Choice([s.value for s in JobStatus]), help="Filter by status")
@click.option("--type", "job_type", type=click.Choice([t.value for t in JobType]), help="Filter by type")
@click.option("--limit", default=10, help="Maximum jobs to display")
def list_jobs(status: Optional[str], job_type: Optional[str], limit: int):
    """List backup jobs, newest first.

    Example:
        backupctl list --status failed
        backupctl list --type full --limit 20
    """
    orchestrator = get_orchestrator()
    job_filter = JobFilter(
        statuses=[JobStatus(status)] if status else None,
        types=[JobType(job_type)] if job_type else None,
        limit=limit,
    )
    jobs = orchestrator.registry.list(job_filter)

    if not jobs:
        click.echo("No jobs found")
        return

    click.echo(f"\n{'ID':<34} {'Type':<12} {'Status':<10} {'Size':<10} {'Started':<20}")
    click.echo("-" * 88)
    for job in jobs:
        started = job.started_at.strftime("%Y-%m-%d %H:%M:%S")
        click.echo(
            f"{job.id:<34} {job.type.value:<12} {job.status.value:<10} "
            f"{_format_size(job.size_bytes):<10} {started:<20}"
        )
    click.echo()


@cli.command()
@click.argument("job_id")
def show(job_id: str):
    """Show one backup job.

    Example:
        backupctl show 3f2a...
    """
    try:
        job = get_orchestrator().get_job(job_id)
    except JobNotFound as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)
    _echo_job(job)


@cli.command()
@click.argument("job_id", required=False)
@click.option("--all", "verify_all", is_flag=True, help="Verify every unconfirmed completed job")
def verify(job_id: Optional[str], verify_all: bool):
    """Verify a completed backup.

    Example:
        backupctl verify 3f2a...
        backupctl verify --all
    """
    orchestrator = get_orchestrator()
    if verify_all:
        jobs = orchestrator.verify_pending()
        passed = sum(1 for job in jobs if job.status == JobStatus.VERIFIED)
        click.echo(f"Verified {passed}/{len(jobs)} backup(s)")
        return
    if not job_id:
        click.echo("✗ Give a job id or --all", err=True)
        sys.exit(1)

    try:
        job = orchestrator.verify_job(job_id)
    except (JobNotFound, InvalidTransition) as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    if job.status == JobStatus.VERIFIED:
        click.echo(f"✓ Backup {job.id} verified")
    else:
        click.echo(f"✗ Backup {job.id} failed verification: {job.metadata.get('verification_message')}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("job_id")
def cancel(job_id: str):
    """Cancel a backup that has not started yet.

    Example:
        backupctl cancel 3f2a...
    """
    try:
        job = get_orchestrator().cancel_job(job_id)
    except (JobNotFound, InvalidTransition) as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)
    click.echo(f"✓ Cancelled backup {job.id}")


@cli.command()
def sweep():
    """Delete backups that are past their retention window.

    Example:
        backupctl sweep
    """
    result = get_orchestrator().run_retention_sweep()
    click.echo(f"✓ Deleted {len(result.deleted)} backup(s)")
    if result.errors:
        click.echo(f"✗ Could not delete {len(result.errors)} backup(s); they will be retried", err=True)


@cli.command()
def metrics():
    """Show backup metrics.

    Example:
        backupctl metrics
    """
    m = get_orchestrator().get_metrics()

    click.echo("\n" + "=" * 50)
    click.echo("Backup Metrics")
    click.echo("=" * 50)
    click.echo(f"Total Backups:      {m.total_backups}")
    click.echo(f"  Successful:       {m.successful_backups}")
    click.echo(f"  Failed:           {m.failed_backups}")
    click.echo(f"Average Duration:   {m.average_duration_ms:.0f} ms")
    click.echo(f"Total Storage:      {_format_size(m.total_storage_bytes)}")
    click.echo(f"Last Successful:    {m.last_successful_backup}")
    click.echo(f"Next Scheduled:     {m.next_scheduled_backup}")
    click.echo(f"Retention Compliant: {'yes' if m.retention_compliance else 'no'}")
    click.echo("=" * 50 + "\n")


@cli.group()
def scheduler():
    """Manage the backup scheduler"""
    pass


@scheduler.command()
@click.option("--poll-interval", default=1.0, help="Seconds between schedule checks")
def start(poll_interval: float):
    """Run scheduled backups until interrupted.

    Example:
        backupctl scheduler start
    """
    global _orchestrator
    orchestrator = get_orchestrator()
    if not orchestrator.config.enabled:
        click.echo("✗ Backups are disabled in the configuration", err=True)
        sys.exit(1)

    sched = build_scheduler(orchestrator, orchestrator.config)
    click.echo("Starting backup scheduler (Ctrl+C to stop)...")
    try:
        sched.run(poll_interval=poll_interval, install_signals=True)
    finally:
        click.echo("Waiting for running backups to finish...")
        orchestrator.close(wait=True)
        _orchestrator = None
        click.echo("Scheduler stopped")


@cli.group()
def config():
    """Inspect configuration"""
    pass


@config.command("show")
def show_config():
    """Show the effective configuration (secrets masked).

    Example:
        backupctl config show
    """
    cfg = get_config()
    data = cfg.model_dump(mode="json")
    if data["storage"].get("encryption_key"):
        data["storage"]["encryption_key"] = "****"
    click.echo(json.dumps(data, indent=2))


def main():
    try:
        cli()
    except BackupError as e:
        click.echo(f"✗ Error: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()

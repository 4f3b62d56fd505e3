"""Optional retry wrapper around backup triggers.

Retries sit outside the core: every attempt is a brand new job, and a failed
job stays failed.
"""

import logging
import time
from typing import Callable, List, Optional

from .config import RetryConfig
from .models import BackupJob, JobStatus

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, config: RetryConfig) -> float:
    """Seconds to wait after the given (1-based) failed attempt."""
    return min(config.backoff_base ** (attempt - 1), config.backoff_max_delay)


def retry_backup(
    trigger: Callable[[], Optional[BackupJob]],
    wait_for: Callable[[str], BackupJob],
    config: RetryConfig,
    sleep: Callable[[float], None] = time.sleep,
) -> List[BackupJob]:
    """Trigger a backup until one attempt does not fail.

    Returns every finished attempt, oldest first. Stops after
    ``config.max_retries`` attempts or when the trigger declines to create a
    job.
    """
    attempts: List[BackupJob] = []
    for attempt in range(1, config.max_retries + 1):
        job = trigger()
        if job is None:
            break
        job = wait_for(job.id)
        attempts.append(job)
        if job.status != JobStatus.FAILED:
            break
        if attempt == config.max_retries:
            logger.error("Backup failed after %d attempts: %s", attempt, job.error_message)
            break
        delay = backoff_delay(attempt, config)
        logger.warning("Backup attempt %d failed (%s), retrying in %.1fs", attempt, job.error_message, delay)
        sleep(delay)
    return attempts

"""Outbound notifications about finished backup jobs."""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import requests

from .capabilities import TransportCapability
from .config import NotificationConfig
from .errors import NotificationError
from .models import BackupJob, utcnow

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class WebhookTransport:
    """Posts JSON payloads over HTTP."""

    def __init__(self, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def post(self, url: str, payload: Dict[str, Any]) -> None:
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise NotificationError(f"Webhook {url} failed: {e}") from e


class NotificationDispatcher:
    """Best-effort delivery of job outcomes. Never raises."""

    def __init__(
        self,
        transport: Optional[TransportCapability],
        config: NotificationConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.transport = transport
        self.config = config
        self.clock = clock

    def build_payload(self, job: BackupJob) -> Dict[str, Any]:
        return {
            "backup_id": job.id,
            "type": job.type.value,
            "status": job.status.value,
            "started_at": _iso(job.started_at),
            "completed_at": _iso(job.completed_at),
            "duration_ms": job.duration_ms,
            "size_bytes": job.size_bytes,
            "error_message": job.error_message,
            "timestamp": _iso(self.clock()),
        }

    def notify(self, job: BackupJob, success: bool) -> bool:
        """Send the outcome of ``job``. Returns True if a notification went out."""
        url = self.config.success_webhook if success else self.config.failure_webhook
        if not url or self.transport is None:
            return False

        payload = self.build_payload(job)
        try:
            self.transport.post(url, payload)
        except Exception:
            logger.error("Failed to send backup notification for job %s", job.id, exc_info=True)
            return False
        logger.info("Sent %s notification for job %s", "success" if success else "failure", job.id)
        return True

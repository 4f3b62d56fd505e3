"""Process-wide backup configuration.

Values come from an optional JSON file and from ``BACKUPCTL_*`` environment
variables (nested sections use ``__``, e.g. ``BACKUPCTL_RETENTION__DAILY_BACKUPS``).
Environment variables win over the file. The loaded object is frozen.
"""

import base64
import binascii
import json
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


def _check_cron(value: str) -> str:
    try:
        CronTrigger.from_crontab(value, timezone="UTC")
    except ValueError as e:
        raise ValueError(f"invalid cron expression {value!r}: {e}") from e
    return value


def decode_key(raw: str) -> bytes:
    """Decode a hex or base64 encryption key."""
    cleaned = raw.strip()
    try:
        return bytes.fromhex(cleaned)
    except ValueError:
        try:
            return base64.b64decode(cleaned, validate=True)
        except binascii.Error as e:
            raise ValueError("encryption key must be hex or base64") from e


class ScheduleConfig(BaseModel):
    """Cron expressions per trigger."""
    model_config = ConfigDict(frozen=True)

    full_backup: str = "0 2 * * *"
    incremental: str = "0 */6 * * *"
    log_backup: Optional[str] = "*/15 * * * *"
    file_backup: Optional[str] = None
    config_backup: Optional[str] = None
    retention: str = "0 3 * * *"
    timezone: str = "UTC"

    @field_validator("full_backup", "incremental", "retention")
    @classmethod
    def _valid_cron(cls, value: str) -> str:
        return _check_cron(value)

    @field_validator("log_backup", "file_backup", "config_backup")
    @classmethod
    def _valid_optional_cron(cls, value: Optional[str]) -> Optional[str]:
        return _check_cron(value) if value else None


class RetentionConfig(BaseModel):
    """Retention counts per granularity. Full backups expire after ``daily_backups`` days."""
    model_config = ConfigDict(frozen=True)

    daily_backups: int = Field(default=30, ge=0)
    weekly_backups: int = Field(default=12, ge=0)
    monthly_backups: int = Field(default=12, ge=0)
    yearly_backups: int = Field(default=7, ge=0)


class StorageConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    primary_location: str = "backups"
    secondary_location: Optional[str] = None
    encryption_enabled: bool = False
    compression_enabled: bool = True
    encryption_key: Optional[str] = None

    @field_validator("primary_location")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("primary_location must not be empty")
        return value.rstrip("/")

    @field_validator("secondary_location")
    @classmethod
    def _strip_secondary(cls, value: Optional[str]) -> Optional[str]:
        return value.rstrip("/") if value else None

    @model_validator(mode="after")
    def _key_required(self) -> "StorageConfig":
        if self.encryption_enabled:
            if not self.encryption_key:
                raise ValueError("encryption_key is required when encryption is enabled")
            if len(decode_key(self.encryption_key)) not in {16, 24, 32}:
                raise ValueError("encryption_key must be 128/192/256-bit")
        return self

    def key_bytes(self) -> Optional[bytes]:
        if not self.encryption_enabled or not self.encryption_key:
            return None
        return decode_key(self.encryption_key)


class VerificationConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    schedule: str = "0 6 * * *"
    test_restore: bool = False

    @field_validator("schedule")
    @classmethod
    def _valid_cron(cls, value: str) -> str:
        return _check_cron(value)


class NotificationConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    success_webhook: Optional[str] = None
    failure_webhook: Optional[str] = None
    timeout: float = Field(default=10.0, gt=0)


class DumpConfig(BaseModel):
    """Shell commands that produce backup bytes on stdout.

    Commands are formatted with ``{target}``, and for incremental and log
    dumps also ``{base_id}``, ``{base_location}`` and ``{since}``.
    """
    model_config = ConfigDict(frozen=True)

    target: str = "default"
    full_command: Optional[str] = None
    incremental_command: Optional[str] = None
    log_command: Optional[str] = None
    timeout: int = Field(default=3600, gt=0)


class FilesConfig(BaseModel):
    """Paths archived by file and config backups.

    ``include_patterns`` and ``exclude_patterns`` are globs matched against
    paths relative to each directory listed.
    """
    model_config = ConfigDict(frozen=True)

    paths: List[str] = Field(default_factory=list)
    config_paths: List[str] = Field(default_factory=list)
    archive_format: Literal["tar.gz", "tar", "zip"] = "tar.gz"
    include_patterns: List[str] = Field(default_factory=lambda: ["**/*"])
    exclude_patterns: List[str] = Field(default_factory=list)


class RetryConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=1)
    backoff_base: float = Field(default=2.0, gt=0)  # exponential backoff base
    backoff_max_delay: int = Field(default=3600, ge=0)  # max delay in seconds (1 hour)


class BackupConfig(BaseSettings):
    """Backup engine configuration."""
    model_config = SettingsConfigDict(
        env_prefix="BACKUPCTL_",
        env_nested_delimiter="__",
        frozen=True,
        extra="forbid",
    )

    enabled: bool = True
    data_dir: str = ".backupctl"
    max_workers: int = Field(default=4, ge=1)
    schedule: ScheduleConfig = ScheduleConfig()
    retention: RetentionConfig = RetentionConfig()
    storage: StorageConfig = StorageConfig()
    verification: VerificationConfig = VerificationConfig()
    notification: NotificationConfig = NotificationConfig()
    dump: DumpConfig = DumpConfig()
    files: FilesConfig = FilesConfig()
    retry: RetryConfig = RetryConfig()

    @classmethod
    def settings_customise_sources(
        cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings
    ):
        # Environment overrides values read from the config file.
        return env_settings, init_settings, dotenv_settings, file_secret_settings


def load_config(path: Optional[Union[str, Path]] = None, **overrides: Any) -> BackupConfig:
    """Load and validate configuration. Raises ConfigurationError on any problem."""
    data: Dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(f"Config file {config_path} does not exist")
        try:
            with open(config_path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read config file {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a JSON object")
    data.update(overrides)

    try:
        return BackupConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid backup configuration: {e}") from e

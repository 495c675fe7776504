"""fieldsync configuration settings using pydantic-settings."""

from functools import cached_property
from pathlib import Path
from typing import Any

import yaml
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fieldsync.sync.network import ConnectionType


class Settings(BaseSettings):
    """Configuration settings for the fieldsync upload client.

    Settings are loaded from environment variables with the FIELDSYNC_ prefix.
    For example, FIELDSYNC_MAX_RETRIES=3 sets max_retries to 3.
    """

    model_config = SettingsConfigDict(
        env_prefix="FIELDSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server settings
    server_url: str = "http://localhost:3000/api"
    upload_timeout_ms: int = 30_000

    # File paths
    data_dir: Path = Path("~/.local/share/fieldsync")

    # Logging
    log_level: str = "INFO"
    log_file: Path | None = None

    # Queue settings
    auto_upload_enabled: bool = True
    max_concurrent_uploads: int = 3
    batch_size: int = 5
    max_retries: int = 5
    batch_pause_ms: int = 500

    # Retry backoff: exponential with jitter
    base_backoff_ms: int = 1_000
    max_backoff_ms: int = 30_000
    min_backoff_ms: int = 1_000

    # Network policy
    only_wifi: bool = False
    allow_proceed_if_network_check_fails: bool = False
    assumed_connection_type: ConnectionType = ConnectionType.wifi
    network_poll_seconds: float = 2.0

    # Recovery and background sync
    stale_uploading_seconds: int = 300  # 5 minutes
    background_sync_interval_seconds: int = 900  # 15 minutes

    @field_validator("max_concurrent_uploads", "batch_size", "max_retries")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Ensure queue sizing values are positive."""
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator(
        "base_backoff_ms",
        "max_backoff_ms",
        "min_backoff_ms",
        "batch_pause_ms",
        "stale_uploading_seconds",
    )
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        """Ensure delays are not negative."""
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("upload_timeout_ms", "background_sync_interval_seconds")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        """Ensure timeouts and intervals are positive."""
        if v < 1:
            raise ValueError("must be positive")
        return v

    @field_validator("network_poll_seconds")
    @classmethod
    def validate_poll_interval(cls, v: float) -> float:
        """Ensure the network poll interval is positive."""
        if v <= 0:
            raise ValueError("network_poll_seconds must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v.upper()

    @model_validator(mode="after")
    def validate_backoff_bounds(self) -> "Settings":
        """Ensure the backoff ceiling is not below the base delay."""
        if self.max_backoff_ms < self.base_backoff_ms:
            raise ValueError("max_backoff_ms must be >= base_backoff_ms")
        return self

    @cached_property
    def data_path(self) -> Path:
        """Return expanded data directory path."""
        return self.data_dir.expanduser()

    @property
    def database_path(self) -> Path:
        """Return the path of the local asset database."""
        return self.data_path / "assets.db"

    @property
    def upload_timeout_seconds(self) -> float:
        return self.upload_timeout_ms / 1000

    @classmethod
    def from_yaml(cls, path: Path, **overrides: Any) -> "Settings":
        """Load settings from a YAML file.

        Values in the file take precedence over environment variables;
        explicit keyword overrides take precedence over both.

        Raises:
            FileNotFoundError: If the file does not exist.
        """
        path = Path(path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file must contain a mapping: {path}")
        data.update(overrides)
        return cls(**data)

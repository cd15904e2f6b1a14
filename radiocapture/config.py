"""
Configuration management for Radio Capture.

This module implements a two-tier configuration system:
1. Static settings from environment variables
2. Dynamic settings from user_config.json (changeable via Telegram)

Static settings are read once at startup and cannot be changed at runtime.
Dynamic settings can be modified through bot commands and persist across restarts.
Capture jobs themselves live in the job registry (see jobs.py), not here.
"""

import json
import logging
import os
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ConfigError

logger = logging.getLogger(__name__)

USER_CONFIG_NAME = "user_config.json"
JOBS_FILE_NAME = "jobs.json"

TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass
class DynamicConfig:
    """
    Dynamic configuration that can be changed via Telegram.

    These settings are persisted to user_config.json and can be modified
    at runtime through bot commands.
    """
    notifications_enabled: bool = True
    cleanup_enabled: bool = False

    def to_dict(self) -> dict:
        """Convert config to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "DynamicConfig":
        """Create config from dictionary."""
        return cls(
            notifications_enabled=data.get("notifications_enabled", True),
            cleanup_enabled=data.get("cleanup_enabled", False),
        )


class Config:
    """
    Main configuration class combining static and dynamic settings.

    Attributes:
        timezone: Timezone used for trigger matching (e.g., Asia/Amman)
        data_dir: Directory holding jobs.json and user_config.json
        recordings_dir: Directory where captured audio is written
        tick_interval: Seconds between trigger evaluations
        connect_timeout: Connect timeout for source streams in seconds
        playlist_timeout: Timeout for one HLS playlist fetch in seconds
        segment_timeout: Timeout for one HLS segment fetch in seconds
        hls_poll_interval: Seconds to wait between HLS playlist polls
        default_duration: Capture length used when a job omits one
        storage_backend: "local" or "rclone"
        rclone_remote: rclone remote path for uploads
        retention_days: Recordings older than this are swept
        retention_hour: Local hour of the daily retention sweep
        status_log_size: Number of status events kept for inspection
        system_jobs: Whether built-in locked jobs are seeded
        health_host: Bind address of the health server
        health_port: Port of the health server
        telegram_bot_token: Telegram bot API token
        telegram_chat_id: Chat ID for notifications
        log_level: Root logging level name
        dynamic: Dynamic configuration object
    """

    def __init__(self, env: Optional[Mapping[str, str]] = None):
        """
        Initialize configuration from environment and user config file.

        Args:
            env: Mapping to read settings from. Defaults to os.environ.
        """
        env = os.environ if env is None else env
        self._env = env

        self.timezone: str = env.get("TZ", "UTC")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigError(f"Unknown timezone: {self.timezone}") from e

        self.data_dir: Path = Path(env.get("DATA_DIR", "data")).expanduser()
        self.recordings_dir: Path = Path(env.get("RECORDINGS_DIR", "recordings")).expanduser()

        self.tick_interval: float = self._number("TICK_INTERVAL", 20.0)
        self.connect_timeout: float = self._number("CONNECT_TIMEOUT", 15.0)
        self.playlist_timeout: float = self._number("PLAYLIST_TIMEOUT", 10.0)
        self.segment_timeout: float = self._number("SEGMENT_TIMEOUT", 5.0)
        self.hls_poll_interval: float = self._number("HLS_POLL_INTERVAL", 4.0)
        self.default_duration: int = int(self._number("DEFAULT_DURATION", 1800))

        self.storage_backend: str = env.get("STORAGE_BACKEND", "local").lower()
        if self.storage_backend not in ("local", "rclone"):
            raise ConfigError(f"Unknown storage backend: {self.storage_backend}")
        self.rclone_remote: str = env.get("RCLONE_REMOTE", "remote:Radio recordings")

        self.retention_days: int = int(self._number("RETENTION_DAYS", 30))
        self.retention_hour: int = int(self._number("RETENTION_HOUR", 3))
        if not 0 <= self.retention_hour <= 23:
            raise ConfigError(f"RETENTION_HOUR must be 0-23, got {self.retention_hour}")
        self.status_log_size: int = int(self._number("STATUS_LOG_SIZE", 50))
        self.system_jobs: bool = env.get("SYSTEM_JOBS", "1").lower() in TRUE_VALUES

        self.health_host: str = env.get("HEALTH_HOST", "0.0.0.0")
        self.health_port: int = int(self._number("PORT", 3001))
        self.telegram_bot_token: str = env.get("TELEGRAM_BOT_TOKEN", "")
        self.telegram_chat_id: str = env.get("TELEGRAM_CHAT_ID", "")
        self.log_level: str = env.get("LOG_LEVEL", "INFO").upper()

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.recordings_dir.mkdir(parents=True, exist_ok=True)

        self.dynamic = self._load_dynamic_config()

        logger.info("Configuration loaded successfully")

    def _number(self, name: str, default: float) -> float:
        """Read a positive number from the environment."""
        raw = self._env.get(name)
        if raw is None or raw == "":
            return default
        try:
            value = float(raw)
        except ValueError as e:
            raise ConfigError(f"{name} must be a number, got {raw!r}") from e
        if value < 0:
            raise ConfigError(f"{name} must not be negative, got {raw!r}")
        return value

    @property
    def user_config_path(self) -> Path:
        return self.data_dir / USER_CONFIG_NAME

    @property
    def jobs_path(self) -> Path:
        return self.data_dir / JOBS_FILE_NAME

    def _load_dynamic_config(self) -> DynamicConfig:
        """
        Load dynamic configuration from user_config.json.

        If the file doesn't exist or is invalid, defaults are used and saved.

        Returns:
            DynamicConfig object with loaded or default settings
        """
        path = self.user_config_path
        if path.exists():
            try:
                with open(path, "r") as f:
                    data = json.load(f)
                logger.info(f"Loaded dynamic config from {path}")
                return DynamicConfig.from_dict(data)
            except (json.JSONDecodeError, AttributeError) as e:
                logger.warning(f"Invalid user config file, using defaults: {e}")

        config = DynamicConfig()
        self._save_dynamic_config(config)
        return config

    def _save_dynamic_config(self, config: Optional[DynamicConfig] = None) -> None:
        """
        Save dynamic configuration to user_config.json.

        Args:
            config: Config to save, defaults to self.dynamic
        """
        config = config or self.dynamic
        try:
            with open(self.user_config_path, "w") as f:
                json.dump(config.to_dict(), f, indent=2)
            logger.debug(f"Saved dynamic config to {self.user_config_path}")
        except IOError as e:
            logger.error(f"Failed to save config: {e}")

    def set_cleanup_enabled(self, enabled: bool) -> None:
        """
        Enable or disable removal of local copies after a remote upload.

        Args:
            enabled: Whether to delete local files once the remote copy is verified
        """
        self.dynamic.cleanup_enabled = enabled
        self._save_dynamic_config()
        logger.info(f"Cleanup enabled: {enabled}")

    def set_notifications_enabled(self, enabled: bool) -> None:
        """
        Enable or disable Telegram notifications.

        Args:
            enabled: Whether to send notifications
        """
        self.dynamic.notifications_enabled = enabled
        self._save_dynamic_config()
        logger.info(f"Notifications enabled: {enabled}")

    def get_config_summary(self) -> str:
        """
        Get a human-readable summary of current configuration.

        Returns:
            Formatted string with current settings
        """
        storage = (
            f"rclone → {self.rclone_remote}"
            if self.storage_backend == "rclone"
            else f"local → {self.recordings_dir}"
        )
        return f"""📻 Radio Capture Configuration

Timezone: {self.timezone}
Storage: {storage}
Retention: {self.retention_days} days (sweep at {self.retention_hour:02d}:00)
Tick interval: {self.tick_interval:g}s
HLS poll interval: {self.hls_poll_interval:g}s

Settings:
  - Cleanup after upload: {'✅' if self.dynamic.cleanup_enabled else '❌'}
  - Notifications: {'✅' if self.dynamic.notifications_enabled else '❌'}"""

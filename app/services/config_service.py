"""
Configuration service for reading settings from the environment.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("app.config")


class ConfigService:
    """Service for managing application configuration."""

    def __init__(self):
        self._cache: dict[str, Any] = {}

    def get_setting(self, key: str, default: Any = None) -> Any:
        """
        Get setting value from cache or environment.

        Priority: Cache (explicit overrides) > Environment > Default
        """
        if key in self._cache:
            return self._cache[key]

        value = os.getenv(key, default)

        self._cache[key] = value

        logger.debug(f"Retrieved setting {key}={value}")
        return value

    def get_int(self, key: str, default: int) -> int:
        """Get an integer setting, falling back to the default on bad values."""
        value = self.get_setting(key, default)
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid integer for {key}: {value}, using {default}")
            return default

    def set_setting(self, key: str, value: Any) -> None:
        """Override a setting for the lifetime of this process."""
        self._cache[key] = value
        logger.info(f"Set setting {key}={value}")

    def clear_cache(self) -> None:
        self._cache.clear()

    def now(self) -> datetime:
        """
        Get current UTC time (real or fake based on APP_NOW_MODE).

        Returned datetimes are naive UTC so they compare cleanly with values
        read back from the database.

        Returns:
            Current datetime (real or fake)
        """
        now_mode = self.get_setting("APP_NOW_MODE", "real")

        if now_mode == "fake":
            fake_now_str = self.get_setting("APP_FAKE_NOW")
            if fake_now_str:
                try:
                    fake_date = datetime.fromisoformat(fake_now_str)
                    logger.debug(f"Using fake time: {fake_date}")
                    return fake_date.replace(tzinfo=None)
                except ValueError:
                    logger.warning(f"Invalid APP_FAKE_NOW format: {fake_now_str}, using real time")

        return datetime.now(timezone.utc).replace(tzinfo=None)

    def is_fake_time_enabled(self) -> bool:
        """Check if fake time mode is enabled."""
        return self.get_setting("APP_NOW_MODE", "real") == "fake"


@dataclass
class ImportQueueConfiguration:
    """Queue and scheduling limits for import jobs."""

    max_concurrent_jobs: int = 4
    max_queue_size: int = 1000
    default_timeout: int = 300000  # ms
    retry_attempts: int = 3
    retry_delay: int = 30  # seconds, doubled per retry
    max_retry_delay: int = 3600  # seconds
    priority_levels: int = 10
    cleanup_interval: int = 60  # seconds
    max_history_age: int = 30  # days

    @classmethod
    def from_config(cls, config: "ConfigService") -> "ImportQueueConfiguration":
        defaults = cls()
        return cls(
            max_concurrent_jobs=config.get_int("IMPORT_MAX_CONCURRENT_JOBS", defaults.max_concurrent_jobs),
            max_queue_size=config.get_int("IMPORT_MAX_QUEUE_SIZE", defaults.max_queue_size),
            default_timeout=config.get_int("IMPORT_DEFAULT_TIMEOUT_MS", defaults.default_timeout),
            retry_attempts=config.get_int("IMPORT_RETRY_ATTEMPTS", defaults.retry_attempts),
            retry_delay=config.get_int("IMPORT_RETRY_DELAY_SECONDS", defaults.retry_delay),
            max_retry_delay=config.get_int("IMPORT_MAX_RETRY_DELAY_SECONDS", defaults.max_retry_delay),
            priority_levels=config.get_int("IMPORT_PRIORITY_LEVELS", defaults.priority_levels),
            cleanup_interval=config.get_int("IMPORT_CLEANUP_INTERVAL_SECONDS", defaults.cleanup_interval),
            max_history_age=config.get_int("IMPORT_MAX_HISTORY_AGE_DAYS", defaults.max_history_age),
        )


def get_queue_configuration() -> ImportQueueConfiguration:
    return ImportQueueConfiguration.from_config(config_service)


# Global instance
config_service = ConfigService()

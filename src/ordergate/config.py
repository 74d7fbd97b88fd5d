"""
Configuration module for ordergate.

This module handles loading and validating process-level configuration from
environment variables using Pydantic Settings. It supports multiple
environments (production, staging) via the BOT_ENV environment variable.

Per-owner security settings (claim mode, rate limits, staff override groups)
live in the database; see ``ordergate.security_settings``.
"""

import logging
import os
from datetime import timedelta
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def get_env_file() -> str | None:
    """
    Determine which .env file to load based on BOT_ENV environment variable.

    Returns:
        str | None: Path to the environment file if it exists, None otherwise.
            - "production" or default -> ".env" (if exists)
            - "staging" -> ".env.staging" (if exists)
    """
    env = os.getenv("BOT_ENV", "production")
    env_files = {
        "production": ".env",
        "staging": ".env.staging",
    }
    env_file = env_files.get(env, ".env")

    if Path(env_file).exists():
        logger.debug(f"Loading configuration from: {env_file}")
        return env_file
    else:
        logger.debug(f"No .env file found at {env_file}, loading from environment variables")
        return None


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Attributes:
        database_path: Path to SQLite database file.
        user_mapping_enabled: Run mapping-based ownership resolution in the pipeline.
        conversation_expiry_minutes: Lifetime of a verification/registration dialog.
        username_max_attempts: Wrong username replies allowed before a dialog fails.
        registration_max_attempts: Unknown usernames allowed during registration.
        spam_auto_suspend_threshold: Spam incidents before a mapping is suspended.
        admin_api_timeout_seconds: HTTP timeout for panel admin API calls.
        sweep_interval_seconds: Interval of the expired-record sweep job.
        support_contact: Contact shown when a username belongs to another number.
        logfire_token: Logfire API token (optional, required for production logging).
        logfire_service_name: Service name for Logfire traces.
        logfire_environment: Environment name (production/staging).
        logfire_enabled: Enable/disable Logfire logging.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """

    database_path: str = "data/ordergate.db"
    user_mapping_enabled: bool = True
    conversation_expiry_minutes: int = 5
    username_max_attempts: int = 3
    registration_max_attempts: int = 3
    spam_auto_suspend_threshold: int = 50
    admin_api_timeout_seconds: float = 30.0
    sweep_interval_seconds: int = 300
    support_contact: str | None = None
    logfire_token: str | None = None
    logfire_service_name: str = "ordergate"
    logfire_environment: str = "production"
    logfire_enabled: bool = True
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=get_env_file(),
        env_file_encoding="utf-8",
    )

    def model_post_init(self, __context):
        """Validate and log non-sensitive configuration values after initialization."""
        if not (1 <= self.conversation_expiry_minutes <= 60):
            raise ValueError("conversation_expiry_minutes must be between 1 and 60")
        if self.username_max_attempts < 1:
            raise ValueError("username_max_attempts must be at least 1")
        if self.registration_max_attempts < 1:
            raise ValueError("registration_max_attempts must be at least 1")
        if self.spam_auto_suspend_threshold < 1:
            raise ValueError("spam_auto_suspend_threshold must be at least 1")
        if self.admin_api_timeout_seconds <= 0:
            raise ValueError("admin_api_timeout_seconds must be greater than 0")
        if self.sweep_interval_seconds < 10:
            raise ValueError("sweep_interval_seconds must be at least 10 seconds")

        env = os.getenv("BOT_ENV", "production")
        if self.logfire_environment == "production" and env == "staging":
            self.logfire_environment = "staging"

        logger.info("Configuration loaded successfully")
        logger.debug(f"database_path: {self.database_path}")
        logger.debug(f"user_mapping_enabled: {self.user_mapping_enabled}")
        logger.debug(f"conversation_expiry_minutes: {self.conversation_expiry_minutes}")
        logger.debug(f"username_max_attempts: {self.username_max_attempts}")
        logger.debug(f"registration_max_attempts: {self.registration_max_attempts}")
        logger.debug(f"spam_auto_suspend_threshold: {self.spam_auto_suspend_threshold}")
        logger.debug(f"admin_api_timeout_seconds: {self.admin_api_timeout_seconds}")
        logger.debug(f"sweep_interval_seconds: {self.sweep_interval_seconds}")
        if self.logfire_token:
            logger.debug(f"logfire_token: {'***' + self.logfire_token[-4:]}")  # Mask sensitive token
        logger.debug(f"logfire_enabled: {self.logfire_enabled}")
        logger.debug(f"logfire_environment: {self.logfire_environment}")

    @property
    def conversation_expiry_timedelta(self) -> timedelta:
        return timedelta(minutes=self.conversation_expiry_minutes)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Settings are loaded once and cached for subsequent calls.

    Returns:
        Settings: Application configuration instance.
    """
    return Settings()

"""
Runtime configuration for the activity audit engine.

Settings are read once from the environment and are immutable afterwards.
They mirror the handful of plugin options the engine consults while
deciding whether and how an occurrence is written.
"""
from __future__ import annotations

import logging
import os
from typing import List

from pydantic import BaseModel, Field, field_validator


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def env_int_list(name: str) -> List[int]:
    raw = os.getenv(name, "")
    return [int(part) for part in raw.replace(";", ",").split(",") if part.strip()]


class AuditSettings(BaseModel):
    """Engine settings consulted during registration and logging."""

    database_url: str = Field(
        "sqlite:///./activity_audit.db",
        description="SQLAlchemy database URL",
    )

    log_aggregation: bool = Field(
        True,
        description="Count repeated aggregatable events on a single record",
    )

    failed_event_log_increment_limit: int = Field(
        0,
        ge=0,
        description=(
            "Window in days during which repeated failed events increment "
            "the existing record. 0 means no window (all time)."
        ),
    )

    verbose_logging: bool = Field(
        False,
        description="Keep noisy meta fields listed in ignore_meta_fields",
    )

    log_referer: bool = Field(
        True,
        description="Store the request referer URL on new records",
    )

    excluded_event_ids: List[int] = Field(
        default_factory=list,
        description="Event ids disabled through the event_id__not_in check",
    )

    notification_excluded_sms: List[int] = Field(
        default_factory=list,
        description="Event ids excluded from SMS notifications",
    )

    notification_excluded_email: List[int] = Field(
        default_factory=list,
        description="Event ids excluded from email notifications",
    )

    debug: bool = Field(
        False,
        description="Re-raise persistence errors instead of swallowing them",
    )

    log_level: str = Field(
        "INFO",
        description="Level used by configure_logging",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unsupported log level '{v}'")
        return level

    @field_validator("database_url")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        # Hosted Postgres providers hand out postgres:// URLs
        if v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql://", 1)
        return v

    @classmethod
    def from_env(cls) -> "AuditSettings":
        """
        Load settings from ACTIVITY_AUDIT_* environment variables.

        DATABASE_URL is honoured as-is for the database connection.
        """
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./activity_audit.db"),
            log_aggregation=env_bool("ACTIVITY_AUDIT_LOG_AGGREGATION", True),
            failed_event_log_increment_limit=int(
                os.getenv("ACTIVITY_AUDIT_FAILED_EVENT_LOG_INCREMENT_LIMIT", "0")
            ),
            verbose_logging=env_bool("ACTIVITY_AUDIT_VERBOSE_LOGGING", False),
            log_referer=env_bool("ACTIVITY_AUDIT_LOG_REFERER", True),
            excluded_event_ids=env_int_list("ACTIVITY_AUDIT_EXCLUDED_EVENT_IDS"),
            notification_excluded_sms=env_int_list(
                "ACTIVITY_AUDIT_NOTIFICATION_EXCLUDED_SMS"
            ),
            notification_excluded_email=env_int_list(
                "ACTIVITY_AUDIT_NOTIFICATION_EXCLUDED_EMAIL"
            ),
            debug=env_bool("ACTIVITY_AUDIT_DEBUG", False),
            log_level=os.getenv("ACTIVITY_AUDIT_LOG_LEVEL", "INFO"),
        )

    model_config = {
        "frozen": True,
    }

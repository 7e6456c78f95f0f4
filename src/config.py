"""
Centralized configuration with environment variable overrides.

Scheduling granularity, blocking statuses, hold lifetimes, and the
message debounce window are all configurable here. Nothing is
hardcoded in the engine or the booking path.
"""

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

VALID_STATUSES = (
    "scheduled",
    "checked_in",
    "in_progress",
    "completed",
    "canceled",
    "no_show",
)
VALID_COMBINE_MODES = ("latest", "concatenate")


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_list(env_var: str, default: str) -> tuple[str, ...]:
    """Parse a comma-separated env var into a tuple of trimmed values."""
    raw = os.getenv(env_var, default)
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class SchedulingConfig:
    """Slot enumeration and overlap settings."""

    slot_step_minutes: int = _safe_int("SLOT_STEP_MINUTES", "30")
    occupying_statuses: tuple[str, ...] = _safe_list(
        "OCCUPYING_STATUSES", "scheduled,checked_in,in_progress"
    )
    default_timezone: str = os.getenv("DEFAULT_TIMEZONE", "UTC")


@dataclass(frozen=True)
class BookingConfig:
    """Commit-path settings."""

    hold_ttl_seconds: int = _safe_int("BOOKING_HOLD_TTL_SECONDS", "30")


@dataclass(frozen=True)
class MessagingConfig:
    """Inbound chat buffering settings."""

    debounce_quiet_ms: int = _safe_int("DEBOUNCE_QUIET_MS", "4000")
    combine_mode: str = os.getenv("DEBOUNCE_COMBINE_MODE", "latest")
    stale_buffer_threshold_sec: int = _safe_int("STALE_BUFFER_THRESHOLD_SECONDS", "300")
    cleanup_interval_sec: int = _safe_int("BUFFER_CLEANUP_INTERVAL_SECONDS", "600")
    max_processed_message_ids: int = _safe_int("MAX_PROCESSED_MESSAGE_IDS", "1000")


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    booking: BookingConfig = field(default_factory=BookingConfig)
    messaging: MessagingConfig = field(default_factory=MessagingConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    service_name: str = os.getenv("SERVICE_NAME", "salon-scheduling")


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    step = config.scheduling.slot_step_minutes
    if not 1 <= step <= 1440:
        raise ValueError(f"SLOT_STEP_MINUTES must be between 1 and 1440, got {step}")

    if not config.scheduling.occupying_statuses:
        raise ValueError("OCCUPYING_STATUSES must name at least one status")
    for status in config.scheduling.occupying_statuses:
        if status not in VALID_STATUSES:
            raise ValueError(
                f"OCCUPYING_STATUSES contains unknown status {status!r}. "
                f"Valid: {list(VALID_STATUSES)}"
            )

    if config.booking.hold_ttl_seconds < 1:
        raise ValueError(
            f"BOOKING_HOLD_TTL_SECONDS must be >= 1, got {config.booking.hold_ttl_seconds}"
        )

    if config.messaging.debounce_quiet_ms < 0:
        raise ValueError(
            f"DEBOUNCE_QUIET_MS must be >= 0, got {config.messaging.debounce_quiet_ms}"
        )
    if config.messaging.combine_mode not in VALID_COMBINE_MODES:
        raise ValueError(
            f"DEBOUNCE_COMBINE_MODE must be one of {list(VALID_COMBINE_MODES)}, "
            f"got {config.messaging.combine_mode!r}"
        )
    if config.messaging.stale_buffer_threshold_sec < 1:
        raise ValueError(
            "STALE_BUFFER_THRESHOLD_SECONDS must be >= 1, "
            f"got {config.messaging.stale_buffer_threshold_sec}"
        )
    if config.messaging.cleanup_interval_sec < 1:
        raise ValueError(
            "BUFFER_CLEANUP_INTERVAL_SECONDS must be >= 1, "
            f"got {config.messaging.cleanup_interval_sec}"
        )
    if config.messaging.max_processed_message_ids < 1:
        raise ValueError(
            "MAX_PROCESSED_MESSAGE_IDS must be >= 1, "
            f"got {config.messaging.max_processed_message_ids}"
        )


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger.info("Configuration loaded for '%s'", config.service_name)
    return config


# Singleton instance
settings = load_config()

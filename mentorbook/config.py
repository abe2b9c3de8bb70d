"""
Configuration management using Pydantic models loaded from YAML.
"""

import logging
from pathlib import Path
from typing import Optional

import pendulum
import yaml
from pydantic import BaseModel, Field, field_validator

from .domain.schedule import BookingPolicy


class BookingPolicyConfig(BaseModel):
    """Policy applied to schedules that do not bring their own."""
    buffer_minutes: int = 15
    min_notice_hours: int = 24
    max_advance_days: int = 90

    @field_validator("buffer_minutes", "min_notice_hours")
    @classmethod
    def validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError(f"Value must be >= 0, got {value}")
        return value

    @field_validator("max_advance_days")
    @classmethod
    def validate_horizon(cls, value: int) -> int:
        """Ensure bookings can be made at least one day ahead."""
        if value < 1:
            raise ValueError(f"max_advance_days must be >= 1, got {value}")
        return value

    def to_policy(self, timezone: str) -> BookingPolicy:
        return BookingPolicy(
            timezone=timezone,
            buffer_minutes=self.buffer_minutes,
            min_notice_hours=self.min_notice_hours,
            max_advance_days=self.max_advance_days,
        )


class LedgerConfig(BaseModel):
    retry_attempts: int = 3
    free_credit_amount: int = 100

    @field_validator("retry_attempts")
    @classmethod
    def validate_retries(cls, value: int) -> int:
        if value < 1:
            raise ValueError("retry_attempts must be at least 1")
        return value

    @field_validator("free_credit_amount")
    @classmethod
    def validate_free_credits(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("free_credit_amount must be greater than zero")
        return value


class BookingConfig(BaseModel):
    retry_attempts: int = 3
    default_duration_minutes: int = 60
    # Pending, uncharged appointments younger than this may still be mid-booking.
    orphan_grace_minutes: int = 5

    @field_validator("retry_attempts")
    @classmethod
    def validate_retries(cls, value: int) -> int:
        if value < 1:
            raise ValueError("retry_attempts must be at least 1")
        return value

    @field_validator("default_duration_minutes")
    @classmethod
    def validate_duration(cls, value: int) -> int:
        """Services are at least 15 minutes long."""
        if value < 15:
            raise ValueError("default_duration_minutes must be at least 15")
        return value

    @field_validator("orphan_grace_minutes")
    @classmethod
    def validate_grace(cls, value: int) -> int:
        if value < 0:
            raise ValueError("orphan_grace_minutes must not be negative")
        return value


class EngineConfig(BaseModel):
    """Application configuration."""
    timezone: str = "UTC"
    state_file: Path = Path("mentorbook_state.yaml")
    log_level: str = "WARNING"
    default_policy: BookingPolicyConfig = Field(default_factory=BookingPolicyConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    booking: BookingConfig = Field(default_factory=BookingConfig)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            pendulum.timezone(value)
        except (ValueError, KeyError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {value}")
        return level

    def default_booking_policy(self) -> BookingPolicy:
        return self.default_policy.to_policy(self.timezone)

    def resolve_state_file(self, base_dir: Optional[Path] = None) -> Path:
        """Resolve a relative state file against ``base_dir`` (the config's folder)."""
        if self.state_file.is_absolute() or base_dir is None:
            return self.state_file
        return base_dir / self.state_file

    @classmethod
    def load_from_yaml(cls, config_path: Path) -> "EngineConfig":
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to the YAML config file

        Returns:
            EngineConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        if not config_path.exists():
            raise FileNotFoundError(
                f"Config file not found: {config_path}\n"
                f"Please create a mentorbook.yaml file. See mentorbook.example.yaml for reference."
            )

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ValueError("Config file must contain a mapping at the root level.")

        return cls(**data)


def get_default_config_path() -> Path:
    """Get the default configuration file path."""
    # Look for mentorbook.yaml in current directory
    current_dir = Path.cwd()
    config_path = current_dir / "mentorbook.yaml"

    if not config_path.exists():
        # Try in the project root (parent of the package)
        project_root = Path(__file__).parent.parent
        config_path = project_root / "mentorbook.yaml"

    return config_path

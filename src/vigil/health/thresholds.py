"""Configurable thresholds for the health monitor."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator


class HealthThresholds(BaseModel):
    """Sampling cadence and alert thresholds.

    Defaults are the values the supervisor has run with in long unattended
    jobs: sample every minute, warn after 15 minutes without a heartbeat,
    treat 30 minutes as a likely crash.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    # Cadence
    interval_seconds: float = Field(default=60.0, gt=0)
    ring_buffer_size: int = Field(default=120, ge=1)

    # Liveness (seconds since heartbeat)
    stall_warning_seconds: float = Field(default=900.0, gt=0)
    stall_critical_seconds: float = Field(default=1800.0, gt=0)

    # Retry pressure
    consecutive_failure_warning: int = Field(default=3, ge=1)

    # Host resources
    max_disk_used_percent: float = Field(default=90.0, gt=0, le=100)
    max_memory_percent: float = Field(default=90.0, gt=0, le=100)
    max_load_per_cpu: float = Field(default=2.0, gt=0)

    # Progress
    slow_progress_after_seconds: float = Field(default=7200.0, gt=0)
    slow_progress_min_ratio: float = Field(default=0.2, ge=0, le=1)

    # Network (no URLs = check disabled)
    network_check_urls: tuple[str, ...] = ()
    network_timeout_seconds: float = Field(default=5.0, gt=0)

    # Error patterns over the most recent retry records
    error_pattern_window: int = Field(default=50, ge=1)
    api_error_warning: int = Field(default=5, ge=1)
    repeated_error_warning: int = Field(default=3, ge=2)

    # Alerting
    alert_cooldown_seconds: float = Field(default=300.0, ge=0)

    @model_validator(mode="after")
    def _critical_after_warning(self) -> HealthThresholds:
        if self.stall_critical_seconds < self.stall_warning_seconds:
            raise ValueError("stall_critical_seconds must be >= stall_warning_seconds")
        return self

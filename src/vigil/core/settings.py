"""Runtime settings for vigil.

Every knob the supervisor exposes (state directory, retry policy, health
thresholds, checkpoint retention) is declared once here and read from, in
increasing priority: built-in defaults, an optional YAML settings file,
``.env``, ``VIGIL_*`` environment variables, and explicit keyword overrides.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.
    A day-long run that dies at hour 20 because of a typo in a threshold is
    the worst possible outcome, so every value is type-checked at startup.

    - **Pydantic validation:** bad values fail before the first step runs
    - **Environment-driven:** ``VIGIL_RETRY__MAX_ATTEMPTS=5`` reaches the nested policy
    - **Sensible defaults:** the values that held up in long unattended runs

Examples:
    >>> settings = VigilSettings()
    >>> settings.retry.max_attempts
    3
    >>> settings = load_settings(Path("vigil.yaml"), state_dir=Path("/tmp/run"))

Tags:
    settings, configuration, pydantic, environment, vigil

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from contextvars import ContextVar
from pathlib import Path
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from vigil.core.errors import ConfigError
from vigil.execution.retry import RetryPolicy
from vigil.health.thresholds import HealthThresholds

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})
_CONFIG_FILE: ContextVar[Path | None] = ContextVar("vigil_config_file", default=None)


class CheckpointSettings(BaseModel):
    """Checkpoint retention."""

    model_config = ConfigDict(extra="forbid")

    keep: int = Field(default=10, ge=1, description="Checkpoints kept by cleanup")
    backup_keep: int = Field(default=20, ge=1, description="Status backups kept before pruning")


class RetentionSettings(BaseModel):
    """What ``retry --cleanup`` keeps besides checkpoints."""

    model_config = ConfigDict(extra="forbid")

    log_max_records: int = Field(default=1000, ge=1, description="Records kept per JSONL log (current task excepted)")
    report_max_age_days: float = Field(default=7.0, gt=0, description="Age after which generated reports are deleted")


class VigilSettings(BaseSettings):
    """Settings for one supervised run.

    Fields
    ──────
    state_dir                     : Directory holding status, logs and checkpoints
    log_level                     : Structlog log level
    json_logs                     : Force JSON (True) or console (False) logs; auto if unset
    default_step_timeout_seconds  : Timeout for plan steps that do not set one
    heartbeat_interval_seconds    : How often the heartbeat thread refreshes liveness
    abort_poll_seconds            : Longest a backoff wait goes without checking for abort
    retry / health / checkpoint / retention : Nested component settings
    """

    model_config = SettingsConfigDict(
        env_prefix="VIGIL_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Storage ──────────────────────────────────────────────────
    state_dir: Path = Field(default=Path(".vigil"))

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool | None = None

    # ── Execution ────────────────────────────────────────────────
    default_step_timeout_seconds: float = Field(default=3600.0, gt=0)
    heartbeat_interval_seconds: float = Field(default=30.0, gt=0)
    abort_poll_seconds: float = Field(default=1.0, gt=0)

    # ── Components ───────────────────────────────────────────────
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    health: HealthThresholds = Field(default_factory=HealthThresholds)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    retention: RetentionSettings = Field(default_factory=RetentionSettings)

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        level = v.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}, got {v!r}")
        return level

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        sources: list[PydanticBaseSettingsSource] = [init_settings, env_settings, dotenv_settings]
        config_file = _CONFIG_FILE.get()
        if config_file is not None:
            sources.append(YamlConfigSettingsSource(settings_cls, yaml_file=config_file))
        return tuple(sources)


def load_settings(config_file: Path | None = None, **overrides: Any) -> VigilSettings:
    """Build :class:`VigilSettings`, optionally layering a YAML file below the environment.

    Keyword overrides with a ``None`` value are ignored so CLI options can be
    passed straight through.

    Raises:
        ConfigError: If the file is missing, is not a YAML mapping, or any value is invalid.
    """
    if config_file is not None:
        if not config_file.is_file():
            raise ConfigError(f"Settings file not found: {config_file}").with_context(
                path=str(config_file)
            )
        try:
            loaded = yaml.safe_load(config_file.read_text(encoding="utf-8"))
        except (yaml.YAMLError, UnicodeDecodeError) as e:
            raise ConfigError(f"Settings file is not valid YAML: {e}", cause=e).with_context(
                path=str(config_file)
            ) from e
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigError("Settings file must contain a mapping").with_context(
                path=str(config_file)
            )

    token = _CONFIG_FILE.set(config_file)
    try:
        return VigilSettings(**{k: v for k, v in overrides.items() if v is not None})
    except pydantic.ValidationError as e:
        raise ConfigError(f"Invalid settings: {e}", cause=e) from e
    finally:
        _CONFIG_FILE.reset(token)


__all__ = ["CheckpointSettings", "RetentionSettings", "VigilSettings", "load_settings"]

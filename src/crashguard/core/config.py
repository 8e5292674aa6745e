# src/crashguard/core/config.py
"""
Configuration schema and loading for crashguard.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction. Every heuristic
threshold of the risk model and trigger engine is a setting, not a
module constant.
"""

import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, model_validator

# ${VAR} or ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


class RiskSettings(BaseModel):
    """Crash-risk model configuration.

    Each category has a maximum. ratio = current / max, and a category is
    classified warning / danger / critical once its ratio reaches the
    corresponding *_ratio. Overall risk is the highest category.

    Example YAML:
        risk:
          context_budget_tokens: 200000
          message_count_max: 80
          warning_ratio: 0.6
    """

    model_config = {"frozen": True}

    context_budget_tokens: int = Field(default=200_000, gt=0, description="Context window size in tokens")
    context_usage_max: float = Field(default=1.0, gt=0, le=1.0, description="Context usage treated as 100% risk")
    message_count_max: int = Field(default=80, gt=0, description="Message count treated as 100% risk")
    tool_failure_rate_max: float = Field(default=0.25, gt=0, le=1.0, description="Tool failure rate treated as 100% risk")
    session_duration_max_seconds: float = Field(default=7200.0, gt=0, description="Session age treated as 100% risk")
    warning_ratio: float = Field(default=0.60, gt=0, le=1.0)
    danger_ratio: float = Field(default=0.75, gt=0, le=1.0)
    critical_ratio: float = Field(default=0.90, gt=0, le=1.0)
    context_weight: float = Field(default=0.40, ge=0)
    message_weight: float = Field(default=0.20, ge=0)
    failure_weight: float = Field(default=0.25, ge=0)
    duration_weight: float = Field(default=0.15, ge=0)
    min_tool_calls_for_failure_rate: int = Field(
        default=3,
        ge=1,
        description="Tool calls required before the failure rate counts toward risk",
    )
    chars_per_token: float = Field(default=4.0, gt=0, description="Tokenizer approximation")

    @model_validator(mode="after")
    def validate_ratio_order(self) -> "RiskSettings":
        if not self.warning_ratio < self.danger_ratio < self.critical_ratio:
            raise ValueError(
                f"risk ratios must be strictly ascending: warning ({self.warning_ratio}) < "
                f"danger ({self.danger_ratio}) < critical ({self.critical_ratio})"
            )
        return self


class TriggerSettings(BaseModel):
    """Checkpoint trigger configuration.

    Triggers are evaluated in priority order: critical risk, danger risk,
    tool-call interval, time interval, manual request, session end.
    """

    model_config = {"frozen": True}

    tool_call_interval: int = Field(default=5, gt=0, description="Checkpoint every N tool calls")
    time_interval_seconds: float = Field(default=600.0, gt=0, description="Checkpoint at least this often")
    min_gap_seconds: float = Field(default=1.0, ge=0, description="Debounce between two checkpoints")
    risk_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Re-checkpoint interval while risk stays at danger or above",
    )


class CheckpointSettings(BaseModel):
    """Checkpoint encoding configuration."""

    model_config = {"frozen": True}

    max_checkpoint_bytes: int = Field(default=200_000, gt=0, description="Hard size limit per checkpoint")
    compression_level: int = Field(default=6, ge=0, le=9, description="zlib compression level")
    signal_window: int = Field(default=50, gt=0, description="Signal snapshots kept in memory")


class RetrySettings(BaseModel):
    """Retry behavior for storage operations."""

    model_config = {"frozen": True}

    max_attempts: int = Field(default=3, gt=0, description="Maximum attempts")
    initial_delay_seconds: float = Field(default=0.05, gt=0, description="Initial backoff delay")
    max_delay_seconds: float = Field(default=1.0, gt=0, description="Maximum backoff delay")
    exponential_base: float = Field(default=2.0, gt=1.0, description="Exponential backoff base")


class StorageSettings(BaseModel):
    """Checkpoint database configuration."""

    model_config = {"frozen": True}

    url: str = Field(
        default="sqlite:///./.crashguard/checkpoints.db",
        description="SQLAlchemy connection URL",
    )
    retry: RetrySettings = Field(default_factory=RetrySettings)


class RetentionSettings(BaseModel):
    """Retention sweep configuration."""

    model_config = {"frozen": True}

    max_age_days: float = Field(default=7.0, gt=0, description="Checkpoint age eligible for deletion")
    keep_last_n: int = Field(default=3, ge=0, description="Newest checkpoints always kept per session")
    signal_history_days: float = Field(default=2.0, gt=0, description="Signal history age eligible for deletion")


class ResumeSettings(BaseModel):
    """Resume detection configuration."""

    model_config = {"frozen": True}

    min_confidence: float = Field(default=0.5, ge=0, le=1.0, description="Confidence needed to offer a resume")
    stale_after_hours: float = Field(default=24.0, gt=0, description="Age at which confidence bottoms out")


class LoggingSettings(BaseModel):
    """Logging output configuration."""

    model_config = {"frozen": True}

    level: str = Field(default="INFO", description="Root log level")
    json_output: bool = Field(default=False, description="Emit JSON instead of console output")

    @model_validator(mode="after")
    def validate_level(self) -> "LoggingSettings":
        if self.level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {self.level!r}")
        return self


class CrashGuardSettings(BaseModel):
    """Top-level crashguard configuration.

    All sections are optional in YAML; omitted sections use documented
    defaults. Validated and frozen after construction.
    """

    model_config = {"frozen": True}

    risk: RiskSettings = Field(default_factory=RiskSettings)
    triggers: TriggerSettings = Field(default_factory=TriggerSettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    retention: RetentionSettings = Field(default_factory=RetentionSettings)
    resume: ResumeSettings = Field(default_factory=ResumeSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values.

    Args:
        config: Configuration dict (may contain nested structures)

    Returns:
        New dict with environment variables expanded
    """
    import os

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default = match.group(2)
            env_value = os.environ.get(var_name)
            if env_value is not None:
                return env_value
            if default is not None:
                return default
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        elif isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [_expand_value(item) for item in value]
        else:
            return value

    return {k: _expand_value(v) for k, v in config.items()}


def _lower_keys(value: Any) -> Any:
    """Lower-case mapping keys at every depth (Dynaconf upper-cases env keys)."""
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_lower_keys(item) for item in value]
    return value


def load_settings(config_path: Path) -> CrashGuardSettings:
    """Load settings from YAML file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (CRASHGUARD_*) - highest priority
    2. Config file (crashguard.yaml)
    3. Defaults from Pydantic schema - lowest priority

    Environment variable format: CRASHGUARD_TRIGGERS__TOOL_CALL_INTERVAL for
    nested keys.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated CrashGuardSettings instance

    Raises:
        pydantic.ValidationError: If configuration fails validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="CRASHGUARD",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k: v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    raw_config = _lower_keys(raw_config)
    raw_config = _expand_env_vars(raw_config)

    return CrashGuardSettings(**raw_config)

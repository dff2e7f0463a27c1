"""
Configuration for stallguard.

Settings are pydantic-validated and loaded from:
1. Built-in defaults
2. Environment variables prefixed with STALLGUARD_ (nested with __)
3. An optional YAML file
4. Explicit overrides (command line)

The resulting object is frozen; nothing changes after load.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from stallguard.errors import FatalInitFailure


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"

    model_config = {"frozen": True}


class SupervisorConfig(BaseSettings):
    """Every tunable threshold of the supervisor."""

    model_config = SettingsConfigDict(
        env_prefix="STALLGUARD_",
        env_nested_delimiter="__",
        frozen=True,
        extra="ignore",
    )

    # Stall thresholds (seconds)
    warn_threshold: float = 30.0
    action_threshold: float = 120.0
    critical_threshold: float = 1800.0

    # Recovery limits
    max_recovery_attempts: int = Field(default=3, ge=1)
    max_thread_recovery_per_cycle: int = Field(default=2, ge=1)
    max_daily_recoveries: int = Field(default=10, ge=0)
    action_cooldown: float = Field(default=300.0, ge=0)
    grace_window: float = Field(default=0.5, gt=0, le=1.0)

    # Sub-cycle intervals (seconds)
    poll_tick: float = Field(default=1.0, gt=0)
    monitor_interval: float = Field(default=5.0, gt=0)
    safety_check_interval: float = Field(default=60.0, gt=0)
    memory_trim_interval: float = Field(default=1800.0, gt=0)

    # Stability ceilings
    max_memory_mb: float = Field(default=8192.0, gt=0)
    max_cpu_percent: float = Field(default=90.0, gt=0)
    max_delayed_threads: int = Field(default=5, ge=0)
    memory_trim_ratio: float = Field(default=0.8, gt=0, le=1.0)

    # Wait channels that count as an execution-delay stall
    stall_wait_reasons: tuple[str, ...] = (
        "hrtimer_nanosleep",
        "do_nanosleep",
        "clock_nanosleep",
    )
    wake_signal: str = "SIGCONT"
    # None disables memory relief; servers usually expose e.g. SIGUSR2 for this
    memory_relief_signal: str | None = None

    report_dir: Path = Path("reports")
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def purge_window(self) -> float:
        """How long a tracked thread may be absent before it is purged."""
        return 2 * self.monitor_interval

    @model_validator(mode="after")
    def _check_threshold_order(self) -> "SupervisorConfig":
        if not self.warn_threshold <= self.action_threshold <= self.critical_threshold:
            raise ValueError(
                "thresholds must satisfy warn_threshold <= action_threshold <= critical_threshold"
            )
        return self


def load_config(config_path: str | Path | None = None, **overrides: Any) -> SupervisorConfig:
    """
    Load configuration from the environment, a YAML file and explicit overrides.

    Args:
        config_path: Optional YAML file. A path that does not exist is fatal.
        overrides: Keyword values that win over both file and environment.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise FatalInitFailure(f"config file not found: {path}")
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise FatalInitFailure(f"config file must contain a mapping: {path}")

    raw.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return SupervisorConfig(**raw)
    except ValidationError as exc:
        raise FatalInitFailure(f"invalid configuration: {exc}") from exc

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from vps_control.core.exceptions import ConfigError


class RuntimeConfig(BaseModel):
    log_dir: str = "./logs"
    log_level: str = "INFO"


class PersistenceConfig(BaseModel):
    db_path: str = "./data/control.sqlite"


class AgentConfig(BaseModel):
    port: int = 80
    health_timeout: float = 5.0
    control_timeout: float = 10.0
    restart_timeout: float = 15.0
    signal_timeout: float = 5.0
    preflight_health_timeout: float = 8.0
    balance_timeout: float = 10.0
    ping_timeout: float = 15.0
    update_timeout: float = 30.0
    signal_path: str = "/opt/hft-bot/app/data/START_SIGNAL"
    env_path: str = "/opt/hft-bot/.env"
    update_secret_env: str = "BOT_UPDATE_SECRET"
    update_verify_wait_seconds: float = 5.0
    fallback_port: int = 8080
    bot_restart_command: str = "systemctl restart hft-bot"
    bot_stop_command: str = "systemctl stop hft-bot"

    @field_validator(
        "health_timeout",
        "control_timeout",
        "restart_timeout",
        "signal_timeout",
        "preflight_health_timeout",
        "balance_timeout",
        "ping_timeout",
        "update_timeout",
    )
    @classmethod
    def _timeout_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be > 0")
        return v

    def base_url(self, ip: str, port: int | None = None) -> str:
        p = self.port if port is None else port
        return f"http://{ip}" if p == 80 else f"http://{ip}:{p}"

    def update_secret(self) -> str | None:
        return os.getenv(self.update_secret_env) or None


class SshConfig(BaseModel):
    username: str = "root"
    key_path: str | None = None
    connect_timeout: float = 10.0
    command_timeout: float = 30.0


class ProbeConfig(BaseModel):
    deadline_seconds: float = 5.0
    failure_threshold: int = 3

    @field_validator("failure_threshold")
    @classmethod
    def _threshold_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("failure_threshold must be >= 1")
        return v


class AlertsConfig(BaseModel):
    cooldown_seconds: float = 300.0


class SchedulerConfig(BaseModel):
    health_interval_seconds: int = 60
    cooldown_sweep_seconds: int = 60
    daily_reset_hour_utc: int = 0
    max_workers: int = 8

    @field_validator("daily_reset_hour_utc")
    @classmethod
    def _hour_bounds(cls, v: int) -> int:
        if not 0 <= v <= 23:
            raise ValueError("daily_reset_hour_utc must be within 0..23")
        return v


class PreflightConfig(BaseModel):
    min_balance_usdt: float = 10.0
    min_credential_length: int = 10
    ai_min_confidence: float = 70.0
    ai_max_signal_age_seconds: float = 60.0
    ai_timeframes: list[int] = Field(default_factory=lambda: [1, 3, 5])
    default_max_position_size: float = 500.0

    @field_validator("ai_timeframes")
    @classmethod
    def _timeframes_non_empty(cls, v: list[int]) -> list[int]:
        if not v:
            raise ValueError("ai_timeframes must not be empty")
        return v


class MigrationConfig(BaseModel):
    stop_wait_seconds: float = 5.0
    rollback_wait_seconds: float = 3.0


class ProgressionConfig(BaseModel):
    paper_unlock_trades: int = 20
    live_unlock_trades: int = 50

    @field_validator("paper_unlock_trades", "live_unlock_trades")
    @classmethod
    def _threshold_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("unlock thresholds must be >= 1")
        return v


class RetryConfig(BaseModel):
    max_attempts: int = 5
    base_seconds: float = 0.25
    factor: float = 2.0
    cap_seconds: float = 8.0


class ProvisioningConfig(BaseModel):
    poll_attempts: int = 30
    poll_interval_seconds: float = 10.0
    default_exchange: str = "binance"


class ApiConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    handler_budget_seconds: float = 30.0
    api_key_env: str = "CONTROL_API_KEY"

    def api_key(self) -> str | None:
        return os.getenv(self.api_key_env) or None


class AppConfig(BaseModel):
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    ssh: SshConfig = Field(default_factory=SshConfig)
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    preflight: PreflightConfig = Field(default_factory=PreflightConfig)
    migration: MigrationConfig = Field(default_factory=MigrationConfig)
    progression: ProgressionConfig = Field(default_factory=ProgressionConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    provisioning: ProvisioningConfig = Field(default_factory=ProvisioningConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)


def load_yaml(path: Path) -> dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except Exception as exc:
        raise ConfigError(f"Failed reading config yaml: {path}") from exc


def load_config(config_path: str | Path) -> AppConfig:
    load_dotenv(override=False)
    raw = load_yaml(Path(config_path))
    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a mapping: {config_path}")
    try:
        return AppConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc

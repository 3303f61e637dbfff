from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Any


class HostStatus(str, Enum):
    PROVISIONING = "provisioning"
    RUNNING = "running"
    WARNING = "warning"
    TIMEOUT = "timeout"
    OFFLINE = "offline"
    STOPPED = "stopped"
    FAILED = "failed"


TERMINAL_HOST_STATUSES = (HostStatus.STOPPED.value, HostStatus.FAILED.value)


class BotStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    STARTING = "starting"
    ERROR = "error"
    UNKNOWN = "unknown"


class TradingMode(str, Enum):
    SIMULATION = "simulation"
    PAPER = "paper"
    LIVE = "live"


@dataclass(frozen=True)
class HostRow:
    id: str
    provider: str
    region: str | None
    instance_type: str | None
    instance_id: str | None
    outbound_ip: str | None
    label: str | None
    ssh_key_ref: str | None
    status: str
    bot_status: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class DeploymentRow:
    id: str
    host_id: str
    is_primary: bool
    status: str
    bot_status: str
    last_health_check: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class HealthSampleRow:
    id: int
    host_ip: str
    recorded_at: str
    is_healthy: bool
    latency_ms: float | None
    consecutive_failures: int
    status: str | None
    error_message: str | None


@dataclass(frozen=True)
class ExchangeConnectionRow:
    id: int
    exchange_name: str
    is_connected: bool
    api_key: str | None
    api_secret: str | None
    api_passphrase: str | None
    last_ping_ms: float | None
    balance_usdt: float | None
    balance_updated_at: str | None
    last_error: str | None
    last_error_at: str | None


@dataclass(frozen=True)
class TradingConfigRow:
    kill_switch_enabled: bool
    trading_enabled: bool
    max_position_size: float | None
    bot_status: str
    trading_mode: str
    updated_at: str


@dataclass(frozen=True)
class ProgressionRow:
    successful_simulation_trades: int
    successful_paper_trades: int
    total_simulation_profit: float
    total_paper_profit: float
    paper_unlocked: bool
    paper_unlocked_at: str | None
    live_unlocked: bool
    live_unlocked_at: str | None
    updated_at: str


_BOOL_FIELDS = {
    "is_primary",
    "is_healthy",
    "is_connected",
    "kill_switch_enabled",
    "trading_enabled",
    "paper_unlocked",
    "live_unlocked",
}


def row_to(cls: type, row: sqlite3.Row | None) -> Any:
    if row is None:
        return None
    names = set(cls.__dataclass_fields__)
    data = {k: row[k] for k in row.keys() if k in names}
    for k in _BOOL_FIELDS & data.keys():
        data[k] = bool(data[k])
    return cls(**data)

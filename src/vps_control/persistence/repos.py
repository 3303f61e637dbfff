from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterable

from vps_control.core.exceptions import ConcurrentUpdateError
from vps_control.core.utils import safe_json_dumps
from vps_control.persistence.models import (
    TERMINAL_HOST_STATUSES,
    BotStatus,
    DeploymentRow,
    ExchangeConnectionRow,
    HealthSampleRow,
    HostRow,
    ProgressionRow,
    TradingConfigRow,
    TradingMode,
    row_to,
)

if TYPE_CHECKING:
    from vps_control.persistence.db import Database


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _placeholders(values: Iterable[Any]) -> str:
    return ",".join("?" for _ in values)


class HostRepo:
    def __init__(self, db: "Database") -> None:
        self.db = db

    def insert(
        self,
        *,
        provider: str,
        outbound_ip: str | None,
        region: str | None = None,
        instance_type: str | None = None,
        instance_id: str | None = None,
        label: str | None = None,
        ssh_key_ref: str | None = None,
        status: str = "provisioning",
        bot_status: str = BotStatus.STOPPED.value,
    ) -> str:
        host_id = str(uuid.uuid4())
        now = _utc_iso()
        self.db.execute(
            """
            INSERT INTO hosts(
              id, provider, region, instance_type, instance_id, outbound_ip, label,
              ssh_key_ref, status, bot_status, created_at, updated_at
            ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                host_id,
                provider,
                region,
                instance_type,
                instance_id,
                outbound_ip,
                label,
                ssh_key_ref,
                status,
                bot_status,
                now,
                now,
            ),
        )
        return host_id

    def get(self, host_id: str) -> HostRow | None:
        return row_to(HostRow, self.db.query_one("SELECT * FROM hosts WHERE id = ?", (host_id,)))

    def find_live(self, provider: str, ip: str) -> HostRow | None:
        row = self.db.query_one(
            f"""
            SELECT * FROM hosts
            WHERE provider = ? AND outbound_ip = ?
              AND status NOT IN ({_placeholders(TERMINAL_HOST_STATUSES)})
            """,
            (provider, ip, *TERMINAL_HOST_STATUSES),
        )
        return row_to(HostRow, row)

    def find_by_ip(self, ip: str) -> HostRow | None:
        row = self.db.query_one(
            f"""
            SELECT * FROM hosts
            WHERE outbound_ip = ?
            ORDER BY status IN ({_placeholders(TERMINAL_HOST_STATUSES)}), updated_at DESC
            LIMIT 1
            """,
            (ip, *TERMINAL_HOST_STATUSES),
        )
        return row_to(HostRow, row)

    def find_by_instance(self, provider: str, instance_id: str) -> HostRow | None:
        row = self.db.query_one(
            "SELECT * FROM hosts WHERE provider = ? AND instance_id = ? ORDER BY updated_at DESC LIMIT 1",
            (provider, instance_id),
        )
        return row_to(HostRow, row)

    def list_non_terminal(self) -> list[HostRow]:
        rows = self.db.query_all(
            f"""
            SELECT * FROM hosts
            WHERE outbound_ip IS NOT NULL
              AND status NOT IN ({_placeholders(TERMINAL_HOST_STATUSES)})
            ORDER BY created_at
            """,
            TERMINAL_HOST_STATUSES,
        )
        return [row_to(HostRow, r) for r in rows]

    def set_status(self, host_id: str, status: str) -> int:
        return self.db.execute(
            "UPDATE hosts SET status = ?, updated_at = ? WHERE id = ?",
            (status, _utc_iso(), host_id),
        )

    def set_network(self, host_id: str, *, instance_id: str | None, outbound_ip: str | None) -> int:
        return self.db.execute(
            """
            UPDATE hosts SET instance_id = COALESCE(?, instance_id),
              outbound_ip = COALESCE(?, outbound_ip), updated_at = ?
            WHERE id = ?
            """,
            (instance_id, outbound_ip, _utc_iso(), host_id),
        )

    def set_bot_status(
        self, host_id: str, bot_status: str, *, expected: Iterable[str] | None = None
    ) -> int:
        sql = "UPDATE hosts SET bot_status = ?, updated_at = ? WHERE id = ?"
        params: list[Any] = [bot_status, _utc_iso(), host_id]
        if expected is not None:
            exp = list(expected)
            sql += f" AND bot_status IN ({_placeholders(exp)})"
            params.extend(exp)
        return self.db.execute(sql, params)

    def clear_error(self, ip: str) -> int:
        return self.db.execute(
            "UPDATE hosts SET bot_status = 'stopped', updated_at = ? WHERE outbound_ip = ? AND bot_status = 'error'",
            (_utc_iso(), ip),
        )


class DeploymentRepo:
    def __init__(self, db: "Database") -> None:
        self.db = db

    def insert(self, *, host_id: str, is_primary: bool = False, status: str = "active") -> str:
        dep_id = str(uuid.uuid4())
        now = _utc_iso()
        host = self.db.query_one("SELECT bot_status FROM hosts WHERE id = ?", (host_id,))
        self.db.execute(
            """
            INSERT INTO deployments(id, host_id, is_primary, status, bot_status, created_at, updated_at)
            VALUES(?,?,?,?,?,?,?)
            """,
            (
                dep_id,
                host_id,
                int(is_primary),
                status,
                host["bot_status"] if host else BotStatus.STOPPED.value,
                now,
                now,
            ),
        )
        return dep_id

    def get(self, deployment_id: str) -> DeploymentRow | None:
        return row_to(
            DeploymentRow,
            self.db.query_one("SELECT * FROM deployments WHERE id = ?", (deployment_id,)),
        )

    def get_primary(self) -> DeploymentRow | None:
        return row_to(
            DeploymentRow,
            self.db.query_one(
                "SELECT * FROM deployments WHERE is_primary = 1 ORDER BY updated_at DESC LIMIT 1"
            ),
        )

    def list_primary(self) -> list[DeploymentRow]:
        rows = self.db.query_all("SELECT * FROM deployments WHERE is_primary = 1")
        return [row_to(DeploymentRow, r) for r in rows]

    def list_for_host(self, host_id: str) -> list[DeploymentRow]:
        rows = self.db.query_all(
            "SELECT * FROM deployments WHERE host_id = ? ORDER BY created_at", (host_id,)
        )
        return [row_to(DeploymentRow, r) for r in rows]

    def list_all(self) -> list[DeploymentRow]:
        rows = self.db.query_all("SELECT * FROM deployments ORDER BY created_at")
        return [row_to(DeploymentRow, r) for r in rows]

    def set_bot_status(
        self, deployment_id: str, bot_status: str, *, expected: Iterable[str] | None = None
    ) -> int:
        sql = "UPDATE deployments SET bot_status = ?, updated_at = ? WHERE id = ?"
        params: list[Any] = [bot_status, _utc_iso(), deployment_id]
        if expected is not None:
            exp = list(expected)
            sql += f" AND bot_status IN ({_placeholders(exp)})"
            params.extend(exp)
        return self.db.execute(sql, params)

    def touch_health(self, host_id: str, checked_at: str) -> int:
        return self.db.execute(
            "UPDATE deployments SET last_health_check = ? WHERE host_id = ?",
            (checked_at, host_id),
        )

    def clear_error(self, host_id: str) -> int:
        return self.db.execute(
            "UPDATE deployments SET bot_status = 'stopped', updated_at = ? WHERE host_id = ? AND bot_status = 'error'",
            (_utc_iso(), host_id),
        )

    def clear_all_primary(self) -> int:
        return self.db.execute(
            "UPDATE deployments SET is_primary = 0, updated_at = ? WHERE is_primary = 1",
            (_utc_iso(),),
        )

    def set_primary(self, deployment_id: str) -> int:
        return self.db.execute(
            "UPDATE deployments SET is_primary = 1, updated_at = ? WHERE id = ?",
            (_utc_iso(), deployment_id),
        )

    def retire_for_host(self, host_id: str) -> int:
        return self.db.execute(
            """
            UPDATE deployments
            SET is_primary = 0, status = 'stopped', bot_status = 'stopped', updated_at = ?
            WHERE host_id = ?
            """,
            (_utc_iso(), host_id),
        )


class HealthRepo:
    def __init__(self, db: "Database") -> None:
        self.db = db

    def latest_for_ip(self, ip: str) -> HealthSampleRow | None:
        return row_to(
            HealthSampleRow,
            self.db.query_one(
                "SELECT * FROM health_samples WHERE host_ip = ? ORDER BY recorded_at DESC, id DESC LIMIT 1",
                (ip,),
            ),
        )

    def insert(
        self,
        *,
        host_ip: str,
        is_healthy: bool,
        latency_ms: float | None,
        consecutive_failures: int,
        status: str | None = None,
        error_message: str | None = None,
        recorded_at: str | None = None,
    ) -> None:
        self.db.execute(
            """
            INSERT INTO health_samples(
              host_ip, recorded_at, is_healthy, latency_ms, consecutive_failures, status, error_message
            ) VALUES(?,?,?,?,?,?,?)
            """,
            (
                host_ip,
                recorded_at or _utc_iso(),
                int(is_healthy),
                latency_ms,
                int(consecutive_failures),
                status,
                error_message,
            ),
        )

    def list_recent(self, ip: str, limit: int = 100) -> list[HealthSampleRow]:
        rows = self.db.query_all(
            "SELECT * FROM health_samples WHERE host_ip = ? ORDER BY recorded_at DESC, id DESC LIMIT ?",
            (ip, limit),
        )
        return [row_to(HealthSampleRow, r) for r in rows]


class MetricsRepo:
    def __init__(self, db: "Database") -> None:
        self.db = db

    def upsert(self, provider: str, metrics: dict[str, float]) -> None:
        self.db.execute(
            """
            INSERT INTO metrics_snapshots(
              provider, cpu_percent, ram_percent, disk_percent, latency_ms, uptime_seconds,
              network_in_mbps, network_out_mbps, recorded_at
            ) VALUES(?,?,?,?,?,?,?,?,?)
            ON CONFLICT(provider) DO UPDATE SET
              cpu_percent = excluded.cpu_percent,
              ram_percent = excluded.ram_percent,
              disk_percent = excluded.disk_percent,
              latency_ms = excluded.latency_ms,
              uptime_seconds = excluded.uptime_seconds,
              network_in_mbps = excluded.network_in_mbps,
              network_out_mbps = excluded.network_out_mbps,
              recorded_at = excluded.recorded_at
            """,
            (
                provider,
                float(metrics.get("cpu_percent", 0.0)),
                float(metrics.get("ram_percent", 0.0)),
                float(metrics.get("disk_percent", 0.0)),
                float(metrics.get("latency_ms", 0.0)),
                float(metrics.get("uptime_seconds", 0.0)),
                float(metrics.get("network_in_mbps", 0.0)),
                float(metrics.get("network_out_mbps", 0.0)),
                _utc_iso(),
            ),
        )

    def get(self, provider: str) -> dict[str, Any] | None:
        row = self.db.query_one("SELECT * FROM metrics_snapshots WHERE provider = ?", (provider,))
        return dict(row) if row else None


class ExchangeRepo:
    def __init__(self, db: "Database") -> None:
        self.db = db

    def upsert(
        self,
        *,
        exchange_name: str,
        is_connected: bool = True,
        api_key: str | None = None,
        api_secret: str | None = None,
        api_passphrase: str | None = None,
    ) -> None:
        self.db.execute(
            """
            INSERT INTO exchange_connections(exchange_name, is_connected, api_key, api_secret, api_passphrase)
            VALUES(?,?,?,?,?)
            ON CONFLICT(exchange_name) DO UPDATE SET
              is_connected = excluded.is_connected,
              api_key = excluded.api_key,
              api_secret = excluded.api_secret,
              api_passphrase = excluded.api_passphrase
            """,
            (exchange_name, int(is_connected), api_key, api_secret, api_passphrase),
        )

    def list_connected(self) -> list[ExchangeConnectionRow]:
        rows = self.db.query_all(
            "SELECT * FROM exchange_connections WHERE is_connected = 1 ORDER BY exchange_name"
        )
        return [row_to(ExchangeConnectionRow, r) for r in rows]

    def get(self, exchange_name: str) -> ExchangeConnectionRow | None:
        return row_to(
            ExchangeConnectionRow,
            self.db.query_one(
                "SELECT * FROM exchange_connections WHERE exchange_name = ?", (exchange_name,)
            ),
        )

    def record_balance(self, exchange_id: int, balance_usdt: float) -> None:
        self.db.execute(
            """
            UPDATE exchange_connections
            SET balance_usdt = ?, balance_updated_at = ?, last_error = NULL, last_error_at = NULL
            WHERE id = ?
            """,
            (float(balance_usdt), _utc_iso(), exchange_id),
        )

    def record_error(self, exchange_id: int, error: str) -> None:
        self.db.execute(
            "UPDATE exchange_connections SET last_error = ?, last_error_at = ? WHERE id = ?",
            (error, _utc_iso(), exchange_id),
        )

    def record_ping(self, exchange_name: str, latency_ms: float | None, status: str, source: str) -> None:
        now = _utc_iso()
        self.db.execute(
            """
            INSERT INTO exchange_pings(exchange_name, latency_ms, status, source, recorded_at)
            VALUES(?,?,?,?,?)
            """,
            (exchange_name, latency_ms, status, source, now),
        )
        if latency_ms is not None:
            self.db.execute(
                "UPDATE exchange_connections SET last_ping_ms = ? WHERE lower(exchange_name) = lower(?)",
                (float(latency_ms), exchange_name),
            )


class CredentialPermissionRepo:
    def __init__(self, db: "Database") -> None:
        self.db = db

    def upsert_whitelist(self, provider: str, ip: str, *, credential_type: str = "api_key") -> None:
        self.db.execute(
            """
            INSERT INTO credential_permissions(
              provider, credential_type, ip_restricted, whitelisted_range, last_analyzed_at
            ) VALUES(?,?,1,?,?)
            ON CONFLICT(provider, credential_type) DO UPDATE SET
              ip_restricted = 1,
              whitelisted_range = excluded.whitelisted_range,
              last_analyzed_at = excluded.last_analyzed_at
            """,
            (provider, credential_type, ip, _utc_iso()),
        )

    def get(self, provider: str, credential_type: str = "api_key") -> dict[str, Any] | None:
        row = self.db.query_one(
            "SELECT * FROM credential_permissions WHERE provider = ? AND credential_type = ?",
            (provider, credential_type),
        )
        return dict(row) if row else None


class TradingConfigRepo:
    def __init__(self, db: "Database") -> None:
        self.db = db

    def get(self) -> TradingConfigRow:
        return row_to(TradingConfigRow, self.db.query_one("SELECT * FROM trading_config WHERE id = 1"))

    def update(self, *, expected_updated_at: str | None = None, **changes: Any) -> bool:
        """Apply column changes to the singleton row.

        With ``expected_updated_at`` the write only lands if nobody else touched
        the row since it was read.
        """
        if not changes:
            return True
        cols = sorted(changes)
        assignments = ", ".join(f"{c} = ?" for c in cols)
        params: list[Any] = [
            int(changes[c]) if isinstance(changes[c], bool) else changes[c] for c in cols
        ]
        params.append(_utc_iso())
        sql = f"UPDATE trading_config SET {assignments}, updated_at = ? WHERE id = 1"
        if expected_updated_at is not None:
            sql += " AND updated_at = ?"
            params.append(expected_updated_at)
        return self.db.execute(sql, params) == 1

    def update_checked(self, *, attempts: int = 3, **changes: Any) -> TradingConfigRow:
        """Read-modify-write guarded by ``updated_at``; re-reads on a lost race."""
        for _ in range(attempts):
            current = self.get()
            if self.update(expected_updated_at=current.updated_at, **changes):
                return self.get()
        raise ConcurrentUpdateError(f"trading_config changed concurrently {attempts} times")

    def clear_error(self) -> int:
        return self.db.execute(
            "UPDATE trading_config SET bot_status = 'stopped', updated_at = ? WHERE id = 1 AND bot_status = 'error'",
            (_utc_iso(),),
        )


class CloudConfigRepo:
    def __init__(self, db: "Database") -> None:
        self.db = db

    def upsert(
        self,
        provider: str,
        *,
        region: str | None = None,
        instance_type: str | None = None,
        status: str | None = None,
        outbound_ip: str | None = None,
    ) -> None:
        self.db.execute(
            """
            INSERT INTO cloud_config(provider, region, instance_type, status, outbound_ip, updated_at)
            VALUES(?,?,?,?,?,?)
            ON CONFLICT(provider) DO UPDATE SET
              region = COALESCE(excluded.region, region),
              instance_type = COALESCE(excluded.instance_type, instance_type),
              status = COALESCE(excluded.status, status),
              outbound_ip = COALESCE(excluded.outbound_ip, outbound_ip),
              updated_at = excluded.updated_at
            """,
            (provider, region, instance_type, status, outbound_ip, _utc_iso()),
        )

    def get(self, provider: str) -> dict[str, Any] | None:
        row = self.db.query_one("SELECT * FROM cloud_config WHERE provider = ?", (provider,))
        return dict(row) if row else None


class TimelineRepo:
    def __init__(self, db: "Database") -> None:
        self.db = db

    def insert(
        self,
        *,
        provider: str | None,
        event_type: str,
        event_subtype: str | None,
        title: str,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.db.execute(
            """
            INSERT INTO timeline_events(
              created_at, provider, event_type, event_subtype, title, description, metadata_json
            ) VALUES(?,?,?,?,?,?,?)
            """,
            (
                _utc_iso(),
                provider,
                event_type,
                event_subtype,
                title,
                description,
                safe_json_dumps(metadata) if metadata is not None else None,
            ),
        )

    def list_recent(self, limit: int = 100) -> list[dict[str, Any]]:
        rows = self.db.query_all(
            "SELECT * FROM timeline_events ORDER BY id DESC LIMIT ?", (limit,)
        )
        return [dict(r) for r in rows]


class NotificationRepo:
    def __init__(self, db: "Database") -> None:
        self.db = db

    def insert(
        self,
        *,
        type: str,
        title: str,
        message: str,
        severity: str,
        category: str | None = None,
    ) -> None:
        self.db.execute(
            """
            INSERT INTO system_notifications(created_at, type, title, message, severity, category)
            VALUES(?,?,?,?,?,?)
            """,
            (_utc_iso(), type, title, message, severity, category),
        )

    def list_recent(self, *, type: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        if type is None:
            rows = self.db.query_all(
                "SELECT * FROM system_notifications ORDER BY id DESC LIMIT ?", (limit,)
            )
        else:
            rows = self.db.query_all(
                "SELECT * FROM system_notifications WHERE type = ? ORDER BY id DESC LIMIT ?",
                (type, limit),
            )
        return [dict(r) for r in rows]


class AlertRepo:
    def __init__(self, db: "Database") -> None:
        self.db = db

    def insert(self, *, kind: str, channel: str, message: str, severity: str, sent_at: str) -> None:
        self.db.execute(
            "INSERT INTO alert_history(kind, channel, message, severity, sent_at) VALUES(?,?,?,?,?)",
            (kind, channel, message, severity, sent_at),
        )

    def count_since(self, since_iso: str, *, kind: str | None = None) -> int:
        if kind is None:
            row = self.db.query_one(
                "SELECT COUNT(*) AS n FROM alert_history WHERE sent_at > ?", (since_iso,)
            )
        else:
            row = self.db.query_one(
                "SELECT COUNT(*) AS n FROM alert_history WHERE sent_at > ? AND kind = ?",
                (since_iso, kind),
            )
        return int(row["n"]) if row else 0


class ProgressionRepo:
    def __init__(self, db: "Database") -> None:
        self.db = db

    def get(self) -> ProgressionRow:
        return row_to(ProgressionRow, self.db.query_one("SELECT * FROM progression_state WHERE id = 1"))

    def add_successful_trade(self, mode: str, pnl: float) -> int:
        if mode == TradingMode.SIMULATION.value:
            counter, total = "successful_simulation_trades", "total_simulation_profit"
        elif mode == TradingMode.PAPER.value:
            counter, total = "successful_paper_trades", "total_paper_profit"
        else:
            raise ValueError(f"Unsupported progression mode: {mode}")
        return self.db.execute(
            f"UPDATE progression_state SET {counter} = {counter} + 1, {total} = {total} + ?, updated_at = ? WHERE id = 1",
            (float(pnl), _utc_iso()),
        )

    def unlock_paper(self, threshold: int) -> int:
        now = _utc_iso()
        return self.db.execute(
            """
            UPDATE progression_state SET paper_unlocked = 1, paper_unlocked_at = ?, updated_at = ?
            WHERE id = 1 AND paper_unlocked = 0 AND successful_simulation_trades >= ?
            """,
            (now, now, int(threshold)),
        )

    def unlock_live(self, threshold: int) -> int:
        now = _utc_iso()
        return self.db.execute(
            """
            UPDATE progression_state SET live_unlocked = 1, live_unlocked_at = ?, updated_at = ?
            WHERE id = 1 AND live_unlocked = 0 AND paper_unlocked = 1 AND successful_paper_trades >= ?
            """,
            (now, now, int(threshold)),
        )

    def reset(self) -> None:
        self.db.execute(
            """
            UPDATE progression_state SET
              successful_simulation_trades = 0, successful_paper_trades = 0,
              total_simulation_profit = 0, total_paper_profit = 0,
              live_unlocked = 0, live_unlocked_at = NULL,
              paper_unlocked = 0, paper_unlocked_at = NULL,
              updated_at = ?
            WHERE id = 1
            """,
            (_utc_iso(),),
        )


class AiProviderRepo:
    def __init__(self, db: "Database") -> None:
        self.db = db

    def upsert(self, name: str, **fields: Any) -> None:
        self.db.execute("INSERT OR IGNORE INTO ai_providers(name) VALUES(?)", (name,))
        if fields:
            cols = sorted(fields)
            assignments = ", ".join(f"{c} = ?" for c in cols)
            self.db.execute(
                f"UPDATE ai_providers SET {assignments} WHERE name = ?",
                [fields[c] for c in cols] + [name],
            )

    def get(self, name: str) -> dict[str, Any] | None:
        row = self.db.query_one("SELECT * FROM ai_providers WHERE name = ?", (name,))
        return dict(row) if row else None

    def list_all(self) -> list[dict[str, Any]]:
        return [dict(r) for r in self.db.query_all("SELECT * FROM ai_providers ORDER BY name")]

    def daily_reset(self, now_iso: str) -> int:
        return self.db.execute(
            """
            UPDATE ai_providers SET daily_usage = 0, current_usage = 0, error_count = 0,
              cooldown_until = NULL, last_daily_reset_at = ?, last_reset_at = ?
            """,
            (now_iso, now_iso),
        )

    def clear_expired_cooldowns(self, now_iso: str) -> int:
        return self.db.execute(
            """
            UPDATE ai_providers SET cooldown_until = NULL, error_count = 0
            WHERE cooldown_until IS NOT NULL AND cooldown_until <= ?
            """,
            (now_iso,),
        )

    def reset_minute_counters(self, cutoff_iso: str, now_iso: str) -> int:
        return self.db.execute(
            """
            UPDATE ai_providers SET current_usage = 0, last_reset_at = ?
            WHERE last_reset_at IS NULL OR last_reset_at < ?
            """,
            (now_iso, cutoff_iso),
        )


class AiSignalRepo:
    def __init__(self, db: "Database") -> None:
        self.db = db

    def insert(
        self,
        *,
        symbol: str,
        confidence: float,
        timeframe_minutes: int,
        direction: str | None = None,
        created_at: str | None = None,
    ) -> None:
        self.db.execute(
            """
            INSERT INTO ai_signals(symbol, direction, confidence, timeframe_minutes, created_at)
            VALUES(?,?,?,?,?)
            """,
            (symbol, direction, float(confidence), int(timeframe_minutes), created_at or _utc_iso()),
        )

    def recent(
        self, since_iso: str, *, min_confidence: float, timeframes: list[int], limit: int = 10
    ) -> list[dict[str, Any]]:
        rows = self.db.query_all(
            f"""
            SELECT * FROM ai_signals
            WHERE created_at >= ? AND confidence >= ? AND timeframe_minutes IN ({_placeholders(timeframes)})
            ORDER BY confidence DESC, created_at DESC
            LIMIT ?
            """,
            (since_iso, float(min_confidence), *timeframes, int(limit)),
        )
        return [dict(r) for r in rows]


class TaskRunRepo:
    def __init__(self, db: "Database") -> None:
        self.db = db

    def try_mark(self, task: str, tick_key: str) -> bool:
        try:
            self.db.conn().execute(
                "INSERT INTO task_runs(task, tick_key, completed_at) VALUES(?,?,?)",
                (task, tick_key, _utc_iso()),
            )
            return True
        except sqlite3.IntegrityError:
            return False

    def has_run(self, task: str, tick_key: str) -> bool:
        row = self.db.query_one(
            "SELECT 1 FROM task_runs WHERE task = ? AND tick_key = ?", (task, tick_key)
        )
        return row is not None

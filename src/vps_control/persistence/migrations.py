from __future__ import annotations

import sqlite3
from datetime import datetime, timezone


LATEST_VERSION = 1


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def ensure_migrations_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations(
          version INTEGER PRIMARY KEY,
          applied_at TEXT NOT NULL
        )
        """
    )


def current_version(conn: sqlite3.Connection) -> int:
    ensure_migrations_table(conn)
    row = conn.execute("SELECT MAX(version) AS v FROM schema_migrations").fetchone()
    if row is None:
        return 0
    v = row[0]
    return int(v) if v is not None else 0


def apply_migrations(conn: sqlite3.Connection) -> None:
    ensure_migrations_table(conn)
    v = current_version(conn)
    if v < 1:
        _migration_v1(conn)
        now = _utc_iso()
        conn.execute(
            "INSERT OR IGNORE INTO trading_config(id, updated_at) VALUES(1, ?)", (now,)
        )
        conn.execute(
            "INSERT OR IGNORE INTO progression_state(id, updated_at) VALUES(1, ?)", (now,)
        )
        conn.execute(
            "INSERT INTO schema_migrations(version, applied_at) VALUES(?,?)",
            (1, now),
        )
        conn.commit()


def _migration_v1(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        PRAGMA foreign_keys = ON;

        CREATE TABLE IF NOT EXISTS hosts(
          id TEXT PRIMARY KEY,
          provider TEXT NOT NULL,
          region TEXT,
          instance_type TEXT,
          instance_id TEXT,
          outbound_ip TEXT,
          label TEXT,
          ssh_key_ref TEXT,
          status TEXT NOT NULL DEFAULT 'provisioning',
          bot_status TEXT NOT NULL DEFAULT 'stopped',
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        CREATE UNIQUE INDEX IF NOT EXISTS uq_hosts_live_ip
          ON hosts(provider, outbound_ip)
          WHERE outbound_ip IS NOT NULL AND status NOT IN ('stopped', 'failed');
        CREATE INDEX IF NOT EXISTS idx_hosts_ip ON hosts(outbound_ip);

        CREATE TABLE IF NOT EXISTS deployments(
          id TEXT PRIMARY KEY,
          host_id TEXT NOT NULL REFERENCES hosts(id),
          is_primary INTEGER NOT NULL DEFAULT 0,
          status TEXT NOT NULL DEFAULT 'active',
          bot_status TEXT NOT NULL DEFAULT 'stopped',
          last_health_check TEXT,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        CREATE UNIQUE INDEX IF NOT EXISTS uq_deployments_primary
          ON deployments(is_primary) WHERE is_primary = 1;
        CREATE INDEX IF NOT EXISTS idx_deployments_host ON deployments(host_id);

        CREATE TABLE IF NOT EXISTS health_samples(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          host_ip TEXT NOT NULL,
          recorded_at TEXT NOT NULL,
          is_healthy INTEGER NOT NULL,
          latency_ms REAL,
          consecutive_failures INTEGER NOT NULL DEFAULT 0,
          status TEXT,
          error_message TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_health_ip_time ON health_samples(host_ip, recorded_at);

        CREATE TABLE IF NOT EXISTS metrics_snapshots(
          provider TEXT PRIMARY KEY,
          cpu_percent REAL NOT NULL DEFAULT 0,
          ram_percent REAL NOT NULL DEFAULT 0,
          disk_percent REAL NOT NULL DEFAULT 0,
          latency_ms REAL NOT NULL DEFAULT 0,
          uptime_seconds REAL NOT NULL DEFAULT 0,
          network_in_mbps REAL NOT NULL DEFAULT 0,
          network_out_mbps REAL NOT NULL DEFAULT 0,
          recorded_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS exchange_connections(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          exchange_name TEXT NOT NULL UNIQUE,
          is_connected INTEGER NOT NULL DEFAULT 0,
          api_key TEXT,
          api_secret TEXT,
          api_passphrase TEXT,
          last_ping_ms REAL,
          balance_usdt REAL,
          balance_updated_at TEXT,
          last_error TEXT,
          last_error_at TEXT
        );

        CREATE TABLE IF NOT EXISTS exchange_pings(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          exchange_name TEXT NOT NULL,
          latency_ms REAL,
          status TEXT,
          source TEXT NOT NULL,
          recorded_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_pings_time ON exchange_pings(recorded_at);

        CREATE TABLE IF NOT EXISTS credential_permissions(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          provider TEXT NOT NULL,
          credential_type TEXT NOT NULL,
          ip_restricted INTEGER NOT NULL DEFAULT 0,
          whitelisted_range TEXT,
          last_analyzed_at TEXT,
          UNIQUE(provider, credential_type)
        );

        CREATE TABLE IF NOT EXISTS trading_config(
          id INTEGER PRIMARY KEY CHECK (id = 1),
          kill_switch_enabled INTEGER NOT NULL DEFAULT 0,
          trading_enabled INTEGER NOT NULL DEFAULT 0,
          max_position_size REAL,
          bot_status TEXT NOT NULL DEFAULT 'stopped',
          trading_mode TEXT NOT NULL DEFAULT 'simulation',
          updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS cloud_config(
          provider TEXT PRIMARY KEY,
          region TEXT,
          instance_type TEXT,
          status TEXT,
          outbound_ip TEXT,
          updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS timeline_events(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          created_at TEXT NOT NULL,
          provider TEXT,
          event_type TEXT NOT NULL,
          event_subtype TEXT,
          title TEXT NOT NULL,
          description TEXT,
          metadata_json TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_timeline_created_at ON timeline_events(created_at);

        CREATE TABLE IF NOT EXISTS system_notifications(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          created_at TEXT NOT NULL,
          type TEXT NOT NULL,
          title TEXT NOT NULL,
          message TEXT NOT NULL,
          severity TEXT NOT NULL,
          category TEXT,
          is_read INTEGER NOT NULL DEFAULT 0
        );
        CREATE INDEX IF NOT EXISTS idx_notifications_created_at ON system_notifications(created_at);

        CREATE TABLE IF NOT EXISTS alert_history(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          kind TEXT NOT NULL,
          channel TEXT NOT NULL,
          message TEXT NOT NULL,
          severity TEXT NOT NULL,
          sent_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_alert_sent_at ON alert_history(sent_at);

        CREATE TABLE IF NOT EXISTS progression_state(
          id INTEGER PRIMARY KEY CHECK (id = 1),
          successful_simulation_trades INTEGER NOT NULL DEFAULT 0,
          successful_paper_trades INTEGER NOT NULL DEFAULT 0,
          total_simulation_profit REAL NOT NULL DEFAULT 0,
          total_paper_profit REAL NOT NULL DEFAULT 0,
          paper_unlocked INTEGER NOT NULL DEFAULT 0,
          paper_unlocked_at TEXT,
          live_unlocked INTEGER NOT NULL DEFAULT 0,
          live_unlocked_at TEXT,
          updated_at TEXT NOT NULL,
          CHECK (live_unlocked = 0 OR paper_unlocked = 1)
        );

        CREATE TABLE IF NOT EXISTS ai_providers(
          name TEXT PRIMARY KEY,
          daily_usage INTEGER NOT NULL DEFAULT 0,
          current_usage INTEGER NOT NULL DEFAULT 0,
          error_count INTEGER NOT NULL DEFAULT 0,
          cooldown_until TEXT,
          last_daily_reset_at TEXT,
          last_reset_at TEXT
        );

        CREATE TABLE IF NOT EXISTS ai_signals(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          symbol TEXT NOT NULL,
          direction TEXT,
          confidence REAL NOT NULL,
          timeframe_minutes INTEGER NOT NULL,
          created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_ai_signals_created_at ON ai_signals(created_at);

        CREATE TABLE IF NOT EXISTS task_runs(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          task TEXT NOT NULL,
          tick_key TEXT NOT NULL,
          completed_at TEXT NOT NULL,
          UNIQUE(task, tick_key)
        );
        """
    )

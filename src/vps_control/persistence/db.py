from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Sequence

from vps_control.core.exceptions import PersistenceError
from vps_control.persistence.migrations import apply_migrations
from vps_control.persistence.repos import (
    AiProviderRepo,
    AiSignalRepo,
    AlertRepo,
    CloudConfigRepo,
    CredentialPermissionRepo,
    DeploymentRepo,
    ExchangeRepo,
    HealthRepo,
    HostRepo,
    MetricsRepo,
    NotificationRepo,
    ProgressionRepo,
    TaskRunRepo,
    TimelineRepo,
    TradingConfigRepo,
)


class Database:
    """SQLite store with one connection per thread.

    ``transaction()`` nests: inner blocks join the outer BEGIN IMMEDIATE.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._local = threading.local()
        self._init_lock = threading.Lock()
        self._initialized = False

    def initialize(self) -> None:
        with self._init_lock:
            if self._initialized:
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._connect_new()
            try:
                apply_migrations(conn)
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=NORMAL;")
                conn.commit()
            finally:
                conn.close()
            self._initialized = True

    def _connect_new(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.path,
            timeout=30,
            isolation_level=None,  # autocommit; we manage transactions explicitly
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON;")
        return conn

    def conn(self) -> sqlite3.Connection:
        if not getattr(self._local, "conn", None):
            self._local.conn = self._connect_new()
        return self._local.conn

    def close_thread_connection(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            try:
                conn.close()
            finally:
                self._local.conn = None

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.conn()
        if conn.in_transaction:
            # Joined the caller's transaction; the outermost block commits.
            yield conn
            return
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    @contextmanager
    def _guarded(self, sql: str) -> Iterator[sqlite3.Connection]:
        try:
            yield self.conn()
        except sqlite3.Error as exc:
            verb = sql.strip().split(None, 1)[0].upper() if sql.strip() else "SQL"
            raise PersistenceError(f"{verb} failed: {exc}") from exc

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> int:
        """Runs one statement and returns the affected row count (0 when a CAS misses)."""
        with self._guarded(sql) as conn:
            return conn.execute(sql, params or []).rowcount

    def query_all(self, sql: str, params: Sequence[Any] | None = None) -> list[sqlite3.Row]:
        with self._guarded(sql) as conn:
            return list(conn.execute(sql, params or []).fetchall())

    def query_one(self, sql: str, params: Sequence[Any] | None = None) -> sqlite3.Row | None:
        with self._guarded(sql) as conn:
            return conn.execute(sql, params or []).fetchone()

    def host_repo(self) -> HostRepo:
        return HostRepo(self)

    def deployment_repo(self) -> DeploymentRepo:
        return DeploymentRepo(self)

    def health_repo(self) -> HealthRepo:
        return HealthRepo(self)

    def metrics_repo(self) -> MetricsRepo:
        return MetricsRepo(self)

    def exchange_repo(self) -> ExchangeRepo:
        return ExchangeRepo(self)

    def credential_repo(self) -> CredentialPermissionRepo:
        return CredentialPermissionRepo(self)

    def trading_config_repo(self) -> TradingConfigRepo:
        return TradingConfigRepo(self)

    def cloud_config_repo(self) -> CloudConfigRepo:
        return CloudConfigRepo(self)

    def timeline_repo(self) -> TimelineRepo:
        return TimelineRepo(self)

    def notification_repo(self) -> NotificationRepo:
        return NotificationRepo(self)

    def alert_repo(self) -> AlertRepo:
        return AlertRepo(self)

    def progression_repo(self) -> ProgressionRepo:
        return ProgressionRepo(self)

    def ai_provider_repo(self) -> AiProviderRepo:
        return AiProviderRepo(self)

    def ai_signal_repo(self) -> AiSignalRepo:
        return AiSignalRepo(self)

    def task_run_repo(self) -> TaskRunRepo:
        return TaskRunRepo(self)

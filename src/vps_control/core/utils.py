from __future__ import annotations

import dataclasses
import json
import logging
import os
import platform
import sys
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Mapping

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

CONSOLE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def ensure_dir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def safe_json_dumps(obj: Any) -> str:
    def _default(o: Any) -> Any:
        if dataclasses.is_dataclass(o):
            return dataclasses.asdict(o)
        if isinstance(o, datetime):
            return iso_utc(o)
        if hasattr(o, "model_dump"):
            return o.model_dump()
        if isinstance(o, Path):
            return str(o)
        return str(o)

    return json.dumps(obj, default=_default, ensure_ascii=False, separators=(",", ":"))


class Deadline:
    """Wall-clock budget shared by every outbound call of one handler."""

    def __init__(self, seconds: float, clock: Any = time.monotonic) -> None:
        self._clock = clock
        self.seconds = float(seconds)
        self._end = clock() + self.seconds

    def remaining(self) -> float:
        return max(0.0, self._end - self._clock())

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def bound(self, timeout: float) -> float:
        # requests rejects a zero timeout
        return max(0.001, min(float(timeout), self.remaining()))


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra=`` fields (ip, provider, ...) become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": iso_utc(datetime.fromtimestamp(record.created, tz=timezone.utc)),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update(
            (k, v) for k, v in vars(record).items() if k not in _RECORD_ATTRS and not k.startswith("_")
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return safe_json_dumps(payload)


def _rotating(path: Path, *, max_bytes: int, backups: int, level: int, fmt: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backups, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(fmt)
    return handler


def setup_logging(log_dir: str, level: str = "INFO") -> None:
    """Console on stderr plus ``control.log`` (text) and ``control.jsonl`` under ``log_dir``.

    stdout stays free for command output.
    """
    logs = ensure_dir(log_dir)
    level_num = getattr(logging, level.upper(), logging.INFO)
    human = logging.Formatter(fmt=CONSOLE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root = logging.getLogger()
    root.setLevel(level_num)
    root.handlers.clear()

    console = logging.StreamHandler(stream=sys.stderr)
    console.setLevel(level_num)
    console.setFormatter(human)
    root.addHandler(console)
    root.addHandler(_rotating(logs / "control.log", max_bytes=5_000_000, backups=5, level=level_num, fmt=human))
    root.addHandler(
        _rotating(logs / "control.jsonl", max_bytes=10_000_000, backups=3, level=level_num, fmt=JsonFormatter())
    )

    for noisy in ("urllib3", "paramiko", "apscheduler"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


def platform_summary() -> Mapping[str, Any]:
    return {
        "python": sys.version.split()[0],
        "platform": platform.platform(),
        "machine": platform.machine(),
    }

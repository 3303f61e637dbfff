from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any, Union


@dataclass(frozen=True)
class CpuArray:
    load: tuple[float, ...]


@dataclass(frozen=True)
class CpuPercent:
    percent: float


@dataclass(frozen=True)
class MemNested:
    percent: float


@dataclass(frozen=True)
class MemPercent:
    percent: float


@dataclass(frozen=True)
class MemRaw:
    value: float


CpuIn = Union[CpuArray, CpuPercent]
MemIn = Union[MemNested, MemPercent, MemRaw]


@dataclass(frozen=True)
class MetricsIn:
    """``/health`` payload after shape detection, before normalization."""

    cpu: CpuIn
    memory: MemIn
    disk_percent: float
    uptime_seconds: float
    network_in_mbps: float
    network_out_mbps: float


@dataclass(frozen=True)
class Metrics:
    cpu_percent: float
    ram_percent: float
    disk_percent: float
    uptime_seconds: float
    network_in_mbps: float
    network_out_mbps: float
    latency_ms: float = 0.0

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


def _num(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip().rstrip("%"))
    except ValueError:
        return 0.0


def _first(payload: dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if payload.get(k) is not None:
            return payload[k]
    return None


def parse_health_payload(payload: dict[str, Any]) -> MetricsIn:
    raw_cpu = _first(payload, "cpu_percent", "cpu")
    if isinstance(raw_cpu, (list, tuple)):
        cpu: CpuIn = CpuArray(tuple(_num(v) for v in raw_cpu))
    else:
        cpu = CpuPercent(_num(raw_cpu))

    if payload.get("ram_percent") is not None:
        memory: MemIn = MemPercent(_num(payload["ram_percent"]))
    elif payload.get("memory_percent") is not None:
        memory = MemPercent(_num(payload["memory_percent"]))
    elif isinstance(payload.get("memory"), dict):
        memory = MemNested(_num(payload["memory"].get("percent")))
    else:
        memory = MemRaw(_num(payload.get("memory")))

    disk = _first(payload, "disk_percent", "disk")
    if isinstance(disk, dict):
        disk = disk.get("percent")

    network = payload.get("network") if isinstance(payload.get("network"), dict) else {}
    return MetricsIn(
        cpu=cpu,
        memory=memory,
        disk_percent=_num(disk),
        uptime_seconds=_num(_first(payload, "uptime_seconds", "uptime")),
        network_in_mbps=_num(_first(payload, "network_in_mbps") or network.get("in_mbps")),
        network_out_mbps=_num(_first(payload, "network_out_mbps") or network.get("out_mbps")),
    )


def normalize_metrics(parsed: MetricsIn, *, latency_ms: float = 0.0) -> Metrics:
    if isinstance(parsed.cpu, CpuArray):
        # 1-minute load average scaled to a percentage
        cpu = parsed.cpu.load[0] * 100.0 if parsed.cpu.load else 0.0
    else:
        cpu = parsed.cpu.percent

    if isinstance(parsed.memory, MemRaw):
        ram = parsed.memory.value
    else:
        ram = parsed.memory.percent

    return Metrics(
        cpu_percent=round(cpu, 2),
        ram_percent=round(ram, 2),
        disk_percent=round(parsed.disk_percent, 2),
        uptime_seconds=parsed.uptime_seconds,
        network_in_mbps=parsed.network_in_mbps,
        network_out_mbps=parsed.network_out_mbps,
        latency_ms=round(float(latency_ms), 2),
    )


def normalize_health(payload: dict[str, Any], *, latency_ms: float = 0.0) -> Metrics:
    return normalize_metrics(parse_health_payload(payload), latency_ms=latency_ms)

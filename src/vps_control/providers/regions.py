from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Plan:
    name: str
    vcpus: int
    memory_gb: float
    monthly_usd: float


@dataclass(frozen=True)
class Placement:
    provider: str
    exchange: str
    region: str
    plan: str
    latency_ms: float | None


# Provider region closest to the Tokyo matching engines; used when the
# exchange has no entry for the provider.
TOKYO_REGION: dict[str, str] = {
    "vultr": "nrt",
    "digitalocean": "sgp1",
    "aws": "ap-northeast-1",
    "gcp": "asia-northeast1",
    "contabo": "JPN",
}

_TOKYO_MESH = {
    "vultr": [("nrt", 2.0), ("sgp", 70.0)],
    "aws": [("ap-northeast-1", 1.0)],
    "gcp": [("asia-northeast1", 2.0)],
}

# exchange -> provider -> [(region, nominal latency to the matching engine in ms)]
EXCHANGE_REGIONS: dict[str, dict[str, list[tuple[str, float]]]] = {
    "binance": {**_TOKYO_MESH, "digitalocean": [("sgp1", 70.0)]},
    "okx": dict(_TOKYO_MESH),
    "bybit": {**_TOKYO_MESH, "digitalocean": [("sgp1", 72.0)]},
    "hyperliquid": dict(_TOKYO_MESH),
    "bitget": dict(_TOKYO_MESH),
    "bingx": dict(_TOKYO_MESH),
    "mexc": dict(_TOKYO_MESH),
    "gateio": dict(_TOKYO_MESH),
    "kucoin": dict(_TOKYO_MESH),
    "kraken": {
        "aws": [("us-east-1", 2.0)],
        "digitalocean": [("nyc1", 3.0)],
        "vultr": [("ewr", 3.0)],
    },
    "nexo": {
        "aws": [("eu-west-1", 5.0)],
        "contabo": [("EU", 12.0)],
        "gcp": [("europe-west1", 8.0)],
    },
}

PLANS: dict[str, list[Plan]] = {
    "vultr": [
        Plan("vc2-1c-0.5gb", 1, 0.5, 2.5),
        Plan("vc2-1c-1gb", 1, 1.0, 5.0),
        Plan("vhf-1c-1gb", 1, 1.0, 6.0),
        Plan("vc2-1c-2gb", 1, 2.0, 10.0),
    ],
    "digitalocean": [
        Plan("s-1vcpu-512mb-10gb", 1, 0.5, 4.0),
        Plan("s-1vcpu-1gb", 1, 1.0, 6.0),
        Plan("s-1vcpu-2gb", 1, 2.0, 12.0),
    ],
    "contabo": [Plan("V45", 4, 8.0, 5.5), Plan("V46", 6, 16.0, 11.0)],
    "gcp": [Plan("e2-micro", 2, 1.0, 7.0), Plan("e2-small", 2, 2.0, 14.0)],
    "aws": [Plan("t4g.nano", 2, 0.5, 3.1), Plan("t4g.micro", 2, 1.0, 6.1)],
}

_ALIASES = {"gate": "gateio", "gate.io": "gateio", "okex": "okx"}


def normalize_exchange(name: str | None, default: str = "binance") -> str:
    key = (name or default).strip().lower()
    key = _ALIASES.get(key, key)
    return key if key in EXCHANGE_REGIONS else default


def cheapest_plan(provider: str, *, min_vcpus: int = 1, min_memory_gb: float = 1.0) -> Plan:
    candidates = [
        p for p in PLANS.get(provider, []) if p.vcpus >= min_vcpus and p.memory_gb >= min_memory_gb
    ]
    if not candidates:
        raise KeyError(f"no plan for {provider} with {min_vcpus} vCPU / {min_memory_gb} GB")
    return min(candidates, key=lambda p: (p.monthly_usd, p.name))


def select_placement(exchange: str | None, provider: str, *, default_exchange: str = "binance") -> Placement:
    provider = provider.lower()
    ex = normalize_exchange(exchange, default_exchange)
    plan = cheapest_plan(provider)
    options = EXCHANGE_REGIONS[ex].get(provider, [])
    if not options:
        return Placement(provider, ex, TOKYO_REGION.get(provider, "ap-northeast-1"), plan.name, None)
    region, latency = min(options, key=lambda o: (o[1], o[0]))
    return Placement(provider, ex, region, plan.name, latency)

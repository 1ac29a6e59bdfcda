"""Configuration loader for the market-data proxy."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from marketcache import TTLPolicy
from providers import ProviderId, QueryShape


@dataclass(frozen=True)
class ProviderLimits:
    window_sec: float
    max_requests: int
    min_spacing_sec: float
    backoff_base_sec: float
    backoff_cap_sec: float
    max_wait_sec: float = 30.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any], defaults: "ProviderLimits") -> "ProviderLimits":
        return cls(
            window_sec=float(data.get("window_sec", defaults.window_sec)),
            max_requests=int(data.get("max_requests", defaults.max_requests)),
            min_spacing_sec=float(data.get("min_spacing_sec", defaults.min_spacing_sec)),
            backoff_base_sec=float(data.get("backoff_base_sec", defaults.backoff_base_sec)),
            backoff_cap_sec=float(data.get("backoff_cap_sec", defaults.backoff_cap_sec)),
            max_wait_sec=float(data.get("max_wait_sec", defaults.max_wait_sec)),
        )


DEFAULT_LIMITS: Dict[ProviderId, ProviderLimits] = {
    ProviderId.COINGECKO: ProviderLimits(
        window_sec=60, max_requests=5, min_spacing_sec=12,
        backoff_base_sec=60, backoff_cap_sec=900, max_wait_sec=30,
    ),
    ProviderId.COINMARKETCAP: ProviderLimits(
        window_sec=60, max_requests=5, min_spacing_sec=10,
        backoff_base_sec=60, backoff_cap_sec=1800, max_wait_sec=30,
    ),
    ProviderId.ALTERNATIVE_ME: ProviderLimits(
        window_sec=300, max_requests=2, min_spacing_sec=60,
        backoff_base_sec=60, backoff_cap_sec=240, max_wait_sec=30,
    ),
}


@dataclass(frozen=True)
class ProviderConfig:
    provider_id: ProviderId
    limits: ProviderLimits
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    timeout_sec: float = 10.0
    large_timeout_sec: float = 30.0
    market_pages: int = 3
    page_delay_sec: float = 2.0

    @classmethod
    def from_dict(cls, provider_id: ProviderId, data: Dict[str, Any]) -> "ProviderConfig":
        return cls(
            provider_id=provider_id,
            limits=ProviderLimits.from_dict(data.get("limits", {}), DEFAULT_LIMITS[provider_id]),
            base_url=data.get("base_url") or None,
            api_key=data.get("api_key") or None,
            timeout_sec=float(data.get("timeout_sec", 10)),
            large_timeout_sec=float(data.get("large_timeout_sec", 30)),
            market_pages=int(data.get("market_pages", 3)),
            page_delay_sec=float(data.get("page_delay_sec", 2)),
        )


@dataclass(frozen=True)
class RouteConfig:
    """How one query shape is served: provider chain plus degradation flags."""
    shape: QueryShape
    primary: ProviderId
    secondary: Optional[ProviderId] = None
    last_known: bool = False
    synthetic: bool = False

    @classmethod
    def from_dict(cls, shape: QueryShape, data: Dict[str, Any]) -> "RouteConfig":
        try:
            primary = ProviderId(data["primary"])
            secondary = ProviderId(data["secondary"]) if data.get("secondary") else None
        except KeyError:
            raise ValueError(f"route {shape.value} has no primary provider") from None
        except ValueError as e:
            raise ValueError(f"route {shape.value}: unknown provider ({e})") from None

        route = cls(
            shape=shape,
            primary=primary,
            secondary=secondary,
            last_known=bool(data.get("last_known", False)),
            synthetic=bool(data.get("synthetic", False)),
        )
        route.validate()
        return route

    def validate(self) -> None:
        if self.synthetic and not self.shape.is_series:
            raise ValueError(f"synthetic fallback is only allowed on series routes, not {self.shape.value}")
        if self.last_known and self.shape.is_series:
            raise ValueError(f"last-known fallback is for single-value feeds, not {self.shape.value}")
        if self.secondary is not None and self.secondary == self.primary:
            raise ValueError(f"route {self.shape.value} uses {self.primary.value} as both primary and secondary")


def _default_routes() -> Dict[str, Dict[str, Any]]:
    routes: Dict[str, Dict[str, Any]] = {
        "detail": {"primary": "coingecko", "secondary": "coinmarketcap"},
        "batch-quote": {"primary": "coingecko", "secondary": "coinmarketcap"},
        "markets": {"primary": "coingecko"},
        "global": {"primary": "coingecko", "last_known": True},
        "trending": {"primary": "coingecko"},
        "fear-greed": {"primary": "alternative_me", "last_known": True},
    }
    for shape in QueryShape:
        if shape.is_series:
            routes[shape.value] = {"primary": "coingecko", "synthetic": True}
    return routes


@dataclass(frozen=True)
class ProxyConfig:
    providers: Dict[ProviderId, ProviderConfig]
    routes: Dict[QueryShape, RouteConfig]
    ttl_overrides: Dict[str, int] = field(default_factory=dict)
    coalesce_wait_sec: float = 15.0
    deferred_refresh: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProxyConfig":
        provider_data = data.get("providers", {}) or {}
        unknown = set(provider_data) - {p.value for p in ProviderId}
        if unknown:
            raise ValueError(f"unknown providers in config: {sorted(unknown)}")
        providers = {
            pid: ProviderConfig.from_dict(pid, provider_data.get(pid.value, {}) or {})
            for pid in ProviderId
        }

        route_data = _default_routes()
        for shape_name, overrides in (data.get("routes", {}) or {}).items():
            route_data.setdefault(shape_name, {}).update(overrides or {})
        routes = {}
        for shape_name, raw in route_data.items():
            try:
                shape = QueryShape(shape_name)
            except ValueError:
                raise ValueError(f"route for unknown shape: {shape_name}") from None
            routes[shape] = RouteConfig.from_dict(shape, raw)

        ttl_overrides = {k: int(v) for k, v in (data.get("ttl", {}) or {}).items()}
        TTLPolicy(ttl_overrides)

        return cls(
            providers=providers,
            routes=routes,
            ttl_overrides=ttl_overrides,
            coalesce_wait_sec=float(data.get("coalesce_wait_sec", 15)),
            deferred_refresh=bool(data.get("deferred_refresh", False)),
        )


ENV_MAP = {
    "providers.coingecko.api_key": "COINGECKO_API_KEY",
    "providers.coinmarketcap.api_key": "CMC_API_KEY",
}


def load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def merge_env_overrides(config_data: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(config_data))  # deep copy via json

    for dotted_key, env_name in ENV_MAP.items():
        if env_name not in os.environ:
            continue
        target = merged
        parts = dotted_key.split(".")
        for part in parts[:-1]:
            if target.get(part) is None:
                target[part] = {}
            target = target[part]
        target[parts[-1]] = os.environ[env_name]

    return merged


def load_config(config_path: str | Path = "config/proxy.defaults.yml") -> ProxyConfig:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    data = load_yaml(path)
    data = merge_env_overrides(data)
    return ProxyConfig.from_dict(data)

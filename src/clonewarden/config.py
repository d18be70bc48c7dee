from __future__ import annotations

import copy
import os
from dataclasses import dataclass
from typing import Any

import yaml


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str


@dataclass(frozen=True)
class UpstreamConfig:
    base_url: str
    api_key_env: str
    timeout_seconds: float
    rate_limit_per_second: int
    cost_per_unit: float
    user_agent: str
    mock_mode: bool


@dataclass(frozen=True)
class BulkConfig:
    default_batch_size: int
    inter_item_delay_seconds: float
    batch_cooldown_seconds: float
    cost_halt_multiplier: float
    total_attempts: int


@dataclass(frozen=True)
class RecoveryConfig:
    max_backoff_seconds: float
    max_pause_seconds: float
    jitter_seconds: float
    consecutive_error_limit: int
    pattern_risk_threshold: float


@dataclass(frozen=True)
class PatternsConfig:
    history_size: int


@dataclass(frozen=True)
class HealthConfig:
    cache_minutes: int


@dataclass(frozen=True)
class AllocationConfig:
    default_strategy: str


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    upstream: UpstreamConfig
    bulk: BulkConfig
    recovery: RecoveryConfig
    patterns: PatternsConfig
    health: HealthConfig
    allocation: AllocationConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "clonewarden",
        "timezone": "UTC",
    },
    "paths": {
        "data_dir": "/data",
        "state_db": "/data/state.sqlite3",
    },
    "upstream": {
        "base_url": "https://api.hikerapi.com",
        "api_key_env": "CW_UPSTREAM_API_KEY",
        "timeout_seconds": 30.0,
        "rate_limit_per_second": 11,
        "cost_per_unit": 0.001,
        "user_agent": "clonewarden/0.1",
        "mock_mode": False,
    },
    "bulk": {
        "default_batch_size": 5,
        "inter_item_delay_seconds": 1.0,
        "batch_cooldown_seconds": 2.0,
        "cost_halt_multiplier": 1.5,
        "total_attempts": 5,
    },
    "recovery": {
        "max_backoff_seconds": 120.0,
        "max_pause_seconds": 300.0,
        "jitter_seconds": 5.0,
        "consecutive_error_limit": 10,
        "pattern_risk_threshold": 0.7,
    },
    "patterns": {
        "history_size": 10000,
    },
    "health": {
        "cache_minutes": 30,
    },
    "allocation": {
        "default_strategy": "round-robin",
    },
}

ALLOCATION_STRATEGIES = [
    "round-robin",
    "fill-first",
    "capacity-based",
    "balanced-load",
    "optimal-distribution",
]


def get_config_path(path: str | None = None) -> str | None:
    return path or os.environ.get("CW_CONFIG_PATH") or None


def get_state_db_path() -> str:
    data_dir = os.environ.get("CW_DATA_DIR", DEFAULT_CONFIG["paths"]["data_dir"])
    return os.path.join(data_dir, "state.sqlite3")


def load_config(path: str | None = None) -> Config:
    config_path = get_config_path(path)
    cfg = _deep_copy(DEFAULT_CONFIG)
    if config_path:
        if not os.path.exists(config_path):
            if path:
                raise ConfigError(f"config file not found: {config_path}")
        else:
            _deep_merge(cfg, load_config_file(config_path))
    data_dir = os.environ.get("CW_DATA_DIR")
    if data_dir:
        cfg["paths"]["data_dir"] = data_dir
        cfg["paths"]["state_db"] = os.path.join(data_dir, "state.sqlite3")
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def load_config_file(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ConfigError(f"could not parse {path}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return loaded


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    if errors:
        return errors
    upstream = cfg["upstream"]
    if upstream["timeout_seconds"] <= 0:
        errors.append("config.upstream.timeout_seconds must be positive")
    if upstream["rate_limit_per_second"] < 1:
        errors.append("config.upstream.rate_limit_per_second must be at least 1")
    if upstream["cost_per_unit"] <= 0:
        errors.append("config.upstream.cost_per_unit must be positive")
    bulk = cfg["bulk"]
    if not 1 <= bulk["default_batch_size"] <= 50:
        errors.append("config.bulk.default_batch_size must be between 1 and 50")
    if bulk["cost_halt_multiplier"] < 1:
        errors.append("config.bulk.cost_halt_multiplier must be at least 1")
    if bulk["total_attempts"] < 1:
        errors.append("config.bulk.total_attempts must be at least 1")
    if not 0 <= cfg["recovery"]["pattern_risk_threshold"] <= 1:
        errors.append("config.recovery.pattern_risk_threshold must be between 0 and 1")
    if cfg["patterns"]["history_size"] < 1:
        errors.append("config.patterns.history_size must be at least 1")
    if cfg["allocation"]["default_strategy"] not in ALLOCATION_STRATEGIES:
        errors.append(
            "config.allocation.default_strategy must be one of: "
            + ", ".join(ALLOCATION_STRATEGIES)
        )
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg["app"]
    paths_cfg = cfg["paths"]
    upstream_cfg = cfg["upstream"]
    bulk_cfg = cfg["bulk"]
    recovery_cfg = cfg["recovery"]

    return Config(
        app=AppConfig(name=str(app_cfg["name"]), timezone=str(app_cfg["timezone"])),
        paths=PathsConfig(
            data_dir=str(paths_cfg["data_dir"]),
            state_db=str(paths_cfg["state_db"]),
        ),
        upstream=UpstreamConfig(
            base_url=str(upstream_cfg["base_url"]).rstrip("/"),
            api_key_env=str(upstream_cfg["api_key_env"]),
            timeout_seconds=float(upstream_cfg["timeout_seconds"]),
            rate_limit_per_second=int(upstream_cfg["rate_limit_per_second"]),
            cost_per_unit=float(upstream_cfg["cost_per_unit"]),
            user_agent=str(upstream_cfg["user_agent"]),
            mock_mode=bool(upstream_cfg["mock_mode"]),
        ),
        bulk=BulkConfig(
            default_batch_size=int(bulk_cfg["default_batch_size"]),
            inter_item_delay_seconds=float(bulk_cfg["inter_item_delay_seconds"]),
            batch_cooldown_seconds=float(bulk_cfg["batch_cooldown_seconds"]),
            cost_halt_multiplier=float(bulk_cfg["cost_halt_multiplier"]),
            total_attempts=int(bulk_cfg["total_attempts"]),
        ),
        recovery=RecoveryConfig(
            max_backoff_seconds=float(recovery_cfg["max_backoff_seconds"]),
            max_pause_seconds=float(recovery_cfg["max_pause_seconds"]),
            jitter_seconds=float(recovery_cfg["jitter_seconds"]),
            consecutive_error_limit=int(recovery_cfg["consecutive_error_limit"]),
            pattern_risk_threshold=float(recovery_cfg["pattern_risk_threshold"]),
        ),
        patterns=PatternsConfig(history_size=int(cfg["patterns"]["history_size"])),
        health=HealthConfig(cache_minutes=int(cfg["health"]["cache_minutes"])),
        allocation=AllocationConfig(
            default_strategy=str(cfg["allocation"]["default_strategy"])
        ),
    )


def default_config() -> Config:
    return _build_config(_deep_copy(DEFAULT_CONFIG))


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> None:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return copy.deepcopy(value)

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Mapping

import yaml


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: float
    user_agent: str
    retries: int


@dataclass(frozen=True)
class PathsConfig:
    state_db: str


@dataclass(frozen=True)
class AnalysisConfig:
    concurrency: int
    max_pending: int
    cache_ttl_seconds: int
    cache_max_entries: int
    max_plugins_in_report: int
    enable_version_hints: bool
    max_version_hint_probes: int
    version_hint_concurrency: int
    include_vuln_data: bool


@dataclass(frozen=True)
class FeedConfig:
    feed_type: str
    sync_interval_minutes: int
    sync_on_start: bool
    lock_ttl_seconds: int
    backoff_minutes: int
    timeout_seconds: float


@dataclass(frozen=True)
class WatchConfig:
    enabled: bool
    check_interval_minutes: int
    recent_days: int


@dataclass(frozen=True)
class HousekeepingConfig:
    interval_minutes: int


@dataclass(frozen=True)
class NotifierConfig:
    telegram_api_base: str
    max_retry_after_seconds: int


@dataclass(frozen=True)
class SecretsConfig:
    feed_api_key: str
    bot_token: str
    admin_token: str


@dataclass(frozen=True)
class Config:
    http: HttpConfig
    paths: PathsConfig
    analysis: AnalysisConfig
    feed: FeedConfig
    watch: WatchConfig
    housekeeping: HousekeepingConfig
    notifier: NotifierConfig
    secrets: SecretsConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "http": {
        "timeout_seconds": 8.0,
        "user_agent": "WpWatch/0.4",
        "retries": 1,
    },
    "paths": {
        "state_db": "./data/wpwatch.sqlite3",
    },
    "analysis": {
        "concurrency": 4,
        "max_pending": 100,
        "cache_ttl_seconds": 600,
        "cache_max_entries": 500,
        "max_plugins_in_report": 30,
        "enable_version_hints": True,
        "max_version_hint_probes": 15,
        "version_hint_concurrency": 3,
        "include_vuln_data": True,
    },
    "feed": {
        "feed_type": "production",
        "sync_interval_minutes": 360,
        "sync_on_start": True,
        "lock_ttl_seconds": 900,
        "backoff_minutes": 720,
        "timeout_seconds": 20.0,
    },
    "watch": {
        "enabled": True,
        "check_interval_minutes": 360,
        "recent_days": 30,
    },
    "housekeeping": {
        "interval_minutes": 10,
    },
    "notifier": {
        "telegram_api_base": "https://api.telegram.org",
        "max_retry_after_seconds": 5,
    },
}

# Inclusive bounds for numeric options.
RANGES: dict[str, tuple[float, float]] = {
    "http.timeout_seconds": (1, 60),
    "http.retries": (0, 5),
    "analysis.concurrency": (1, 50),
    "analysis.max_pending": (1, 10000),
    "analysis.cache_ttl_seconds": (0, 86400),
    "analysis.cache_max_entries": (0, 100000),
    "analysis.max_plugins_in_report": (1, 200),
    "analysis.max_version_hint_probes": (0, 200),
    "analysis.version_hint_concurrency": (1, 10),
    "feed.sync_interval_minutes": (30, 7 * 24 * 60),
    "feed.lock_ttl_seconds": (30, 3600),
    "feed.backoff_minutes": (30, 7 * 24 * 60),
    "feed.timeout_seconds": (1, 600),
    "watch.check_interval_minutes": (30, 7 * 24 * 60),
    "watch.recent_days": (1, 365),
    "housekeeping.interval_minutes": (1, 24 * 60),
    "notifier.max_retry_after_seconds": (0, 60),
}

FEED_TYPES = ("production", "scanner")

CONFIG_PATH_ENV = "WPW_CONFIG"
STATE_DB_ENV = "WPW_STATE_DB"
FEED_API_KEY_ENV = "WPW_FEED_API_KEY"
BOT_TOKEN_ENV = "WPW_BOT_TOKEN"
ADMIN_TOKEN_ENV = "WPW_ADMIN_TOKEN"


def load_config(path: str | None = None, env: Mapping[str, str] | None = None) -> Config:
    env = os.environ if env is None else env
    path = path or env.get(CONFIG_PATH_ENV) or None
    cfg = _deep_copy(DEFAULT_CONFIG)
    if path:
        cfg = _deep_merge(cfg, _read_yaml(path))
    state_db = env.get(STATE_DB_ENV, "").strip()
    if state_db:
        cfg["paths"]["state_db"] = state_db
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return build_config(cfg, env)


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    if errors:
        return errors
    for dotted, (low, high) in RANGES.items():
        section, key = dotted.split(".", 1)
        value = cfg[section][key]
        if value < low or value > high:
            errors.append(f"config.{dotted} must be between {low} and {high}")
    if cfg["feed"]["feed_type"] not in FEED_TYPES:
        errors.append("config.feed.feed_type must be one of " + ", ".join(FEED_TYPES))
    return errors


def build_config(cfg: dict[str, Any], env: Mapping[str, str] | None = None) -> Config:
    env = os.environ if env is None else env
    http_cfg = cfg["http"]
    analysis_cfg = cfg["analysis"]
    feed_cfg = cfg["feed"]
    watch_cfg = cfg["watch"]
    notifier_cfg = cfg["notifier"]

    return Config(
        http=HttpConfig(
            timeout_seconds=float(http_cfg["timeout_seconds"]),
            user_agent=str(http_cfg["user_agent"]),
            retries=int(http_cfg["retries"]),
        ),
        paths=PathsConfig(state_db=str(cfg["paths"]["state_db"])),
        analysis=AnalysisConfig(
            concurrency=int(analysis_cfg["concurrency"]),
            max_pending=int(analysis_cfg["max_pending"]),
            cache_ttl_seconds=int(analysis_cfg["cache_ttl_seconds"]),
            cache_max_entries=int(analysis_cfg["cache_max_entries"]),
            max_plugins_in_report=int(analysis_cfg["max_plugins_in_report"]),
            enable_version_hints=bool(analysis_cfg["enable_version_hints"]),
            max_version_hint_probes=int(analysis_cfg["max_version_hint_probes"]),
            version_hint_concurrency=int(analysis_cfg["version_hint_concurrency"]),
            include_vuln_data=bool(analysis_cfg["include_vuln_data"]),
        ),
        feed=FeedConfig(
            feed_type=str(feed_cfg["feed_type"]),
            sync_interval_minutes=int(feed_cfg["sync_interval_minutes"]),
            sync_on_start=bool(feed_cfg["sync_on_start"]),
            lock_ttl_seconds=int(feed_cfg["lock_ttl_seconds"]),
            backoff_minutes=int(feed_cfg["backoff_minutes"]),
            timeout_seconds=float(feed_cfg["timeout_seconds"]),
        ),
        watch=WatchConfig(
            enabled=bool(watch_cfg["enabled"]),
            check_interval_minutes=int(watch_cfg["check_interval_minutes"]),
            recent_days=int(watch_cfg["recent_days"]),
        ),
        housekeeping=HousekeepingConfig(
            interval_minutes=int(cfg["housekeeping"]["interval_minutes"]),
        ),
        notifier=NotifierConfig(
            telegram_api_base=str(notifier_cfg["telegram_api_base"]).rstrip("/"),
            max_retry_after_seconds=int(notifier_cfg["max_retry_after_seconds"]),
        ),
        secrets=SecretsConfig(
            feed_api_key=env.get(FEED_API_KEY_ENV, "").strip(),
            bot_token=env.get(BOT_TOKEN_ENV, "").strip(),
            admin_token=env.get(ADMIN_TOKEN_ENV, "").strip(),
        ),
    )


def default_config(**secrets: str) -> Config:
    env = {
        FEED_API_KEY_ENV: secrets.get("feed_api_key", ""),
        BOT_TOKEN_ENV: secrets.get("bot_token", ""),
        ADMIN_TOKEN_ENV: secrets.get("admin_token", ""),
    }
    return build_config(_deep_copy(DEFAULT_CONFIG), env)


def _read_yaml(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigError(f"Invalid config: cannot read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid config: {path} is not valid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config: {path} must contain a mapping")
    return data


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


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


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))

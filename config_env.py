"""Load fumble.yaml and apply env overrides."""

from __future__ import annotations

import os
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from candle_fetcher import BINANCE_MAX_LIMIT, INTERVAL_MS
from env_utils import (
    FUMBLE_CONFIG_PATH,
    env_present,
    env_str,
    env_int,
    env_float,
)


PathKey = Tuple[str, ...]

# Env overrides cover connectivity and run defaults only.
ALLOWED_ENV_OVERRIDES = {
    "FUMBLE_TIMEZONE",
    "FUMBLE_HINDSIGHT_INTERVAL",
    "FUMBLE_LOOKAHEAD_HOURS",
    "FUMBLE_REALISM_PCT",
    "FUMBLE_REQUEST_DELAY_SEC",
    "FUMBLE_BINANCE_BASE_URL",
    "FUMBLE_BINANCE_FALLBACK_URL",
    "FUMBLE_MAX_ROWS",
    "FUMBLE_HTTP_TIMEOUT_SEC",
}

# Read elsewhere, never mapped into the config tree.
_NON_CONFIG_ENV = {"FUMBLE_LOG_LEVEL", "FUMBLE_CONFIG_PATH"}

DEFAULT_TIMEZONE = "UTC"
DEFAULT_INTERVAL = "5m"
DEFAULT_LOOKAHEAD_HOURS = 4.0
DEFAULT_REALISM_PCT = 80.0
DEFAULT_REQUEST_DELAY_SEC = 0.12
DEFAULT_PRIMARY_BASE_URL = "https://api.binance.com"
DEFAULT_FALLBACK_BASE_URL = "https://data-api.binance.vision"
DEFAULT_MAX_ROWS = BINANCE_MAX_LIMIT

_WARNED_IGNORED_ENV_OVERRIDES = False


def _warn_ignored_env_overrides_once(names: set[str]) -> None:
    global _WARNED_IGNORED_ENV_OVERRIDES
    if _WARNED_IGNORED_ENV_OVERRIDES or not names:
        return
    sorted_names = sorted(names)
    preview = ", ".join(sorted_names[:12])
    extra = len(sorted_names) - 12
    if extra > 0:
        preview = f"{preview}, +{extra} more"
    print(
        "Config warning: ignoring non-whitelisted FUMBLE env overrides "
        "(YAML-first mode). "
        f"Ignored keys: {preview}"
    )
    _WARNED_IGNORED_ENV_OVERRIDES = True


def _get_path(cfg: Dict[str, Any], path: PathKey, default: Any = None) -> Any:
    cur: Any = cfg
    for key in path:
        if not isinstance(cur, dict) or key not in cur:
            return default
        cur = cur[key]
    return cur


def _set_path(cfg: Dict[str, Any], path: PathKey, value: Any) -> None:
    cur: Any = cfg
    for key in path[:-1]:
        if key not in cur or not isinstance(cur[key], dict):
            cur[key] = {}
        cur = cur[key]
    cur[path[-1]] = value


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    cfg = deepcopy(config) if config else {}

    def override(path: PathKey, env_name: str, kind: str = "str") -> None:
        if not env_present(env_name):
            return
        default = _get_path(cfg, path)
        if kind == "int":
            value = env_int(env_name, default if isinstance(default, int) else 0)
        elif kind == "float":
            value = env_float(env_name, float(default) if default is not None else 0.0)
        else:
            value = env_str(env_name, default if default is not None else "")
        _set_path(cfg, path, value)

    override(("config", "timezone"), "FUMBLE_TIMEZONE")
    override(("config", "hindsight", "interval"), "FUMBLE_HINDSIGHT_INTERVAL")
    override(("config", "hindsight", "lookahead_hours"), "FUMBLE_LOOKAHEAD_HOURS", kind="float")
    override(("config", "hindsight", "realism_pct"), "FUMBLE_REALISM_PCT", kind="float")
    override(("config", "hindsight", "request_delay_sec"), "FUMBLE_REQUEST_DELAY_SEC", kind="float")
    override(("config", "price_source", "primary_base_url"), "FUMBLE_BINANCE_BASE_URL")
    override(("config", "price_source", "fallback_base_url"), "FUMBLE_BINANCE_FALLBACK_URL")
    override(("config", "price_source", "max_rows"), "FUMBLE_MAX_ROWS", kind="int")
    override(("config", "price_source", "http_timeout_sec"), "FUMBLE_HTTP_TIMEOUT_SEC", kind="float")

    ignored = {
        name
        for name in os.environ
        if name.startswith("FUMBLE_")
        and name not in ALLOWED_ENV_OVERRIDES
        and name not in _NON_CONFIG_ENV
        and env_present(name)
    }
    _warn_ignored_env_overrides_once(ignored)
    return cfg


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load fumble.yaml (missing file -> defaults) with env overrides applied."""
    cfg_path = Path(path or FUMBLE_CONFIG_PATH)
    if cfg_path.exists():
        with open(cfg_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config root must be a mapping: {cfg_path}")
        return apply_env_overrides(raw)
    return apply_env_overrides({})


@dataclass(frozen=True)
class HindsightSettings:
    timezone: str = DEFAULT_TIMEZONE
    interval: str = DEFAULT_INTERVAL
    lookahead_hours: float = DEFAULT_LOOKAHEAD_HOURS
    realism_pct: float = DEFAULT_REALISM_PCT
    request_delay_sec: float = DEFAULT_REQUEST_DELAY_SEC


@dataclass(frozen=True)
class PriceSourceSettings:
    primary_base_url: str = DEFAULT_PRIMARY_BASE_URL
    fallback_base_url: str = DEFAULT_FALLBACK_BASE_URL
    max_rows: int = DEFAULT_MAX_ROWS
    http_timeout_sec: float = 0.0


def _interval_or_default(value: Any) -> str:
    interval = str(value if value is not None else DEFAULT_INTERVAL).strip()
    if interval in INTERVAL_MS:
        return interval
    print(
        f"Config warning: unsupported hindsight interval {interval!r}; "
        f"using {DEFAULT_INTERVAL} (expected one of {', '.join(INTERVAL_MS)})"
    )
    return DEFAULT_INTERVAL


def hindsight_settings(config: Dict[str, Any]) -> HindsightSettings:
    hs = _get_path(config, ("config", "hindsight"), {}) or {}
    return HindsightSettings(
        timezone=str(_get_path(config, ("config", "timezone"), DEFAULT_TIMEZONE) or DEFAULT_TIMEZONE),
        interval=_interval_or_default(hs.get("interval", DEFAULT_INTERVAL)),
        lookahead_hours=float(hs.get("lookahead_hours", DEFAULT_LOOKAHEAD_HOURS)),
        realism_pct=float(hs.get("realism_pct", DEFAULT_REALISM_PCT)),
        request_delay_sec=max(0.0, float(hs.get("request_delay_sec", DEFAULT_REQUEST_DELAY_SEC))),
    )


def price_source_settings(config: Dict[str, Any]) -> PriceSourceSettings:
    ps = _get_path(config, ("config", "price_source"), {}) or {}
    return PriceSourceSettings(
        primary_base_url=str(ps.get("primary_base_url", DEFAULT_PRIMARY_BASE_URL)).rstrip("/"),
        fallback_base_url=str(ps.get("fallback_base_url", DEFAULT_FALLBACK_BASE_URL)).rstrip("/"),
        max_rows=max(1, min(BINANCE_MAX_LIMIT, int(ps.get("max_rows", DEFAULT_MAX_ROWS)))),
        http_timeout_sec=max(0.0, float(ps.get("http_timeout_sec", 0.0) or 0.0)),
    )

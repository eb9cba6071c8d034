"""Environment helpers for fumble (loads .env + typed accessors)."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load .env early for any module importing env_utils.
load_dotenv(Path(__file__).parent / ".env")


def _env_lookup(name: str) -> Optional[str]:
    return os.getenv(name)


def env_present(name: str) -> bool:
    value = _env_lookup(name)
    return value is not None and str(value).strip() != ""


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    if not env_present(name):
        return default
    return str(_env_lookup(name) or "").strip()


def env_int(name: str, default: int) -> int:
    if not env_present(name):
        return default
    try:
        return int(str(_env_lookup(name) or "").strip())
    except (TypeError, ValueError):
        return default


def env_float(name: str, default: float) -> float:
    if not env_present(name):
        return default
    try:
        return float(str(_env_lookup(name) or "").strip())
    except (TypeError, ValueError):
        return default


FUMBLE_ROOT = str(Path(__file__).resolve().parent)
FUMBLE_CONFIG_PATH = env_str("FUMBLE_CONFIG_PATH", str(Path(FUMBLE_ROOT) / "fumble.yaml"))

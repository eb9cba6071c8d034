#!/usr/bin/env python3
"""
Trade-history export parsing.

Supported exports:
- BloFin Order History (one row per order, Open/Close Long/Short sides)

Rows come in as header -> string mappings from whatever CSV reader the caller
uses. Bad rows are skipped, not raised: partial and hand-edited exports are
common and one broken line should not sink the whole file.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo

from logging_utils import get_logger

LOG = get_logger("fill_parser")

SOURCE_BLOFIN = "BLOFIN_ORDER_HISTORY"
SOURCE_UNKNOWN = "UNKNOWN"

ACTION_OPEN = "OPEN"
ACTION_CLOSE = "CLOSE"
DIRECTION_LONG = "LONG"
DIRECTION_SHORT = "SHORT"
UNKNOWN = "UNKNOWN"

NO_VALUE = "--"
BLOFIN_TIME_FORMAT = "%m/%d/%Y %H:%M:%S"

REQUIRED_HEADERS = (
    "Underlying Asset",
    "Margin Mode",
    "Order Time",
    "Avg Fill",
    "Filled",
    "PNL",
    "PNL%",
    "Status",
    "Side",
    "Fee",
)

_WS_RE = re.compile(r"\s+")


class UnsupportedExportError(ValueError):
    """Raised when an export's header layout matches no known source."""


@dataclass(frozen=True)
class Fill:
    """One filled order from the export."""
    symbol: str
    side: str
    action: str  # OPEN / CLOSE
    direction: str  # LONG / SHORT
    time: datetime
    price: float
    quantity: float
    realized_pnl: Optional[float] = None
    realized_pnl_pct: Optional[float] = None
    fee: Optional[float] = None

    @property
    def time_ms(self) -> int:
        return int(self.time.timestamp() * 1000)


@dataclass(frozen=True)
class ParseResult:
    """Either a parsed fill or the reason the row was skipped."""
    fill: Optional[Fill] = None
    skip_reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.fill is not None

    @classmethod
    def parsed(cls, fill: Fill) -> "ParseResult":
        return cls(fill=fill)

    @classmethod
    def skip(cls, reason: str) -> "ParseResult":
        return cls(skip_reason=reason)


def clean_header(h: object) -> str:
    s = str(h if h is not None else "").strip().lower()
    s = s.replace("_", " ").replace("-", " ")
    return _WS_RE.sub(" ", s).strip()


def detect_source(headers: Iterable[object]) -> str:
    cleaned = {clean_header(h) for h in headers or []}
    if all(clean_header(h) in cleaned for h in REQUIRED_HEADERS):
        return SOURCE_BLOFIN
    return SOURCE_UNKNOWN


def require_supported(headers: Iterable[object]) -> str:
    """Return the detected source or raise UnsupportedExportError."""
    headers = list(headers or [])
    source = detect_source(headers)
    if source == SOURCE_UNKNOWN:
        cleaned = {clean_header(h) for h in headers}
        missing = [h for h in REQUIRED_HEADERS if clean_header(h) not in cleaned]
        raise UnsupportedExportError(
            "Unsupported CSV for now (BloFin Order History supported). "
            f"Missing columns: {', '.join(missing)}"
        )
    return source


def parse_num_with_units(v: object) -> Optional[float]:
    """Parse '1,234.5 USDT' style cells. '--' and junk give None."""
    if v is None:
        return None
    s = str(v).strip()
    if not s or s == NO_VALUE:
        return None
    token = s.split(" ")[0].replace(",", "")
    try:
        n = float(token)
    except ValueError:
        return None
    if not math.isfinite(n):
        return None
    return n


def resolve_timezone(name: Optional[str]) -> tzinfo:
    if not name or str(name).upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(str(name))
    except Exception:
        LOG.warning(f"Unknown timezone {name!r}; falling back to UTC")
        return timezone.utc


def parse_order_time(v: object, tz: Optional[tzinfo] = None) -> Optional[datetime]:
    """ISO/locale parse first, then BloFin's MM/DD/YYYY HH:mm:ss."""
    if v is None:
        return None
    s = str(v).strip()
    if not s:
        return None

    dt: Optional[datetime] = None
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        dt = None
    if dt is None:
        try:
            dt = datetime.strptime(s, BLOFIN_TIME_FORMAT)
        except ValueError:
            return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz or timezone.utc)
    return dt


def classify_side(side: object) -> Tuple[str, str]:
    """Map 'Open Long' / 'Close Short' / ... to (action, direction)."""
    s = str(side or "").upper()
    action = UNKNOWN
    direction = UNKNOWN
    if "OPEN" in s:
        action = ACTION_OPEN
    if "CLOSE" in s:
        action = ACTION_CLOSE
    if "LONG" in s:
        direction = DIRECTION_LONG
    if "SHORT" in s:
        direction = DIRECTION_SHORT
    return action, direction


def _normalized_row(row: Mapping[object, object]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for key, value in (row or {}).items():
        ck = clean_header(key)
        if ck and ck not in out:
            out[ck] = "" if value is None else str(value)
    return out


def parse_row(row: Mapping[object, object], tz: Optional[tzinfo] = None) -> ParseResult:
    r = _normalized_row(row)

    status = r.get("status", "").strip().lower()
    if status != "filled":
        return ParseResult.skip(f"status={status or 'empty'}")

    symbol = r.get("underlying asset", "").strip()
    if not symbol:
        return ParseResult.skip("missing symbol")

    side = r.get("side", "").strip()
    action, direction = classify_side(side)
    if action == UNKNOWN or direction == UNKNOWN:
        return ParseResult.skip(f"unknown side {side!r}")

    time = parse_order_time(r.get("order time"), tz)
    if time is None:
        return ParseResult.skip("bad order time")

    price = parse_num_with_units(r.get("avg fill"))
    if price is None:
        return ParseResult.skip("bad avg fill")

    qty = parse_num_with_units(r.get("filled"))
    if qty is None or qty <= 0:
        return ParseResult.skip("bad filled quantity")

    return ParseResult.parsed(
        Fill(
            symbol=symbol,
            side=side,
            action=action,
            direction=direction,
            time=time,
            price=price,
            quantity=qty,
            realized_pnl=parse_num_with_units(r.get("pnl")),
            realized_pnl_pct=parse_num_with_units(r.get("pnl%")),
            fee=parse_num_with_units(r.get("fee")),
        )
    )


def parse_blofin_rows(rows: Iterable[Mapping[object, object]], tz: Optional[tzinfo] = None) -> List[Fill]:
    fills: List[Fill] = []
    skipped = 0
    for row in rows or []:
        result = parse_row(row, tz)
        if result.fill is not None:
            fills.append(result.fill)
        else:
            skipped += 1
            LOG.debug(f"Skipped row: {result.skip_reason}")
    if skipped:
        LOG.debug(f"Parsed fills={len(fills)} skipped={skipped}")
    return fills

#!/usr/bin/env python3
"""
Binance spot klines fetcher (public, no key) with a mirror fallback.

Primary:  https://api.binance.com
Fallback: https://data-api.binance.vision

Each request returns at most 1000 rows, so longer ranges are walked in chunks,
strictly one after another: the next chunk starts right after the last candle
of the previous one. Requests are spaced by a short fixed delay.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import aiohttp

from logging_utils import get_logger

DEFAULT_PRIMARY_BASE_URL = "https://api.binance.com"
DEFAULT_FALLBACK_BASE_URL = "https://data-api.binance.vision"
KLINES_PATH = "/api/v3/klines"
BINANCE_MAX_LIMIT = 1000
REQUEST_DELAY_SEC = 0.12

INTERVAL_MS = {
    "1m": 60_000,
    "3m": 180_000,
    "5m": 300_000,
    "15m": 900_000,
    "30m": 1_800_000,
    "1h": 3_600_000,
    "2h": 7_200_000,
    "4h": 14_400_000,
    "6h": 21_600_000,
    "8h": 28_800_000,
    "12h": 43_200_000,
    "1d": 86_400_000,
    "3d": 259_200_000,
    "1w": 604_800_000,
}

ProgressCallback = Callable[[int, int, int], None]


class CandleFetchError(RuntimeError):
    """Every configured source failed for one chunk request."""

    def __init__(self, symbol: str, start_ms: int, end_ms: int, reason: str):
        self.symbol = symbol
        self.start_ms = start_ms
        self.end_ms = end_ms
        self.reason = reason
        super().__init__(f"{symbol} klines {start_ms}-{end_ms}: {reason}")


@dataclass(frozen=True)
class Candle:
    open_time: int  # ms
    high: float
    low: float


def interval_ms(interval: str) -> int:
    try:
        return INTERVAL_MS[interval]
    except KeyError:
        raise ValueError(
            f"Unsupported interval {interval!r}; expected one of {', '.join(INTERVAL_MS)}"
        ) from None


def normalize_symbol(symbol: str) -> str:
    """BTC-USDT / btc/usdt / BTCUSDT -> BTCUSDT."""
    return str(symbol or "").upper().replace("-", "").replace("/", "").strip()


def _short_body(text: str, limit: int = 160) -> str:
    t = (text or "").replace("\n", " ").strip()
    return t[:limit]


def _check_row(row: Any) -> None:
    """Kline rows are [openTime, open, high, low, ...] with numeric fields."""
    if not isinstance(row, (list, tuple)) or len(row) < 4:
        raise RuntimeError(f"malformed kline row: {_short_body(repr(row), 80)}")
    try:
        int(row[0])
        float(row[2])
        float(row[3])
    except (TypeError, ValueError):
        raise RuntimeError(f"non-numeric kline row: {_short_body(repr(row), 80)}") from None


class KlinesClient:
    """One-chunk klines fetch, primary base first then the fallback once.

    Sessions are owned by the client unless one is injected.
    """

    def __init__(
        self,
        *,
        base_urls: Optional[Sequence[str]] = None,
        session: Optional[Any] = None,
        timeout_sec: float = 0.0,
        max_rows: int = BINANCE_MAX_LIMIT,
        log: Optional[logging.Logger] = None,
    ):
        bases = list(base_urls) if base_urls else [DEFAULT_PRIMARY_BASE_URL, DEFAULT_FALLBACK_BASE_URL]
        self.base_urls = [str(b).rstrip("/") for b in bases if str(b or "").strip()]
        if not self.base_urls:
            raise ValueError("KlinesClient needs at least one base URL")
        self.max_rows = int(max_rows)
        self.timeout_sec = float(timeout_sec or 0.0)
        self.log = log or get_logger("candle_fetcher")
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "KlinesClient":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def initialize(self) -> None:
        if self._session is not None and not getattr(self._session, "closed", False):
            return
        if self.timeout_sec > 0:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_sec))
        else:
            self._session = aiohttp.ClientSession()
        self._owns_session = True

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        if self._owns_session:
            self._session = None

    async def _get_json(self, base: str, params: Dict[str, Any]) -> List[list]:
        async with self._session.get(f"{base}{KLINES_PATH}", params=params) as resp:
            if resp.status != 200:
                body = await resp.text()
                raise RuntimeError(f"HTTP {resp.status} body={_short_body(body)}")
            data = await resp.json()
        if not isinstance(data, list):
            raise RuntimeError(f"unexpected payload type {type(data).__name__}")
        for row in data:
            _check_row(row)
        return data

    async def fetch_chunk(self, symbol: str, interval: str, start_ms: int, end_ms: int) -> List[list]:
        """Raw kline rows for [start_ms, end_ms], up to max_rows."""
        if self._session is None:
            await self.initialize()
        params = {
            "symbol": symbol,
            "interval": interval,
            "startTime": str(int(start_ms)),
            "endTime": str(int(end_ms)),
            "limit": str(self.max_rows),
        }
        last_err: Optional[BaseException] = None
        for idx, base in enumerate(self.base_urls):
            try:
                return await self._get_json(base, params)
            except Exception as exc:
                last_err = exc
                if idx + 1 < len(self.base_urls):
                    self.log.warning(f"Klines {symbol} failed on {base}: {exc}; trying fallback")
        raise CandleFetchError(symbol, int(start_ms), int(end_ms), str(last_err or "no response"))


def _dedupe_sorted(rows: List[list]) -> List[list]:
    seen = set()
    out: List[list] = []
    for row in rows:
        ot = int(row[0])
        if ot in seen:
            continue
        seen.add(ot)
        out.append(row)
    out.sort(key=lambda r: int(r[0]))
    return out


def to_candles(rows: List[list]) -> List[Candle]:
    return [Candle(open_time=int(r[0]), high=float(r[2]), low=float(r[3])) for r in rows]


async def fetch_all_klines(
    client: KlinesClient,
    symbol: str,
    interval: str,
    start_ms: int,
    end_ms: int,
    *,
    request_delay_sec: float = REQUEST_DELAY_SEC,
    on_progress: Optional[ProgressCallback] = None,
) -> List[Candle]:
    """Walk [start_ms, end_ms) in 1000-candle chunks; dedupe by open time, sort.

    Any chunk failure propagates as CandleFetchError; no partial series.
    """
    step_ms = interval_ms(interval)
    max_span = step_ms * int(getattr(client, "max_rows", BINANCE_MAX_LIMIT) or BINANCE_MAX_LIMIT)
    log = getattr(client, "log", None) or get_logger("candle_fetcher")

    cursor = int(start_ms)
    end_ms = int(end_ms)
    rows: List[list] = []
    chunk = 0

    while cursor < end_ms:
        chunk_end = min(end_ms, cursor + max_span)
        chunk += 1
        if on_progress:
            on_progress(chunk, cursor, chunk_end)

        batch = await client.fetch_chunk(symbol, interval, cursor, chunk_end)
        log.debug(f"Klines {symbol} chunk={chunk} start={cursor} end={chunk_end} rows={len(batch)}")
        rows.extend(batch)

        next_cursor = int(batch[-1][0]) + step_ms if batch else chunk_end
        cursor = next_cursor if next_cursor > cursor else chunk_end

        if request_delay_sec > 0:
            await asyncio.sleep(request_delay_sec)

    candles = to_candles(_dedupe_sorted(rows))
    log.info(f"Fetched {symbol} {interval} candles: n={len(candles)} chunks={chunk}")
    return candles

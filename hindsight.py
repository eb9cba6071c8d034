#!/usr/bin/env python3
"""Hindsight pass: best reachable exit after each close vs what was realized.

For every closed trade we look at candles opened in
[close_time, close_time + lookahead) and take the max high (LONG) or min low
(SHORT). The realism factor pulls that extreme back toward the actual exit
price, since nobody sells the exact top.
"""

from __future__ import annotations

import math
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from candle_fetcher import Candle, KlinesClient, fetch_all_klines, interval_ms, normalize_symbol
from fill_parser import DIRECTION_SHORT
from logging_utils import get_logger
from lot_matcher import ClosedTrade

LOG = get_logger("hindsight")

HOUR_MS = 3_600_000
RANGE_PAD_CANDLES = 2

StatusCallback = Callable[[str], None]


@dataclass(frozen=True)
class HindsightResult:
    trade: ClosedTrade
    best_exit: Optional[float]
    potential_pnl: Optional[float]
    potential_pct: Optional[float]
    fumbled: Optional[float]

    @property
    def realized_pnl(self) -> Optional[float]:
        return self.trade.realized_pnl

    def as_dict(self) -> Dict[str, object]:
        out = asdict(self.trade)
        out.update(
            best_exit=self.best_exit,
            potential_pnl=self.potential_pnl,
            potential_pct=self.potential_pct,
            fumbled=self.fumbled,
        )
        return out


@dataclass(frozen=True)
class HindsightSummary:
    total_potential: float
    total_realized: float
    total_fumbled: float
    worst: Optional[HindsightResult]


def _finite(x: Optional[float]) -> bool:
    return x is not None and math.isfinite(x)


def best_price_in_window(
    series: Sequence[Candle],
    start_ms: int,
    end_ms: int,
    direction: str,
) -> Optional[float]:
    """LONG: max high, SHORT: min low, over candles opened in [start_ms, end_ms)."""
    short = str(direction or "").upper() == DIRECTION_SHORT
    best: Optional[float] = None
    for c in series:
        if c.open_time < start_ms:
            continue
        if c.open_time >= end_ms:
            break
        value = c.low if short else c.high
        if best is None:
            best = value
        elif short:
            best = min(best, value)
        else:
            best = max(best, value)
    return best


def no_data(trade: ClosedTrade) -> HindsightResult:
    return HindsightResult(trade=trade, best_exit=None, potential_pnl=None, potential_pct=None, fumbled=None)


def evaluate_trade(
    trade: ClosedTrade,
    series: Optional[Sequence[Candle]],
    lookahead_ms: int,
    realism: float,
) -> HindsightResult:
    if not series:
        return no_data(trade)

    realism = max(0.0, min(1.0, float(realism)))
    start_ms = trade.close_time_ms
    raw_best = best_price_in_window(series, start_ms, start_ms + int(lookahead_ms), trade.direction)
    if not _finite(raw_best):
        return no_data(trade)

    exit_price = trade.exit_price
    if _finite(exit_price):
        best_exit = exit_price + (raw_best - exit_price) * realism
    else:
        best_exit = raw_best

    short = trade.direction == DIRECTION_SHORT
    entry = trade.entry_price
    qty = trade.quantity

    potential_pnl: Optional[float] = None
    if _finite(entry) and _finite(qty):
        potential_pnl = (entry - best_exit) * qty if short else (best_exit - entry) * qty

    potential_pct: Optional[float] = None
    if _finite(entry) and entry != 0:
        raw_pct = (best_exit - entry) / entry * 100.0
        potential_pct = -raw_pct if short else raw_pct

    fumbled: Optional[float] = None
    if potential_pnl is not None and _finite(trade.realized_pnl):
        fumbled = max(0.0, potential_pnl - trade.realized_pnl)

    return HindsightResult(
        trade=trade,
        best_exit=best_exit,
        potential_pnl=potential_pnl,
        potential_pct=potential_pct,
        fumbled=fumbled,
    )


def group_by_symbol(trades: Iterable[ClosedTrade]) -> "OrderedDict[str, List[ClosedTrade]]":
    groups: "OrderedDict[str, List[ClosedTrade]]" = OrderedDict()
    for t in trades:
        sym = normalize_symbol(t.symbol)
        if not sym:
            continue
        groups.setdefault(sym, []).append(t)
    return groups


def fetch_range_for_trades(
    trades: Sequence[ClosedTrade],
    step_ms: int,
    lookahead_ms: int,
) -> Tuple[int, int]:
    closes = [t.close_time_ms for t in trades]
    pad = step_ms * RANGE_PAD_CANDLES
    return min(closes) - pad, max(closes) + int(lookahead_ms) + pad


async def run_hindsight(
    trades: Sequence[ClosedTrade],
    client: KlinesClient,
    *,
    interval: str = "5m",
    lookahead_hours: float = 4.0,
    realism_pct: float = 80.0,
    request_delay_sec: float = 0.12,
    on_status: Optional[StatusCallback] = None,
) -> List[HindsightResult]:
    """Fetch candles once per symbol (sequentially), then score every trade.

    CandleFetchError from any symbol aborts the whole run.
    """
    step_ms = interval_ms(interval)
    lookahead_ms = int(float(lookahead_hours) * HOUR_MS)
    realism = max(0.0, min(1.0, float(realism_pct) / 100.0))

    def status(msg: str) -> None:
        LOG.info(msg)
        if on_status:
            on_status(msg)

    groups = group_by_symbol(trades)
    series_by_symbol: Dict[str, List[Candle]] = {}
    for idx, (sym, sym_trades) in enumerate(groups.items(), start=1):
        start_ms, end_ms = fetch_range_for_trades(sym_trades, step_ms, lookahead_ms)
        status(f"Fetching {sym} candles ({idx}/{len(groups)})")

        def _progress(chunk: int, _start: int, _end: int, _sym: str = sym) -> None:
            if on_status:
                on_status(f"Fetching {_sym} candles... chunk {chunk}")

        series_by_symbol[sym] = await fetch_all_klines(
            client,
            sym,
            interval,
            start_ms,
            end_ms,
            request_delay_sec=request_delay_sec,
            on_progress=_progress,
        )

    status("Computing fumbles")
    results = [
        evaluate_trade(t, series_by_symbol.get(normalize_symbol(t.symbol)), lookahead_ms, realism)
        for t in trades
    ]
    missing = sum(1 for r in results if r.best_exit is None)
    LOG.info(f"Hindsight done: trades={len(results)} symbols={len(groups)} no_data={missing}")
    return results


def summarize_hindsight(results: Sequence[HindsightResult]) -> HindsightSummary:
    total_fumbled = sum(r.fumbled for r in results if _finite(r.fumbled))
    total_potential = sum(r.potential_pnl for r in results if _finite(r.potential_pnl))
    total_realized = sum(r.realized_pnl for r in results if _finite(r.realized_pnl))
    scored = [r for r in results if _finite(r.fumbled)]
    worst = max(scored, key=lambda r: r.fumbled) if scored else None
    return HindsightSummary(
        total_potential=float(total_potential),
        total_realized=float(total_realized),
        total_fumbled=float(total_fumbled),
        worst=worst,
    )

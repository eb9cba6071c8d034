#!/usr/bin/env python3
"""Behavioral summary over closed trades (win rate, paperhands, fumble score).

The fumble score maps the paperhands ratio (avg winner hold / avg loser hold)
onto 0..100: 60 at parity, -20 per doubling. Holding winners longer trends
to 0; cutting winners early while sitting in losers trends to 100.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from candle_fetcher import normalize_symbol
from lot_matcher import ClosedTrade

SCORE_BASE = 60.0
SCORE_PER_DOUBLING = 20.0
SCORE_MIN = 0.0
SCORE_MAX = 100.0

BAND_IMPULSIVE = 70.0
BAND_SHAKY = 40.0


@dataclass(frozen=True)
class BehaviorSummary:
    trade_count: int
    win_rate: Optional[float]
    total_pnl: float
    avg_win_hold_mins: Optional[float]
    avg_loss_hold_mins: Optional[float]
    paperhands: Optional[float]
    fumble_score: Optional[float]


def _defined(x: Optional[float]) -> bool:
    return x is not None and math.isfinite(x)


def clamp(n: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, n))


def mean(values: Iterable[Optional[float]]) -> Optional[float]:
    vals = [float(v) for v in values if _defined(v)]
    if not vals:
        return None
    return sum(vals) / len(vals)


def fumble_score_from_ratio(paperhands: Optional[float]) -> Optional[float]:
    if not _defined(paperhands) or paperhands < 0:
        return None
    if paperhands == 0:
        return SCORE_MAX
    return clamp(SCORE_BASE - SCORE_PER_DOUBLING * math.log2(paperhands), SCORE_MIN, SCORE_MAX)


def summarize_closed_trades(trades: Sequence[ClosedTrade]) -> BehaviorSummary:
    n = len(trades)
    wins = [t for t in trades if _defined(t.realized_pnl) and t.realized_pnl > 0]
    losses = [t for t in trades if _defined(t.realized_pnl) and t.realized_pnl < 0]

    win_rate = len(wins) / n if n > 0 else None
    total_pnl = sum(t.realized_pnl for t in trades if _defined(t.realized_pnl))

    avg_win_hold = mean(t.hold_mins for t in wins)
    avg_loss_hold = mean(t.hold_mins for t in losses)
    paperhands: Optional[float] = None
    if avg_win_hold is not None and avg_loss_hold is not None and avg_loss_hold > 0:
        paperhands = avg_win_hold / avg_loss_hold

    return BehaviorSummary(
        trade_count=n,
        win_rate=win_rate,
        total_pnl=float(total_pnl),
        avg_win_hold_mins=avg_win_hold,
        avg_loss_hold_mins=avg_loss_hold,
        paperhands=paperhands,
        fumble_score=fumble_score_from_ratio(paperhands),
    )


def score_band(score: Optional[float]) -> Optional[str]:
    if not _defined(score):
        return None
    if score >= BAND_IMPULSIVE:
        return "impulsive"
    if score >= BAND_SHAKY:
        return "shaky"
    return "disciplined"


def unique_pairs(trades: Iterable[ClosedTrade]) -> List[str]:
    seen: List[str] = []
    for t in trades:
        sym = normalize_symbol(t.symbol)
        if sym and sym not in seen:
            seen.append(sym)
    return seen

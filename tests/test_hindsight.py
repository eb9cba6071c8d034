#!/usr/bin/env python3
"""Best-exit window, realism dampening and fumble totals."""

import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from candle_fetcher import Candle, CandleFetchError
from hindsight import (
    best_price_in_window,
    evaluate_trade,
    fetch_range_for_trades,
    group_by_symbol,
    run_hindsight,
    summarize_hindsight,
)
from lot_matcher import ClosedTrade

MIN = 60_000
CLOSE = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
CLOSE_MS = int(CLOSE.timestamp() * 1000)


def _trade(
    direction="LONG",
    entry=100.0,
    exit_=110.0,
    qty=1.0,
    pnl=10.0,
    symbol="BTCUSDT",
    close=CLOSE,
) -> ClosedTrade:
    return ClosedTrade(
        exchange="BloFin",
        symbol=symbol,
        direction=direction,
        entry_price=entry,
        exit_price=exit_,
        quantity=qty,
        matched_quantity=qty,
        realized_pnl=pnl,
        realized_pnl_pct=None,
        fee=None,
        hold_mins=30.0,
        entry_time=None,
        close_time=close,
    )


def _series(*points) -> list:
    """points: (minutes after close, high, low)."""
    return [Candle(open_time=CLOSE_MS + m * MIN, high=h, low=l) for m, h, l in points]


def test_window_long_uses_max_high_and_ignores_outside() -> None:
    series = _series((-5, 500.0, 1.0), (0, 120.0, 105.0), (5, 130.0, 108.0), (60, 999.0, 1.0))
    assert best_price_in_window(series, CLOSE_MS, CLOSE_MS + 60 * MIN, "LONG") == 130.0


def test_window_short_uses_min_low() -> None:
    series = _series((0, 120.0, 95.0), (5, 130.0, 90.0), (10, 125.0, 92.0))
    assert best_price_in_window(series, CLOSE_MS, CLOSE_MS + 60 * MIN, "SHORT") == 90.0


def test_window_end_is_exclusive() -> None:
    series = _series((0, 120.0, 100.0), (60, 200.0, 100.0))
    assert best_price_in_window(series, CLOSE_MS, CLOSE_MS + 60 * MIN, "LONG") == 120.0
    assert best_price_in_window(series, CLOSE_MS + 61 * MIN, CLOSE_MS + 90 * MIN, "LONG") is None


def test_long_full_realism() -> None:
    r = evaluate_trade(_trade(), _series((0, 120.0, 105.0)), 60 * MIN, 1.0)
    assert r.best_exit == pytest.approx(120.0)
    assert r.potential_pnl == pytest.approx(20.0)
    assert r.potential_pct == pytest.approx(20.0)
    assert r.fumbled == pytest.approx(10.0)


def test_realism_dampens_toward_actual_exit() -> None:
    r = evaluate_trade(_trade(), _series((0, 120.0, 105.0)), 60 * MIN, 0.8)
    assert r.best_exit == pytest.approx(118.0)
    assert r.potential_pnl == pytest.approx(18.0)
    assert r.fumbled == pytest.approx(8.0)


def test_zero_realism_means_actual_exit() -> None:
    r = evaluate_trade(_trade(), _series((0, 150.0, 105.0)), 60 * MIN, 0.0)
    assert r.best_exit == pytest.approx(110.0)
    assert r.fumbled == pytest.approx(0.0)


def test_short_potential_and_pct_sign() -> None:
    t = _trade(direction="SHORT", entry=100.0, exit_=95.0, qty=2.0, pnl=10.0)
    r = evaluate_trade(t, _series((0, 99.0, 90.0)), 60 * MIN, 1.0)
    assert r.best_exit == pytest.approx(90.0)
    assert r.potential_pnl == pytest.approx(20.0)
    assert r.potential_pct == pytest.approx(10.0)
    assert r.fumbled == pytest.approx(10.0)


def test_fumbled_never_negative() -> None:
    # Realized beats the best in-window exit.
    r = evaluate_trade(_trade(pnl=50.0), _series((0, 111.0, 100.0)), 60 * MIN, 1.0)
    assert r.potential_pnl == pytest.approx(11.0)
    assert r.fumbled == 0.0


def test_missing_series_or_empty_window_is_no_data() -> None:
    for series in (None, [], _series((120, 150.0, 100.0))):
        r = evaluate_trade(_trade(), series, 60 * MIN, 0.8)
        assert r.best_exit is None
        assert r.potential_pnl is None
        assert r.fumbled is None


def test_unmatched_trade_has_best_exit_but_no_potential() -> None:
    t = _trade(entry=None, pnl=3.0)
    r = evaluate_trade(t, _series((0, 120.0, 100.0)), 60 * MIN, 1.0)
    assert r.best_exit == pytest.approx(120.0)
    assert r.potential_pnl is None
    assert r.potential_pct is None
    assert r.fumbled is None


def test_undefined_realized_pnl_leaves_fumbled_undefined() -> None:
    r = evaluate_trade(_trade(pnl=None), _series((0, 120.0, 100.0)), 60 * MIN, 1.0)
    assert r.potential_pnl == pytest.approx(20.0)
    assert r.fumbled is None


def test_group_and_fetch_range() -> None:
    later = datetime(2024, 1, 15, 14, 0, 0, tzinfo=timezone.utc)
    trades = [_trade(symbol="btc-usdt"), _trade(symbol="ETHUSDT"), _trade(symbol="BTCUSDT", close=later)]
    groups = group_by_symbol(trades)
    assert list(groups) == ["BTCUSDT", "ETHUSDT"]
    assert len(groups["BTCUSDT"]) == 2

    start, end = fetch_range_for_trades(groups["BTCUSDT"], 5 * MIN, 240 * MIN)
    assert start == CLOSE_MS - 10 * MIN
    assert end == int(later.timestamp() * 1000) + 240 * MIN + 10 * MIN


class FakeClient:
    """Serves one fixed batch per symbol, or raises for symbols in `fail`."""

    def __init__(self, rows_by_symbol, fail=()):
        self.rows_by_symbol = rows_by_symbol
        self.fail = set(fail)
        self.max_rows = 1000
        self.log = None
        self.calls = []

    async def fetch_chunk(self, symbol, interval, start_ms, end_ms):
        self.calls.append((symbol, interval, start_ms, end_ms))
        if symbol in self.fail:
            raise CandleFetchError(symbol, start_ms, end_ms, "HTTP 500")
        return [r for r in self.rows_by_symbol.get(symbol, []) if start_ms <= r[0] <= end_ms]


def _k(minute, high, low):
    return [CLOSE_MS + minute * MIN, "0", str(high), str(low), "0", "0"]


@pytest.mark.asyncio
async def test_run_hindsight_end_to_end() -> None:
    client = FakeClient({"BTCUSDT": [_k(0, 120.0, 100.0), _k(5, 125.0, 101.0)]})
    statuses = []
    results = await run_hindsight(
        [_trade(), _trade(symbol="ETHUSDT")],
        client,
        interval="5m",
        lookahead_hours=1,
        realism_pct=100,
        request_delay_sec=0,
        on_status=statuses.append,
    )
    assert list(dict.fromkeys(c[0] for c in client.calls)) == ["BTCUSDT", "ETHUSDT"]
    assert all(c[1] == "5m" for c in client.calls)
    assert results[0].best_exit == pytest.approx(125.0)
    assert results[0].fumbled == pytest.approx(5.0)
    assert results[1].best_exit is None
    assert statuses[-1] == "Computing fumbles"


@pytest.mark.asyncio
async def test_run_hindsight_aborts_on_fetch_failure() -> None:
    client = FakeClient({"BTCUSDT": [_k(0, 120.0, 100.0)]}, fail={"ETHUSDT"})
    with pytest.raises(CandleFetchError):
        await run_hindsight(
            [_trade(), _trade(symbol="ETHUSDT")],
            client,
            interval="5m",
            request_delay_sec=0,
        )


def test_summarize_hindsight_totals_and_worst() -> None:
    series = _series((0, 130.0, 100.0))
    a = evaluate_trade(_trade(pnl=10.0), series, 60 * MIN, 1.0)  # potential 30, fumbled 20
    b = evaluate_trade(_trade(pnl=25.0), series, 60 * MIN, 1.0)  # potential 30, fumbled 5
    c = evaluate_trade(_trade(pnl=7.0), [], 60 * MIN, 1.0)  # no data
    s = summarize_hindsight([a, b, c])
    assert s.total_potential == pytest.approx(60.0)
    assert s.total_realized == pytest.approx(42.0)
    assert s.total_fumbled == pytest.approx(25.0)
    assert s.worst is a


def test_summarize_hindsight_empty() -> None:
    s = summarize_hindsight([])
    assert s.total_fumbled == 0.0
    assert s.worst is None

#!/usr/bin/env python3
"""
Round-trip trade reconstruction from fills (FIFO lots).

Open fills queue lots per (symbol, direction); close fills consume the oldest
lots first. A close that finds nothing (or not enough) to match still produces
a trade, tagged with a note, because exports are often cut off mid-position.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, Dict, Iterable, List, Optional, Tuple

from fill_parser import ACTION_CLOSE, ACTION_OPEN, Fill
from logging_utils import get_logger

LOG = get_logger("lot_matcher")

LOT_EPSILON = 1e-12
NOTE_NO_MATCH = "No matching open found (CSV may be partial)."

QueueKey = Tuple[str, str]


@dataclass
class OpenLot:
    time: datetime
    price: float
    quantity: float


@dataclass(frozen=True)
class ClosedTrade:
    exchange: str
    symbol: str
    direction: str
    entry_price: Optional[float]
    exit_price: Optional[float]
    quantity: Optional[float]
    matched_quantity: float
    realized_pnl: Optional[float]
    realized_pnl_pct: Optional[float]
    fee: Optional[float]
    hold_mins: Optional[float]
    entry_time: Optional[datetime]
    close_time: datetime
    note: Optional[str] = None

    @property
    def close_time_ms(self) -> int:
        return int(self.close_time.timestamp() * 1000)


def mins_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    if start is None or end is None:
        return None
    secs = (end - start).total_seconds()
    if secs < 0:
        return None
    return secs / 60.0


def _partial_note(matched: float, requested: float) -> str:
    return f"Partial match: {matched:g} of {requested:g} matched (CSV may be partial)."


class LotBook:
    """FIFO open-lot queues keyed by (symbol, direction)."""

    def __init__(self) -> None:
        self._queues: Dict[QueueKey, Deque[OpenLot]] = {}

    def queue(self, symbol: str, direction: str) -> Deque[OpenLot]:
        key = (symbol, direction)
        q = self._queues.get(key)
        if q is None:
            q = deque()
            self._queues[key] = q
        return q

    def open(self, fill: Fill) -> None:
        self.queue(fill.symbol, fill.direction).append(
            OpenLot(time=fill.time, price=fill.price, quantity=fill.quantity)
        )

    def close(self, fill: Fill, exchange: str = "BloFin") -> ClosedTrade:
        q = self.queue(fill.symbol, fill.direction)
        requested = float(fill.quantity)
        remaining = requested

        matched = 0.0
        notional = 0.0
        entry_time: Optional[datetime] = None

        while remaining > 0 and q:
            lot = q[0]
            take = min(remaining, lot.quantity)

            matched += take
            notional += take * lot.price
            if entry_time is None or lot.time < entry_time:
                entry_time = lot.time

            lot.quantity -= take
            remaining -= take
            if lot.quantity <= LOT_EPSILON:
                q.popleft()

        note: Optional[str] = None
        if matched <= 0:
            note = NOTE_NO_MATCH
        elif remaining > LOT_EPSILON:
            note = _partial_note(matched, requested)
        if note:
            LOG.debug(f"{fill.symbol} {fill.direction} close at {fill.time.isoformat()}: {note}")

        return ClosedTrade(
            exchange=exchange,
            symbol=fill.symbol,
            direction=fill.direction,
            entry_price=(notional / matched) if matched > 0 else None,
            exit_price=fill.price,
            quantity=requested,
            matched_quantity=matched,
            realized_pnl=fill.realized_pnl,
            realized_pnl_pct=fill.realized_pnl_pct,
            fee=fill.fee,
            hold_mins=mins_between(entry_time, fill.time),
            entry_time=entry_time,
            close_time=fill.time,
            note=note,
        )

    def open_quantity(self, symbol: str, direction: str) -> float:
        return sum(lot.quantity for lot in self._queues.get((symbol, direction), ()))


def build_closed_trades(fills: Iterable[Fill], exchange: str = "BloFin") -> List[ClosedTrade]:
    """Replay fills in time order and emit one trade per close fill."""
    ordered = sorted(fills or [], key=lambda f: f.time)
    book = LotBook()
    closed: List[ClosedTrade] = []

    for f in ordered:
        if f.action == ACTION_OPEN:
            book.open(f)
        elif f.action == ACTION_CLOSE:
            closed.append(book.close(f, exchange=exchange))

    unmatched = sum(1 for t in closed if t.note)
    LOG.debug(f"Rebuilt trades={len(closed)} from fills={len(ordered)} flagged={unmatched}")
    return closed

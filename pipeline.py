#!/usr/bin/env python3
"""
Session state for one export: load -> rebuild trades -> score -> hindsight.

Error policy:
- Unsupported export (unknown columns or undecodable file): error message,
  trades cleared, nothing downstream runs.
- Hindsight fetch failure: error message, no hindsight results at all, but the
  trades and behavior summary from the load stay as they were.
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Sequence

from behavior_score import BehaviorSummary, summarize_closed_trades
from candle_fetcher import CandleFetchError, KlinesClient
from config_env import HindsightSettings
from fill_parser import (
    SOURCE_UNKNOWN,
    UnsupportedExportError,
    parse_blofin_rows,
    require_supported,
    resolve_timezone,
)
from hindsight import HindsightResult, HindsightSummary, run_hindsight, summarize_hindsight
from logging_utils import get_logger
from lot_matcher import ClosedTrade, build_closed_trades

LOG = get_logger("pipeline")


class HindsightInProgressError(RuntimeError):
    """A hindsight run is already in flight for this session."""


def read_csv_rows(path: str) -> tuple[List[str], List[dict]]:
    """Header list + row dicts. Blank lines are skipped."""
    with open(path, "r", encoding="utf-8-sig", newline="") as f:
        reader = csv.DictReader(f)
        rows = [r for r in reader if any(str(v or "").strip() for v in r.values())]
        headers = list(reader.fieldnames or [])
    return headers, rows


class FumbleSession:
    def __init__(self, settings: Optional[HindsightSettings] = None):
        self.settings = settings or HindsightSettings()
        self.tz = resolve_timezone(self.settings.timezone)
        self.source: str = SOURCE_UNKNOWN
        self.file_name: Optional[str] = None
        self.closed_trades: List[ClosedTrade] = []
        self.summary: BehaviorSummary = summarize_closed_trades([])
        self.hindsight: Optional[List[HindsightResult]] = None
        self.hindsight_summary: Optional[HindsightSummary] = None
        self.error: Optional[str] = None
        self.status: str = ""
        self.hindsight_running = False

    def _reset(self) -> None:
        self.source = SOURCE_UNKNOWN
        self.closed_trades = []
        self.summary = summarize_closed_trades([])
        self.hindsight = None
        self.hindsight_summary = None
        self.error = None
        self.status = ""

    def load_rows(self, headers: Sequence[str], rows: Iterable[Mapping[str, str]]) -> bool:
        self._reset()
        try:
            self.source = require_supported(headers)
        except UnsupportedExportError as exc:
            self.error = str(exc)
            LOG.warning(self.error)
            return False

        fills = parse_blofin_rows(rows, self.tz)
        self.closed_trades = build_closed_trades(fills)
        self.summary = summarize_closed_trades(self.closed_trades)
        LOG.info(
            f"Loaded {self.source}: fills={len(fills)} trades={len(self.closed_trades)} "
            f"fumble_score={self.summary.fumble_score}"
        )
        return True

    def load_csv(self, path: str) -> bool:
        self.file_name = Path(path).name
        try:
            headers, rows = read_csv_rows(path)
        except (UnicodeDecodeError, csv.Error) as exc:
            self._reset()
            self.error = f"Unsupported CSV: could not read {self.file_name} as UTF-8 text ({exc.__class__.__name__})"
            LOG.warning(self.error)
            return False
        return self.load_rows(headers, rows)

    def _set_status(self, msg: str) -> None:
        self.status = msg

    async def run_hindsight(
        self,
        client: KlinesClient,
        *,
        interval: Optional[str] = None,
        lookahead_hours: Optional[float] = None,
        realism_pct: Optional[float] = None,
    ) -> bool:
        if not self.closed_trades:
            return False
        if self.hindsight_running:
            raise HindsightInProgressError("Hindsight already running for this session")

        s = self.settings
        self.hindsight_running = True
        self.error = None
        self.hindsight = None
        self.hindsight_summary = None
        self._set_status("Warming up the roast")
        try:
            results = await run_hindsight(
                self.closed_trades,
                client,
                interval=interval or s.interval,
                lookahead_hours=s.lookahead_hours if lookahead_hours is None else lookahead_hours,
                realism_pct=s.realism_pct if realism_pct is None else realism_pct,
                request_delay_sec=s.request_delay_sec,
                on_status=self._set_status,
            )
        except CandleFetchError as exc:
            self.error = f"Hindsight failed: {exc}"
            self.status = ""
            LOG.warning(self.error)
            return False
        finally:
            self.hindsight_running = False

        self.hindsight = results
        self.hindsight_summary = summarize_hindsight(results)
        self._set_status("Roast complete")
        return True

#!/usr/bin/env python3
"""
CLI for fumble: roast your exits from a trade-history export.

Commands:
- score: Rebuild round-trip trades and print the behavioral fumble score
- hindsight: Also fetch Binance candles and compute what each exit left behind
"""

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from behavior_score import BehaviorSummary, score_band, unique_pairs
from candle_fetcher import INTERVAL_MS, KlinesClient
from config_env import hindsight_settings, load_config, price_source_settings
from hindsight import HindsightResult, HindsightSummary
from logging_utils import setup_logging
from lot_matcher import ClosedTrade
from pipeline import FumbleSession

DASH = "-"
DEFAULT_TABLE_LIMIT = 80
_MODULE_LOGGERS = ("fill_parser", "lot_matcher", "candle_fetcher", "hindsight", "pipeline")


def fmt_money(n: Optional[float]) -> str:
    if n is None:
        return DASH
    sign = "-" if n < 0 else ""
    return f"{sign}${abs(n):,.2f}"


def fmt_pct(n: Optional[float]) -> str:
    if n is None:
        return DASH
    sign = "+" if n > 0 else ""
    return f"{sign}{n:.2f}%"


def fmt_price(n: Optional[float]) -> str:
    if n is None:
        return DASH
    return f"{n:,.2f}"


def fmt_time(t: Optional[datetime]) -> str:
    if t is None:
        return DASH
    return t.strftime("%Y-%m-%d %H:%M:%S")


def _json_default(o: Any) -> Any:
    if isinstance(o, datetime):
        return o.isoformat()
    raise TypeError(f"not JSON serializable: {type(o).__name__}")


def print_summary(summary: BehaviorSummary, pairs: List[str]) -> None:
    score = summary.fumble_score
    score_txt = DASH if score is None else str(round(score))
    band = score_band(score)
    print(f"Fumble Score: {score_txt}" + (f" ({band})" if band else ""))
    win_rate = DASH if summary.win_rate is None else f"{round(summary.win_rate * 100)}%"
    paperhands = DASH if summary.paperhands is None else f"{summary.paperhands:.2f}x"
    print(
        f"Trades: {summary.trade_count}  Win rate: {win_rate}  "
        f"Total PnL: {fmt_money(summary.total_pnl)}  Pairs: {len(pairs) or DASH}  "
        f"Paperhands: {paperhands}"
    )


def print_hindsight_summary(hs: HindsightSummary) -> None:
    print(
        f"Could've made: {fmt_money(hs.total_potential)}  "
        f"Actually made: {fmt_money(hs.total_realized)}  "
        f"Fumbled: {fmt_money(hs.total_fumbled)}"
    )
    if hs.worst is not None:
        w = hs.worst
        print(
            f"Worst fumble: {w.trade.symbol} {w.trade.direction} closed {fmt_time(w.trade.close_time)} "
            f"left {fmt_money(w.fumbled)} on the table"
        )


def print_trade_table(trades: List[ClosedTrade], results: Optional[List[HindsightResult]], limit: int) -> None:
    header = (
        f"{'Symbol':<12} {'Dir':<6} {'Entry':>12} {'Exit':>12} {'Best Exit':>12} "
        f"{'PnL':>12} {'Could PnL':>12} {'Could %':>9} {'Fumbled':>12} {'Hold(m)':>8} {'Close Time':<19}"
    )
    print(header)
    print("-" * len(header))
    rows = results if results is not None else [None] * len(trades)
    for trade, res in list(zip(trades, rows))[:limit]:
        hold = DASH if trade.hold_mins is None else f"{trade.hold_mins:.0f}"
        print(
            f"{trade.symbol:<12} {trade.direction:<6} {fmt_price(trade.entry_price):>12} "
            f"{fmt_price(trade.exit_price):>12} {fmt_price(res.best_exit if res else None):>12} "
            f"{fmt_money(trade.realized_pnl):>12} {fmt_money(res.potential_pnl if res else None):>12} "
            f"{fmt_pct(res.potential_pct if res else None):>9} "
            f"{fmt_money(res.fumbled if res else None):>12} {hold:>8} {fmt_time(trade.close_time):<19}"
        )
    if len(trades) > limit:
        print(f"... {len(trades) - limit} more")


def _session_payload(session: FumbleSession) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "file": session.file_name,
        "source": session.source,
        "summary": asdict(session.summary),
        "score_band": score_band(session.summary.fumble_score),
        "pairs": unique_pairs(session.closed_trades),
    }
    if session.hindsight is not None:
        payload["trades"] = [r.as_dict() for r in session.hindsight]
        hs = session.hindsight_summary
        payload["hindsight_summary"] = {
            "total_potential": hs.total_potential,
            "total_realized": hs.total_realized,
            "total_fumbled": hs.total_fumbled,
            "worst": hs.worst.as_dict() if hs.worst else None,
        }
    else:
        payload["trades"] = [asdict(t) for t in session.closed_trades]
    return payload


def _load_session(args, config: Dict[str, Any]) -> Optional[FumbleSession]:
    session = FumbleSession(hindsight_settings(config))
    try:
        ok = session.load_csv(args.csv)
    except FileNotFoundError:
        print(f"Error: file not found: {args.csv}")
        return None
    if not ok:
        print(f"Error: {session.error}")
        return None
    return session


async def cmd_score(args, config: Dict[str, Any]) -> int:
    """Parse the export and print the behavioral summary."""
    session = _load_session(args, config)
    if session is None:
        return 1

    if args.json:
        print(json.dumps(_session_payload(session), indent=2, default=_json_default))
        return 0

    print(f"Loaded {session.file_name} ({session.source})\n")
    print_summary(session.summary, unique_pairs(session.closed_trades))
    if session.closed_trades:
        print()
        print_trade_table(session.closed_trades, None, args.limit)
    return 0


async def cmd_hindsight(args, config: Dict[str, Any]) -> int:
    """Score the export, then compute best exits from Binance candles."""
    session = _load_session(args, config)
    if session is None:
        return 1
    if not session.closed_trades:
        print("No closed trades to roast.")
        return 0

    ps = price_source_settings(config)
    async with KlinesClient(
        base_urls=[ps.primary_base_url, ps.fallback_base_url],
        timeout_sec=ps.http_timeout_sec,
        max_rows=ps.max_rows,
    ) as client:
        ok = await session.run_hindsight(
            client,
            interval=args.interval,
            lookahead_hours=args.lookahead_hours,
            realism_pct=args.realism,
        )

    if args.json:
        payload = _session_payload(session)
        payload["error"] = session.error
        print(json.dumps(payload, indent=2, default=_json_default))
        return 0 if ok else 1

    print(f"Loaded {session.file_name} ({session.source})\n")
    print_summary(session.summary, unique_pairs(session.closed_trades))
    print()
    if not ok:
        print(f"Error: {session.error}")
        return 1
    print_hindsight_summary(session.hindsight_summary)
    print()
    print_trade_table(session.closed_trades, session.hindsight, args.limit)
    return 0


def build_parser(config: Optional[Dict[str, Any]] = None) -> argparse.ArgumentParser:
    hs = hindsight_settings(config or {})
    parser = argparse.ArgumentParser(
        description='fumble: rebuild trades from an export and roast the exits',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--config', default=None, help='Path to fumble.yaml')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    parser.add_argument('--log-file', default=None, help='Also write logs to this file')
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    score_parser = subparsers.add_parser('score', help='Behavioral fumble score from an export')
    score_parser.add_argument('csv', help='Path to the trade-history CSV')
    score_parser.add_argument('--json', action='store_true', help='Print JSON instead of tables')
    score_parser.add_argument('--limit', type=int, default=DEFAULT_TABLE_LIMIT, help='Max table rows')

    hs_parser = subparsers.add_parser('hindsight', help='Best-exit hindsight using Binance candles')
    hs_parser.add_argument('csv', help='Path to the trade-history CSV')
    hs_parser.add_argument('--interval', choices=list(INTERVAL_MS), default=hs.interval,
                           help=f'Candle interval (default: {hs.interval})')
    hs_parser.add_argument('--lookahead-hours', type=float, default=hs.lookahead_hours,
                           help=f'Hours after exit to search (default: {hs.lookahead_hours:g})')
    hs_parser.add_argument('--realism', type=float, default=hs.realism_pct,
                           help=f'Share of the best move assumed catchable, 0-100 (default: {hs.realism_pct:g})')
    hs_parser.add_argument('--json', action='store_true', help='Print JSON instead of tables')
    hs_parser.add_argument('--limit', type=int, default=DEFAULT_TABLE_LIMIT, help='Max table rows')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument('--config', default=None)
    known, _ = pre.parse_known_args(argv)
    config = load_config(known.config)

    parser = build_parser(config)
    args = parser.parse_args(argv)

    if args.verbose or args.log_file:
        for name in _MODULE_LOGGERS:
            setup_logging(name, log_file=args.log_file, verbose=args.verbose)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == 'score':
        return asyncio.run(cmd_score(args, config))
    elif args.command == 'hindsight':
        return asyncio.run(cmd_hindsight(args, config))
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())

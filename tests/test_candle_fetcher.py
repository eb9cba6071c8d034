#!/usr/bin/env python3
"""Klines chunk walking, fallback base, dedupe and failure semantics."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

import candle_fetcher as cf
from candle_fetcher import (
    Candle,
    CandleFetchError,
    KlinesClient,
    fetch_all_klines,
    interval_ms,
    normalize_symbol,
)

MIN = 60_000


class DummyResp:
    def __init__(self, status: int, json_data=None, body_text: str = ""):
        self.status = status
        self._json_data = json_data
        self._body_text = body_text

    async def text(self):
        return self._body_text

    async def json(self):
        return self._json_data


class DummyCM:
    def __init__(self, resp):
        self.resp = resp

    async def __aenter__(self):
        if isinstance(self.resp, Exception):
            raise self.resp
        return self.resp

    async def __aexit__(self, exc_type, exc, tb):
        return False


class DummySession:
    def __init__(self, responses):
        self._responses = list(responses)
        self.calls = []
        self.closed = False

    def get(self, url, params=None):
        self.calls.append((url, dict(params or {})))
        return DummyCM(self._responses.pop(0))


class ScriptedClient:
    """Stands in for KlinesClient.fetch_chunk with canned batches."""

    def __init__(self, batches, max_rows=1000):
        self._batches = list(batches)
        self.max_rows = max_rows
        self.calls = []
        self.log = cf.get_logger("candle_fetcher")

    async def fetch_chunk(self, symbol, interval, start_ms, end_ms):
        self.calls.append((start_ms, end_ms))
        batch = self._batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return batch


def _k(t: int, high: float = 2.0, low: float = 1.0) -> list:
    return [t, "1.5", str(high), str(low), "1.6", "10"]


def test_normalize_symbol() -> None:
    assert normalize_symbol("btc-usdt") == "BTCUSDT"
    assert normalize_symbol("ETH/USDT") == "ETHUSDT"
    assert normalize_symbol(" solusdt ") == "SOLUSDT"
    assert normalize_symbol(None) == ""


def test_interval_ms_known_and_unknown() -> None:
    assert interval_ms("5m") == 300_000
    with pytest.raises(ValueError):
        interval_ms("7m")


@pytest.mark.asyncio
async def test_fetch_chunk_uses_primary_with_expected_params() -> None:
    session = DummySession([DummyResp(200, json_data=[_k(0)])])
    client = KlinesClient(base_urls=["https://primary", "https://fallback"], session=session)

    rows = await client.fetch_chunk("BTCUSDT", "1m", 0, 1000 * MIN)

    assert rows == [_k(0)]
    assert len(session.calls) == 1
    url, params = session.calls[0]
    assert url == "https://primary/api/v3/klines"
    assert params["symbol"] == "BTCUSDT"
    assert params["interval"] == "1m"
    assert params["startTime"] == "0"
    assert params["endTime"] == str(1000 * MIN)
    assert params["limit"] == "1000"


@pytest.mark.asyncio
async def test_fetch_chunk_falls_back_on_status_and_exception() -> None:
    session = DummySession([DummyResp(451, body_text="restricted"), DummyResp(200, json_data=[_k(MIN)])])
    client = KlinesClient(base_urls=["https://primary", "https://fallback"], session=session)
    assert await client.fetch_chunk("BTCUSDT", "1m", 0, MIN) == [_k(MIN)]
    assert session.calls[1][0] == "https://fallback/api/v3/klines"

    session = DummySession([OSError("connection reset"), DummyResp(200, json_data=[])])
    client = KlinesClient(base_urls=["https://primary", "https://fallback"], session=session)
    assert await client.fetch_chunk("BTCUSDT", "1m", 0, MIN) == []


@pytest.mark.asyncio
async def test_fetch_chunk_raises_when_both_sources_fail() -> None:
    session = DummySession([DummyResp(500, body_text="oops"), DummyResp(429, body_text="slow down")])
    client = KlinesClient(base_urls=["https://primary", "https://fallback"], session=session)
    with pytest.raises(CandleFetchError) as exc:
        await client.fetch_chunk("BTCUSDT", "1m", 0, MIN)
    assert "429" in str(exc.value)
    assert len(session.calls) == 2


@pytest.mark.asyncio
async def test_fetch_chunk_rejects_non_list_payload() -> None:
    session = DummySession([
        DummyResp(200, json_data={"code": -1121, "msg": "Invalid symbol."}),
        DummyResp(200, json_data={"code": -1121, "msg": "Invalid symbol."}),
    ])
    client = KlinesClient(base_urls=["https://primary", "https://fallback"], session=session)
    with pytest.raises(CandleFetchError):
        await client.fetch_chunk("NOPEUSDT", "1m", 0, MIN)


@pytest.mark.asyncio
async def test_fetch_chunk_rejects_malformed_rows() -> None:
    session = DummySession([
        DummyResp(200, json_data=[{"openTime": 0}]),
        DummyResp(200, json_data=[[0, "1", "high", "low"]]),
    ])
    client = KlinesClient(base_urls=["https://primary", "https://fallback"], session=session)
    with pytest.raises(CandleFetchError) as exc:
        await client.fetch_chunk("BTCUSDT", "1m", 0, MIN)
    assert "non-numeric" in str(exc.value)
    assert len(session.calls) == 2


@pytest.mark.asyncio
async def test_fetch_chunk_falls_back_when_primary_rows_are_short() -> None:
    session = DummySession([
        DummyResp(200, json_data=[[0, "1"]]),
        DummyResp(200, json_data=[_k(0)]),
    ])
    client = KlinesClient(base_urls=["https://primary", "https://fallback"], session=session)
    assert await client.fetch_chunk("BTCUSDT", "1m", 0, MIN) == [_k(0)]


@pytest.mark.asyncio
async def test_fetch_all_advances_cursor_after_last_candle() -> None:
    client = ScriptedClient(
        [
            [_k(0), _k(MIN), _k(2 * MIN)],
            [_k(3 * MIN), _k(4 * MIN)],
        ],
        max_rows=3,
    )
    candles = await fetch_all_klines(client, "BTCUSDT", "1m", 0, 5 * MIN, request_delay_sec=0)

    assert client.calls == [(0, 3 * MIN), (3 * MIN, 5 * MIN)]
    assert [c.open_time for c in candles] == [0, MIN, 2 * MIN, 3 * MIN, 4 * MIN]
    assert candles[0] == Candle(open_time=0, high=2.0, low=1.0)


@pytest.mark.asyncio
async def test_fetch_all_jumps_past_empty_chunks() -> None:
    client = ScriptedClient([[], [], [_k(7 * MIN)]], max_rows=3)
    candles = await fetch_all_klines(client, "BTCUSDT", "1m", 0, 8 * MIN, request_delay_sec=0)

    assert client.calls == [(0, 3 * MIN), (3 * MIN, 6 * MIN), (6 * MIN, 8 * MIN)]
    assert [c.open_time for c in candles] == [7 * MIN]


@pytest.mark.asyncio
async def test_fetch_all_dedupes_overlap_and_sorts() -> None:
    client = ScriptedClient(
        [
            [_k(2 * MIN, high=9.0), _k(0), _k(MIN)],
            [_k(2 * MIN, high=1.0), _k(3 * MIN), _k(4 * MIN)],
        ],
        max_rows=3,
    )
    candles = await fetch_all_klines(client, "BTCUSDT", "1m", 0, 5 * MIN, request_delay_sec=0)

    times = [c.open_time for c in candles]
    assert times == sorted(set(times))
    # First occurrence wins on duplicate open time.
    assert next(c for c in candles if c.open_time == 2 * MIN).high == 9.0


@pytest.mark.asyncio
async def test_fetch_all_does_not_loop_on_stale_rows() -> None:
    client = ScriptedClient([[_k(0)], [_k(0)], []], max_rows=3)
    await fetch_all_klines(client, "BTCUSDT", "1m", 2 * MIN, 8 * MIN, request_delay_sec=0)
    assert client.calls == [(2 * MIN, 5 * MIN), (5 * MIN, 8 * MIN)]


@pytest.mark.asyncio
async def test_fetch_all_failure_returns_nothing() -> None:
    err = CandleFetchError("BTCUSDT", 3 * MIN, 5 * MIN, "HTTP 500")
    client = ScriptedClient([[_k(0), _k(MIN), _k(2 * MIN)], err], max_rows=3)
    with pytest.raises(CandleFetchError):
        await fetch_all_klines(client, "BTCUSDT", "1m", 0, 5 * MIN, request_delay_sec=0)


@pytest.mark.asyncio
async def test_fetch_all_sleeps_between_requests(monkeypatch) -> None:
    sleeps = []

    async def _fake_sleep(sec):
        sleeps.append(sec)

    monkeypatch.setattr(cf.asyncio, "sleep", _fake_sleep)
    client = ScriptedClient([[], []], max_rows=3)
    await fetch_all_klines(client, "BTCUSDT", "1m", 0, 6 * MIN, request_delay_sec=0.12)
    assert sleeps == [0.12, 0.12]


@pytest.mark.asyncio
async def test_fetch_all_reports_progress() -> None:
    seen = []
    client = ScriptedClient([[], []], max_rows=3)
    await fetch_all_klines(
        client,
        "BTCUSDT",
        "1m",
        0,
        6 * MIN,
        request_delay_sec=0,
        on_progress=lambda chunk, start, end: seen.append((chunk, start, end)),
    )
    assert seen == [(1, 0, 3 * MIN), (2, 3 * MIN, 6 * MIN)]

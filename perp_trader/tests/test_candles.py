import pytest

from perp_trader.models.trading_models import Candle
from perp_trader.providers.candles import aggregate_candles, parse_candle, parse_candles, source_interval
from perp_trader.services.market_data import MarketDataService, build_snapshot, tradable_symbols
from perp_trader.utils.time_utils import interval_to_seconds


def test_parse_candle():
    candle = parse_candle({"t": 60000, "o": "1", "h": "2", "l": "0.5", "c": "1.5", "v": "10", "s": "BTC", "i": "1m"})
    assert candle.close == 1.5
    assert candle.symbol == "BTC"
    assert parse_candle({"t": 1}) is None


def test_parse_candles_sorted_and_filtered():
    candles = parse_candles([
        {"t": 120000, "o": 1, "h": 1, "l": 1, "c": 2},
        {"bad": True},
        {"t": 60000, "o": 1, "h": 1, "l": 1, "c": 1},
    ])
    assert [c.t for c in candles] == [60000, 120000]


def test_aggregate_one_minute_to_two_minutes():
    candles = [Candle(t=i * 60000, open=i, high=i + 0.5, low=i - 0.5, close=i + 0.25, volume=1, symbol="BTC")
               for i in range(4)]
    out = aggregate_candles(candles, "2m")
    assert len(out) == 2
    assert out[0].t == 0
    assert out[0].open == 0
    assert out[0].close == 1.25
    assert out[0].high == 1.5
    assert out[0].low == -0.5
    assert out[0].volume == 2
    assert out[1].t == 120000


def test_source_interval():
    assert source_interval("1h") == "1h"
    assert source_interval("2m") == "1m"
    assert source_interval("6m") == "3m"
    assert source_interval("6h") == "2h"
    with pytest.raises(ValueError):
        source_interval("7x")


@pytest.mark.asyncio
async def test_two_minute_candles_built_from_one_minute(exchange_client, fake_exchange):
    fake_exchange.candle_series("BTC", [float(i) for i in range(8)], start=0, step=60000)
    service = MarketDataService(exchange_client, interval="2m", limit=3)

    candles = (await service.fetch_candles(["BTC"], False))["BTC"]

    assert [c.close for c in candles] == [3.0, 5.0, 7.0]
    assert [c.t for c in candles] == [120000, 240000, 360000]
    assert all(c.interval == "2m" for c in candles)
    [(_, body)] = fake_exchange.requests
    assert body["req"]["interval"] == "1m"


@pytest.mark.asyncio
async def test_served_interval_fetched_directly(exchange_client, fake_exchange):
    fake_exchange.candle_series("BTC", [1.0, 2.0, 3.0])
    service = MarketDataService(exchange_client, interval="1h", limit=2)

    candles = (await service.fetch_candles(["BTC"], False))["BTC"]

    assert [c.close for c in candles] == [2.0, 3.0]
    [(_, body)] = fake_exchange.requests
    assert body["req"]["interval"] == "1h"


def test_tradable_symbols_excludes_testnet_only():
    assert tradable_symbols(["BTC", "XRP"], testnet=True) == ["BTC"]
    assert tradable_symbols(["BTC", "XRP"], testnet=False) == ["BTC", "XRP"]


def test_snapshot_uses_mid_when_given():
    candles = [Candle(t=i, open=100, high=101, low=99, close=100 + i) for i in range(60)]
    snap = build_snapshot("BTC", candles, price=200.0)
    assert snap.current_price == 200.0
    assert snap.rsi == 100.0
    assert snap.candle_count == 60
    assert snap.trend == "above"
    assert snap.to_dict()["symbol"] == "BTC"


def test_snapshots_skip_symbols_without_data():
    snaps = MarketDataService.snapshots_from(["BTC", "ETH"], {"BTC": []}, {"BTC": 1.0})
    assert list(snaps) == ["BTC"]
    assert snaps["BTC"].rsi == -1.0


def test_interval_to_seconds():
    assert interval_to_seconds("15m") == 900
    assert interval_to_seconds("4h") == 14400
    with pytest.raises(ValueError):
        interval_to_seconds("3x")

import httpx
import pytest

from perp_trader.errors import ExchangeError, OrderRejected, PriceUnavailable, TransientFailure, UnknownAsset
from perp_trader.providers.exchange_rest import parse_account_state


@pytest.mark.asyncio
async def test_asset_info_uses_universe_index(exchange_client):
    info = await exchange_client.get_asset_info("ETH", False)
    assert info.asset_id == 1
    assert info.sz_decimals == 4
    assert info.max_leverage == 25


@pytest.mark.asyncio
async def test_metadata_cached_between_calls(exchange_client, fake_exchange):
    await exchange_client.get_asset_info("BTC", False)
    await exchange_client.get_asset_info("SOL", False)
    meta_calls = [b for path, b in fake_exchange.requests if b.get("type") == "metaAndAssetCtxs"]
    assert len(meta_calls) == 1


@pytest.mark.asyncio
async def test_unknown_asset(exchange_client):
    with pytest.raises(UnknownAsset):
        await exchange_client.get_asset_info("DOGE", False)


@pytest.mark.asyncio
async def test_market_price(exchange_client, fake_exchange):
    assert await exchange_client.get_market_price("BTC", False) == 60000.0
    with pytest.raises(PriceUnavailable):
        await exchange_client.get_market_price("DOGE", False)


@pytest.mark.asyncio
async def test_candles_request_window(exchange_client, fake_exchange):
    fake_exchange.candle_series("BTC", [1.0, 2.0, 3.0])
    candles = await exchange_client.get_candles("BTC", "1h", 2, False, end_ms=10 * 3600000)
    assert [c.close for c in candles] == [2.0, 3.0]
    _, body = fake_exchange.requests[-1]
    assert body["req"] == {"coin": "BTC", "interval": "1h", "startTime": 8 * 3600000, "endTime": 10 * 3600000}


@pytest.mark.asyncio
async def test_candles_reject_intervals_the_exchange_does_not_serve(exchange_client, fake_exchange):
    with pytest.raises(ValueError):
        await exchange_client.get_candles("BTC", "2m", 10, False)
    assert fake_exchange.requests == []


@pytest.mark.asyncio
async def test_user_positions_authoritative(exchange_client, fake_exchange):
    fake_exchange.set_position("ETH", -0.5, 3000.0, pnl=12.5)
    read = await exchange_client.get_user_positions("0xabc", False)
    [pos] = read.value
    assert pos.symbol == "ETH"
    assert pos.side == "SHORT"
    assert pos.size == 0.5
    assert pos.unrealized_pnl == 12.5


@pytest.mark.asyncio
async def test_user_positions_raise_on_failure(exchange_client, fake_exchange):
    fake_exchange.fail_info.add("clearinghouseState")
    with pytest.raises(ExchangeError):
        await exchange_client.get_user_positions("0xabc", False)


@pytest.mark.asyncio
async def test_open_orders_best_effort(exchange_client, fake_exchange):
    fake_exchange.fail_info.add("openOrders")
    read = await exchange_client.get_user_open_orders("0xabc", False)
    assert read.ok is False
    assert read.value == []
    assert read.error


@pytest.mark.asyncio
async def test_post_action_signs_once_across_retries(exchange_client, fake_exchange, creds, recording_sleep):
    fake_exchange.queue("order", httpx.Response(503))
    result = await exchange_client.post_action(creds, {"type": "order", "orders": [], "grouping": "na"}, False)
    assert result["status"] == "ok"
    exchange_posts = [b for path, b in fake_exchange.requests if path == "/exchange"]
    assert len(exchange_posts) == 2
    assert exchange_posts[0]["nonce"] == exchange_posts[1]["nonce"]
    assert recording_sleep.calls == [1.0]


@pytest.mark.asyncio
async def test_post_action_err_status_rejected(exchange_client, fake_exchange, creds):
    fake_exchange.queue("order", {"status": "err", "response": "Insufficient margin"})
    with pytest.raises(OrderRejected) as excinfo:
        await exchange_client.post_action(creds, {"type": "order", "orders": [], "grouping": "na"}, False)
    assert "Insufficient margin" in str(excinfo.value)


@pytest.mark.asyncio
async def test_retry_exhaustion_surfaces(exchange_client):
    def always_busy(request):
        return httpx.Response(429)

    exchange_client.http = httpx.AsyncClient(transport=httpx.MockTransport(always_busy))
    with pytest.raises(TransientFailure):
        await exchange_client.get_all_mids(False)
    await exchange_client.http.aclose()


@pytest.mark.asyncio
async def test_set_leverage_is_best_effort(exchange_client, fake_exchange, creds):
    fake_exchange.queue("updateLeverage", {"status": "err", "response": "nope"})
    assert await exchange_client.set_leverage(creds, "ETH", 40, False) is False
    assert await exchange_client.set_leverage(creds, "ETH", 40, False) is True
    assert fake_exchange.actions[-1]["leverage"] == 25


def test_account_value_falls_back_to_cross_margin_summary():
    state = parse_account_state({"crossMarginSummary": {"accountValue": "42.5"}, "withdrawable": "1"})
    assert state.account_value == 42.5
    state = parse_account_state({"withdrawable": "7"})
    assert state.account_value == 7.0


@pytest.mark.asyncio
async def test_frontend_open_orders(exchange_client, fake_exchange):
    fake_exchange.open_orders = [{"coin": "BTC", "oid": 1, "isTrigger": True}]
    read = await exchange_client.get_frontend_open_orders("0xabc", False)
    assert read.ok
    assert read.value[0]["oid"] == 1
    _, body = fake_exchange.requests[-1]
    assert body == {"type": "frontendOpenOrders", "user": "0xabc"}

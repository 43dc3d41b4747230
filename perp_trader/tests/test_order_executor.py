import pytest

from perp_trader.errors import OrderRejected, OrderUnconfirmed
from perp_trader.execution.order_executor import OrderExecutor, parse_order_status


@pytest.fixture
def executor(exchange_client, recording_sleep):
    return OrderExecutor(exchange_client, sleep=recording_sleep, slippage=0.03, settle_delay=0.5)


def test_parse_filled():
    response = {"status": "ok", "response": {"data": {"statuses": [{"filled": {"oid": 7, "totalSz": "0.5", "avgPx": "101.5"}}]}}}
    result = parse_order_status(response, "SOL", 101.0, 0.5)
    assert result.status == "FILLED"
    assert result.order_id == 7
    assert result.avg_price == 101.5
    assert result.tx_ref == "filled_7"


def test_parse_resting():
    response = {"response": {"data": {"statuses": [{"resting": {"oid": 9}}]}}}
    assert parse_order_status(response, "SOL", 1.0, 1.0).status == "RESTING"


def test_parse_error_is_rejected_verbatim():
    response = {"response": {"data": {"statuses": [{"error": "Order must have minimum value of $10."}]}}}
    with pytest.raises(OrderRejected) as excinfo:
        parse_order_status(response, "SOL", 1.0, 1.0)
    assert str(excinfo.value) == "Order must have minimum value of $10."


def test_parse_missing_status_is_unconfirmed():
    with pytest.raises(OrderUnconfirmed):
        parse_order_status({"status": "ok", "response": {"type": "order"}}, "SOL", 1.0, 1.0)


@pytest.mark.asyncio
async def test_place_order_formats_wire_order(executor, fake_exchange, creds):
    result = await executor.place_order(creds, "SOL", True, 1.23456, price=100.123456)
    assert result.status == "FILLED"
    [order] = fake_exchange.orders_sent()
    assert order["a"] == 2
    assert order["b"] is True
    assert order["p"] == "100.12"
    assert order["s"] == "1.23"
    assert order["r"] is False
    assert order["t"] == {"limit": {"tif": "Gtc"}}
    assert fake_exchange.actions[-1]["grouping"] == "na"


@pytest.mark.asyncio
async def test_place_order_sets_leverage_first(executor, fake_exchange, creds):
    await executor.place_order(creds, "ETH", False, 0.1, price=3000.0, leverage=5)
    assert fake_exchange.action_types() == ["updateLeverage", "order"]


@pytest.mark.asyncio
async def test_size_rounding_to_zero_is_rejected(executor, fake_exchange, creds):
    with pytest.raises(OrderRejected):
        await executor.place_order(creds, "SOL", True, 0.001, price=100.0)
    assert fake_exchange.actions == []


@pytest.mark.asyncio
async def test_stop_loss_for_long_sells(executor, fake_exchange, creds):
    result = await executor.place_stop_loss(creds, "SOL", 2.0, 95.0, is_long_position=True)
    assert result.status == "RESTING"
    [order] = fake_exchange.orders_sent()
    assert order["b"] is False
    assert order["r"] is True
    assert order["t"] == {"trigger": {"isMarket": True, "tpsl": "sl", "triggerPx": "95"}}
    assert fake_exchange.actions[-1]["grouping"] == "positionTpsl"


@pytest.mark.asyncio
async def test_take_profit_for_short_buys(executor, fake_exchange, creds):
    await executor.place_take_profit(creds, "SOL", 2.0, 90.0, is_long_position=False)
    [order] = fake_exchange.orders_sent()
    assert order["b"] is True
    assert order["t"]["trigger"]["tpsl"] == "tp"


@pytest.mark.asyncio
async def test_close_long_sells_through_the_mid(executor, fake_exchange, creds):
    await executor.close_position(creds, "SOL", 1.0, 100.0, is_buy=False)
    [order] = fake_exchange.orders_sent()
    assert order["p"] == "97"
    assert order["r"] is True


@pytest.mark.asyncio
async def test_close_short_buys_through_the_mid(executor, fake_exchange, creds):
    await executor.close_position(creds, "SOL", 1.0, 100.0, is_buy=True)
    [order] = fake_exchange.orders_sent()
    assert order["p"] == "103"
    assert order["b"] is True


@pytest.mark.asyncio
async def test_cancel_only_targets_symbol(executor, fake_exchange, creds):
    fake_exchange.open_orders = [
        {"coin": "SOL", "oid": 11},
        {"coin": "BTC", "oid": 12},
        {"coin": "SOL", "oid": 13},
    ]
    cancelled = await executor.cancel_all_orders_for_symbol(creds, "SOL")
    assert cancelled == 2
    [action] = fake_exchange.actions
    assert action == {"type": "cancel", "cancels": [{"a": 2, "o": 11}, {"a": 2, "o": 13}]}


@pytest.mark.asyncio
async def test_cancel_single_order(executor, fake_exchange, creds):
    assert await executor.cancel_order(creds, "SOL", 555) is True
    assert fake_exchange.actions == [{"type": "cancel", "cancels": [{"a": 2, "o": 555}]}]


@pytest.mark.asyncio
async def test_cancel_single_order_unconfirmed(executor, fake_exchange, creds):
    fake_exchange.queue("cancel", {"status": "ok", "response": {"type": "cancel", "data": {
        "statuses": [{"error": "Order was never placed, already canceled, or filled."}]}}})
    assert await executor.cancel_order(creds, "SOL", 555) is False


@pytest.mark.asyncio
async def test_nuclear_close_cancels_settles_and_closes(executor, fake_exchange, creds, recording_sleep):
    fake_exchange.open_orders = [{"coin": "SOL", "oid": 21}, {"coin": "SOL", "oid": 22}]
    fake_exchange.set_position("SOL", -3.0, 100.0)
    result = await executor.nuclear_close_position(creds, "SOL")
    assert result.outcome == "closed"
    assert result.cancelled_count == 2
    assert result.tx_ref == result.close_result.tx_ref
    assert result.tx_ref.startswith("filled_")
    assert fake_exchange.action_types() == ["cancel", "order"]
    assert recording_sleep.calls == [0.5]
    [order] = fake_exchange.orders_sent()
    assert order["b"] is True
    assert order["s"] == "3"
    assert order["p"] == "103"


@pytest.mark.asyncio
async def test_nuclear_close_without_position(executor, fake_exchange, creds):
    result = await executor.nuclear_close_position(creds, "SOL")
    assert result.outcome == "no_position"
    assert result.tx_ref is None
    assert fake_exchange.action_types() == []


@pytest.mark.asyncio
async def test_nuclear_close_zero_size(executor, fake_exchange, creds):
    fake_exchange.set_position("SOL", 0.0, 100.0)
    result = await executor.nuclear_close_position(creds, "SOL")
    assert result.outcome == "zero_size"

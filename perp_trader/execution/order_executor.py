import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from perp_trader.config import settings
from perp_trader.errors import OrderRejected, OrderUnconfirmed
from perp_trader.execution.formatting import round_price, round_size, slippage_price, to_wire
from perp_trader.models.trading_models import NuclearCloseResult, OrderResult, UserCredentials
from perp_trader.providers.exchange_rest import ExchangeClient
from perp_trader.services.metrics import order_latency, orders_counter
from perp_trader.utils.orders_enum import Grouping, OrderStatus, TimeInForce, TriggerKind

logger = logging.getLogger("executor")


def parse_order_status(response: Dict[str, Any], symbol: str, price: float, size: float) -> OrderResult:
    """Classify the first status entry of an order response.

    ``error`` raises ``OrderRejected`` with the exchange text verbatim. A
    response without any status raises ``OrderUnconfirmed``.
    """
    try:
        statuses = response["response"]["data"]["statuses"]
    except (KeyError, TypeError):
        statuses = None
    if not statuses:
        raise OrderUnconfirmed(f"No order status returned for {symbol}: {response}", symbol=symbol)

    status = statuses[0]
    if isinstance(status, dict):
        if "error" in status:
            raise OrderRejected(status["error"], symbol=symbol)
        if "filled" in status:
            filled = status["filled"]
            avg = filled.get("avgPx")
            return OrderResult(
                status=OrderStatus.FILLED.value,
                order_id=filled.get("oid"),
                symbol=symbol,
                price=price,
                size=float(filled.get("totalSz", size)),
                avg_price=float(avg) if avg is not None else None,
            )
        if "resting" in status:
            return OrderResult(status=OrderStatus.RESTING.value, order_id=status["resting"].get("oid"),
                               symbol=symbol, price=price, size=size)
    elif isinstance(status, str):
        # trigger orders may answer "waitingForTrigger" / "waitingForFill"
        return OrderResult(status=OrderStatus.RESTING.value, order_id=None, symbol=symbol, price=price, size=size)
    raise OrderUnconfirmed(f"Unrecognised order status for {symbol}: {status}", symbol=symbol)


class OrderExecutor:
    """Turns trading decisions into exchange orders."""

    def __init__(self, client: ExchangeClient, sleep=asyncio.sleep, slippage: float = None, settle_delay: float = None):
        self.client = client
        self.sleep = sleep
        self.slippage = settings.CLOSE_SLIPPAGE if slippage is None else slippage
        self.settle_delay = settings.NUCLEAR_SETTLE_DELAY_SEC if settle_delay is None else settle_delay

    async def _submit(self, account: UserCredentials, orders: List[Dict[str, Any]], grouping: Grouping,
                      testnet: bool, kind: str, symbol: str, price: float, size: float) -> OrderResult:
        action = {"type": "order", "orders": orders, "grouping": grouping.value}
        started = time.monotonic()
        try:
            response = await self.client.post_action(account, action, testnet)
            result = parse_order_status(response, symbol, price, size)
        except OrderRejected as e:
            orders_counter.labels(kind=kind, result="rejected").inc()
            logger.error(f"{kind} order rejected for {symbol}: {e}")
            raise
        finally:
            order_latency.observe(time.monotonic() - started)
        orders_counter.labels(kind=kind, result=result.status.lower()).inc()
        return result

    async def place_order(self, account: UserCredentials, symbol: str, is_buy: bool, size: float,
                          price: Optional[float] = None, testnet: bool = False, reduce_only: bool = False,
                          tif: TimeInForce = TimeInForce.GTC, leverage: Optional[int] = None) -> OrderResult:
        info = await self.client.get_asset_info(symbol, testnet)
        if leverage:
            await self.client.set_leverage(account, symbol, leverage, testnet)
        if price is None:
            price = await self.client.get_market_price(symbol, testnet)

        px = round_price(price, info.sz_decimals)
        sz = round_size(size, info.sz_decimals)
        if sz <= 0:
            raise OrderRejected(f"Order size {size} rounds to zero at {info.sz_decimals} decimals", symbol=symbol)

        order = {
            "a": info.asset_id,
            "b": is_buy,
            "p": to_wire(px),
            "s": to_wire(sz),
            "r": reduce_only,
            "t": {"limit": {"tif": tif.value}},
        }
        logger.debug(f"Placing order: {order}")
        kind = "close" if reduce_only else "entry"
        result = await self._submit(account, [order], Grouping.NA, testnet, kind, symbol, px, sz)
        logger.info("Order %s symbol=%s side=%s size=%s px=%s oid=%s", result.status, symbol,
                    "BUY" if is_buy else "SELL", sz, px, result.order_id)
        return result

    async def _place_trigger(self, account: UserCredentials, symbol: str, size: float, trigger_price: float,
                             is_long_position: bool, testnet: bool, kind: TriggerKind) -> OrderResult:
        info = await self.client.get_asset_info(symbol, testnet)
        px = round_price(trigger_price, info.sz_decimals)
        sz = round_size(size, info.sz_decimals)
        if sz <= 0:
            raise OrderRejected(f"Trigger size {size} rounds to zero", symbol=symbol)
        order = {
            "a": info.asset_id,
            "b": not is_long_position,
            "p": to_wire(px),
            "s": to_wire(sz),
            "r": True,
            "t": {"trigger": {"isMarket": True, "tpsl": kind.value, "triggerPx": to_wire(px)}},
        }
        label = "stop_loss" if kind is TriggerKind.STOP_LOSS else "take_profit"
        result = await self._submit(account, [order], Grouping.POSITION_TPSL, testnet, label, symbol, px, sz)
        logger.info(f"{label} placed for {symbol} at {px} (oid={result.order_id})")
        return result

    async def place_stop_loss(self, account: UserCredentials, symbol: str, size: float, trigger_price: float,
                              is_long_position: bool, testnet: bool = False) -> OrderResult:
        return await self._place_trigger(account, symbol, size, trigger_price, is_long_position, testnet,
                                         TriggerKind.STOP_LOSS)

    async def place_take_profit(self, account: UserCredentials, symbol: str, size: float, trigger_price: float,
                                is_long_position: bool, testnet: bool = False) -> OrderResult:
        return await self._place_trigger(account, symbol, size, trigger_price, is_long_position, testnet,
                                         TriggerKind.TAKE_PROFIT)

    async def close_position(self, account: UserCredentials, symbol: str, size: float, price: float,
                             is_buy: bool, testnet: bool = False) -> OrderResult:
        """Reduce-only close priced ``slippage`` through the mid, resting GTC until filled."""
        limit_price = slippage_price(price, is_buy, self.slippage)
        logger.info(f"Closing {symbol}: {'BUY' if is_buy else 'SELL'} {size} @ {limit_price} (mid {price})")
        return await self.place_order(account, symbol, is_buy, size, price=limit_price, testnet=testnet,
                                      reduce_only=True, tif=TimeInForce.GTC)

    async def _cancel(self, account: UserCredentials, symbol: str, oids: List[int], testnet: bool) -> int:
        """Cancel ``oids`` on ``symbol`` in one signed action; returns how many the exchange confirmed."""
        info = await self.client.get_asset_info(symbol, testnet)
        action = {"type": "cancel", "cancels": [{"a": info.asset_id, "o": oid} for oid in oids]}
        response = await self.client.post_action(account, action, testnet)
        try:
            statuses = response["response"]["data"]["statuses"]
        except (KeyError, TypeError):
            statuses = []

        cancelled = 0
        for oid, status in zip(oids, statuses):
            if status == "success":
                cancelled += 1
            else:
                logger.warning(f"Cancel of order {oid} on {symbol} failed: {status}")
        orders_counter.labels(kind="cancel", result="success").inc(cancelled)
        return cancelled

    async def cancel_order(self, account: UserCredentials, symbol: str, order_id: int, testnet: bool = False) -> bool:
        cancelled = await self._cancel(account, symbol, [int(order_id)], testnet) == 1
        logger.info(f"Cancel of order {order_id} on {symbol}: {'done' if cancelled else 'not confirmed'}")
        return cancelled

    async def cancel_all_orders_for_symbol(self, account: UserCredentials, symbol: str, testnet: bool = False) -> int:
        orders = await self.client.fetch_open_orders(account.wallet_address, testnet)
        targets = [int(o["oid"]) for o in orders if o.get("coin") == symbol]
        if not targets:
            logger.info(f"No open orders to cancel for {symbol}")
            return 0
        cancelled = await self._cancel(account, symbol, targets, testnet)
        logger.info(f"Cancelled {cancelled}/{len(targets)} open orders for {symbol}")
        return cancelled

    async def nuclear_close_position(self, account: UserCredentials, symbol: str, testnet: bool = False) -> NuclearCloseResult:
        """Cancel every order on the symbol, let it settle, then close whatever remains."""
        cancelled = await self.cancel_all_orders_for_symbol(account, symbol, testnet)
        await self.sleep(self.settle_delay)

        positions = (await self.client.get_user_positions(account.wallet_address, testnet)).value
        position = next((p for p in positions if p.symbol == symbol), None)
        if position is None:
            logger.info(f"Nuclear close: no {symbol} position after cancelling {cancelled} orders")
            return NuclearCloseResult(symbol=symbol, outcome="no_position", cancelled_count=cancelled)
        if position.szi == 0:
            logger.info(f"Nuclear close: {symbol} position has zero size")
            return NuclearCloseResult(symbol=symbol, outcome="zero_size", cancelled_count=cancelled)

        price = await self.client.get_market_price(symbol, testnet)
        # shorts are closed by buying
        is_buy = position.szi < 0
        result = await self.close_position(account, symbol, position.size, price, is_buy, testnet)
        logger.warning(f"Nuclear close of {symbol} done: cancelled={cancelled} tx={result.tx_ref}")
        return NuclearCloseResult(symbol=symbol, outcome="closed", cancelled_count=cancelled, close_result=result)

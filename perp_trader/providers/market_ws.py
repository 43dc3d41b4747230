import asyncio
import json
import logging
import random
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from perp_trader.config import settings
from perp_trader.models.trading_models import Candle
from perp_trader.providers.candles import parse_candle

logger = logging.getLogger("market_ws")


def reconnect_delay(attempt: int, base: float = 1.0, max_delay: float = None, jitter: bool = True) -> float:
    """Exponential reconnect delay with a cap and up to 10% jitter."""
    max_delay = settings.MARKET_STREAM_MAX_BACKOFF_SEC if max_delay is None else max_delay
    delay = min(max_delay, base * (2 ** attempt))
    if jitter:
        delay += random.uniform(0, delay * 0.1)
    return delay


class CandleStream:
    """Candle feed over the exchange WebSocket.

    Keeps the latest candle per symbol and reconnects with backoff whenever the
    socket drops. ``on_candle`` is called for every parsed push.
    """

    def __init__(self, symbols: List[str], testnet: bool = False, interval: str = None,
                 url: str = None, on_candle: Optional[Callable[[Candle], Any]] = None, sleep=asyncio.sleep):
        self.symbols = list(symbols)
        self.testnet = testnet
        self.interval = interval or settings.MARKET_STREAM_INTERVAL
        self.url = url or (settings.EXCHANGE_TESTNET_WS_URL if testnet else settings.EXCHANGE_MAINNET_WS_URL)
        self.on_candle = on_candle
        self.sleep = sleep
        self.latest: Dict[str, Candle] = {}
        self.messages_received = 0
        self.reconnects = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._session: Optional[aiohttp.ClientSession] = None

    def subscription_messages(self) -> List[Dict[str, Any]]:
        return [
            {"method": "subscribe", "subscription": {"type": "candle", "coin": symbol, "interval": self.interval}}
            for symbol in self.symbols
        ]

    async def start(self):
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Candle stream started for {self.symbols} ({self.interval})")

    async def stop(self):
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._session and not self._session.closed:
            await self._session.close()
        logger.info("Candle stream stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "symbols": self.symbols,
            "interval": self.interval,
            "testnet": self.testnet,
            "messages_received": self.messages_received,
            "reconnects": self.reconnects,
        }

    def handle_message(self, message: Dict[str, Any]) -> List[Candle]:
        """Apply a decoded push. Returns the candles it carried."""
        if message.get("channel") != "candle":
            return []
        data = message.get("data")
        raw_items = data if isinstance(data, list) else [data]
        candles = []
        for raw in raw_items:
            if not isinstance(raw, dict):
                continue
            candle = parse_candle(raw)
            if candle is None or not candle.symbol:
                continue
            current = self.latest.get(candle.symbol)
            if current is None or candle.t >= current.t:
                self.latest[candle.symbol] = candle
            candles.append(candle)
            if self.on_candle:
                try:
                    self.on_candle(candle)
                except Exception:
                    logger.exception("on_candle callback failed")
        self.messages_received += 1
        return candles

    async def _run(self):
        attempt = 0
        self._session = aiohttp.ClientSession()
        while self._running:
            try:
                async with self._session.ws_connect(self.url, heartbeat=30) as ws:
                    for msg in self.subscription_messages():
                        await ws.send_json(msg)
                    logger.info(f"Candle stream connected to {self.url}")
                    attempt = 0
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            try:
                                self.handle_message(json.loads(msg.data))
                            except ValueError:
                                logger.debug(f"Ignoring non-JSON frame: {msg.data[:100]}")
                        elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                            break
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Candle stream error: {e}")
            if not self._running:
                break
            self.reconnects += 1
            delay = reconnect_delay(attempt)
            attempt += 1
            logger.info(f"Candle stream reconnecting in {delay:.1f}s")
            await self.sleep(delay)

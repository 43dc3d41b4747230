import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

from perp_trader.config import settings
from perp_trader.engine import indicators
from perp_trader.models.trading_models import Candle
from perp_trader.providers.candles import aggregate_candles, closes, source_interval
from perp_trader.providers.exchange_rest import ExchangeClient
from perp_trader.utils.time_utils import interval_to_seconds

logger = logging.getLogger("market_data")


@dataclass
class SymbolSnapshot:
    symbol: str
    current_price: float
    rsi: float
    macd: float
    macd_signal: float
    macd_histogram: float
    ema20: float
    ema50: float
    atr: float
    change_4: float
    change_24: float
    volatility: float
    average_volume: float
    candle_count: int
    trend: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


def build_snapshot(symbol: str, candles: List[Candle], price: Optional[float] = None) -> SymbolSnapshot:
    prices = closes(candles)
    current = price if price is not None else (prices[-1] if prices else 0.0)
    macd_result = indicators.macd(prices)
    ema50 = indicators.ema(prices, 50)
    return SymbolSnapshot(
        symbol=symbol,
        current_price=current,
        rsi=indicators.rsi(prices, 14),
        macd=macd_result.macd,
        macd_signal=macd_result.signal,
        macd_histogram=macd_result.histogram,
        ema20=indicators.ema(prices, 20),
        ema50=ema50,
        atr=indicators.atr(candles, 14),
        change_4=indicators.percent_change(prices, 4),
        change_24=indicators.percent_change(prices, 24),
        volatility=indicators.volatility(prices),
        average_volume=indicators.average_volume([c.volume for c in candles]),
        candle_count=len(candles),
        trend=indicators.trend_label(current, ema50),
    )


def tradable_symbols(symbols: List[str], testnet: bool) -> List[str]:
    if not testnet:
        return list(symbols)
    excluded = {s.strip() for s in settings.TESTNET_EXCLUDED_SYMBOLS.split(",") if s.strip()}
    return [s for s in symbols if s not in excluded]


class MarketDataService:
    """Fetches candles for each symbol and derives the indicator snapshot.

    Intervals the exchange does not serve (2m) are resampled from a finer
    served interval.
    """

    def __init__(self, client: ExchangeClient, interval: str = None, limit: int = None):
        self.client = client
        self.interval = interval or settings.CANDLE_INTERVAL
        self.limit = limit or settings.CANDLE_LIMIT
        self.source_interval = source_interval(self.interval)

    async def _fetch(self, symbol: str, testnet: bool) -> List[Candle]:
        if self.source_interval == self.interval:
            return await self.client.get_candles(symbol, self.interval, self.limit, testnet)
        factor = interval_to_seconds(self.interval) // interval_to_seconds(self.source_interval)
        # one extra bucket so a partial leading bucket can be dropped
        raw = await self.client.get_candles(symbol, self.source_interval, (self.limit + 1) * factor, testnet)
        return aggregate_candles(raw, self.interval)[-self.limit:]

    async def fetch_candles(self, symbols: List[str], testnet: bool) -> Dict[str, List[Candle]]:
        results = await asyncio.gather(*[self._fetch(symbol, testnet) for symbol in symbols])
        return dict(zip(symbols, results))

    async def get_snapshots(self, symbols: List[str], testnet: bool) -> Dict[str, SymbolSnapshot]:
        mids, candles_by_symbol = await asyncio.gather(
            self.client.get_all_mids(testnet),
            self.fetch_candles(symbols, testnet),
        )
        return self.snapshots_from(symbols, candles_by_symbol, mids)

    @staticmethod
    def snapshots_from(symbols: List[str], candles_by_symbol: Dict[str, List[Candle]],
                       mids: Dict[str, float]) -> Dict[str, SymbolSnapshot]:
        snapshots = {}
        for symbol in symbols:
            candles = candles_by_symbol.get(symbol) or []
            if not candles and symbol not in mids:
                logger.warning(f"No market data for {symbol}; skipping")
                continue
            snapshots[symbol] = build_snapshot(symbol, candles, mids.get(symbol))
        return snapshots

"""Candle parsing and resampling helpers."""
import logging
from typing import Any, Dict, List, Optional

import pandas as pd

from perp_trader.models.trading_models import Candle
from perp_trader.utils.time_utils import interval_to_seconds

logger = logging.getLogger("candles")

# Intervals the candleSnapshot endpoint serves directly
EXCHANGE_INTERVALS = ("1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "8h", "12h", "1d", "3d", "1w", "1M")


def source_interval(interval: str) -> str:
    """The exchange interval to fetch so ``interval`` can be built from it.

    A served interval is its own source; anything else is resampled from the
    coarsest served interval that divides it evenly.
    """
    if interval in EXCHANGE_INTERVALS:
        return interval
    target = interval_to_seconds(interval)
    for candidate in reversed(EXCHANGE_INTERVALS):
        if candidate == "1M":
            continue
        step = interval_to_seconds(candidate)
        if step < target and target % step == 0:
            return candidate
    raise ValueError(f"Cannot build {interval} candles from exchange intervals")


def parse_candle(raw: Dict[str, Any]) -> Optional[Candle]:
    """Parse an exchange candle ``{t, o, h, l, c, v, s, i}``; None if malformed."""
    try:
        return Candle(
            t=int(raw["t"]),
            open=float(raw["o"]),
            high=float(raw["h"]),
            low=float(raw["l"]),
            close=float(raw["c"]),
            volume=float(raw.get("v", 0) or 0),
            symbol=raw.get("s"),
            interval=raw.get("i"),
        )
    except (KeyError, TypeError, ValueError):
        logger.debug(f"Skipping malformed candle: {raw}")
        return None


def parse_candles(raw_list: List[Dict[str, Any]]) -> List[Candle]:
    parsed = [c for c in (parse_candle(r) for r in raw_list or []) if c is not None]
    parsed.sort(key=lambda c: c.t)
    return parsed


def closes(candles: List[Candle]) -> List[float]:
    return [c.close for c in candles]


def aggregate_candles(candles: List[Candle], target_interval: str) -> List[Candle]:
    """Resample candles to a coarser interval (e.g. 1m -> 2m).

    Buckets are aligned to the epoch. The trailing bucket is kept even when
    incomplete.
    """
    if not candles:
        return []
    df = pd.DataFrame([{
        "t": c.t, "open": c.open, "high": c.high, "low": c.low, "close": c.close, "volume": c.volume,
    } for c in candles])
    df["ts"] = pd.to_datetime(df["t"], unit="ms", utc=True)
    df = df.set_index("ts").sort_index()

    rule = f"{interval_to_seconds(target_interval)}s"
    resampled = df.resample(rule, label="left", closed="left").agg({
        "t": "first",
        "open": "first",
        "high": "max",
        "low": "min",
        "close": "last",
        "volume": "sum",
    }).dropna(subset=["open"])

    symbol = candles[0].symbol
    out = []
    for ts, row in resampled.iterrows():
        out.append(Candle(
            t=int(ts.timestamp() * 1000),
            open=float(row["open"]),
            high=float(row["high"]),
            low=float(row["low"]),
            close=float(row["close"]),
            volume=float(row["volume"]),
            symbol=symbol,
            interval=target_interval,
        ))
    return out

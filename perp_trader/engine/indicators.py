"""Technical indicator calculations.

Pure functions over chronological (oldest -> newest) price lists. Insufficient
data never raises; each function returns a documented sentinel instead:

- ema / rsi: -1
- macd: MACDResult(-1, -1, -1)
- atr / percent_change / volatility: 0
"""
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

INSUFFICIENT = -1.0


@dataclass(frozen=True)
class MACDResult:
    macd: float
    signal: float
    histogram: float

    @property
    def is_sentinel(self) -> bool:
        return self.macd == INSUFFICIENT and self.signal == INSUFFICIENT and self.histogram == INSUFFICIENT


MACD_INSUFFICIENT = MACDResult(INSUFFICIENT, INSUFFICIENT, INSUFFICIENT)


def _ema_step(price: float, prev_ema: float, period: int) -> float:
    multiplier = 2.0 / (period + 1)
    return (price - prev_ema) * multiplier + prev_ema


def ema_series(prices: Sequence[float], period: int) -> List[float]:
    """EMA value for every index from ``period - 1`` onwards.

    Seeded with the simple average of the first ``period`` prices. Returns an
    empty list when there is not enough data.
    """
    if period <= 0 or len(prices) < period:
        return []
    value = sum(prices[:period]) / period
    series = [value]
    for price in prices[period:]:
        value = _ema_step(price, value, period)
        series.append(value)
    return series


def ema(prices: Sequence[float], period: int) -> float:
    series = ema_series(prices, period)
    return series[-1] if series else INSUFFICIENT


def rsi(prices: Sequence[float], period: int = 14) -> float:
    """Wilder RSI. 100 when there were no losses, -1 below ``period + 1`` prices."""
    if period <= 0 or len(prices) < period + 1:
        return INSUFFICIENT
    gains = 0.0
    losses = 0.0
    for i in range(1, period + 1):
        change = prices[i] - prices[i - 1]
        if change > 0:
            gains += change
        else:
            losses -= change
    avg_gain = gains / period
    avg_loss = losses / period

    for i in range(period + 1, len(prices)):
        change = prices[i] - prices[i - 1]
        gain = change if change > 0 else 0.0
        loss = -change if change < 0 else 0.0
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1 + rs))


def macd(prices: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9) -> MACDResult:
    """MACD over the full EMA series.

    The fast and slow series start at different indices; both are aligned on
    the price index before subtracting, so each MACD point compares EMAs of
    the same bar.
    """
    if len(prices) < slow + signal:
        return MACD_INSUFFICIENT
    fast_series = ema_series(prices, fast)
    slow_series = ema_series(prices, slow)
    offset = len(fast_series) - len(slow_series)
    macd_line = [f - s for f, s in zip(fast_series[offset:], slow_series)]
    signal_series = ema_series(macd_line, signal)
    if not signal_series:
        return MACD_INSUFFICIENT
    macd_value = macd_line[-1]
    signal_value = signal_series[-1]
    return MACDResult(macd=macd_value, signal=signal_value, histogram=macd_value - signal_value)


def true_ranges(candles: Sequence) -> List[float]:
    """True range for every bar after the first. Candles expose high/low/close."""
    ranges = []
    for prev, bar in zip(candles, candles[1:]):
        ranges.append(max(
            bar.high - bar.low,
            abs(bar.high - prev.close),
            abs(bar.low - prev.close),
        ))
    return ranges


def atr(candles: Sequence, period: int = 14) -> float:
    if period <= 0 or len(candles) < period + 1:
        return 0.0
    ranges = true_ranges(candles)
    value = sum(ranges[:period]) / period
    for tr in ranges[period:]:
        value = (value * (period - 1) + tr) / period
    return value


def percent_change(prices: Sequence[float], lookback: int) -> float:
    if lookback <= 0 or len(prices) < lookback + 1:
        return 0.0
    base = prices[len(prices) - 1 - lookback]
    if base == 0:
        return 0.0
    return (prices[-1] - base) / base * 100.0


def average_volume(volumes: Sequence[float], period: int = 20) -> float:
    if not volumes:
        return 0.0
    window = volumes[-period:]
    return sum(window) / len(window)


def volatility(prices: Sequence[float], period: int = 20) -> float:
    """Population standard deviation of the last ``period`` returns, in percent."""
    if len(prices) < period + 1:
        return 0.0
    window = prices[-(period + 1):]
    returns = []
    for prev, cur in zip(window, window[1:]):
        if prev == 0:
            return 0.0
        returns.append((cur - prev) / prev)
    mean = sum(returns) / len(returns)
    variance = sum((r - mean) ** 2 for r in returns) / len(returns)
    return math.sqrt(variance) * 100.0


def trend_label(price: float, ema_value: float) -> Optional[str]:
    if ema_value == INSUFFICIENT:
        return None
    return "above" if price > ema_value else "below"


TREND_THRESHOLD_PCT = 0.5


@dataclass(frozen=True)
class TrendAssessment:
    direction: str  # BULLISH / BEARISH / NEUTRAL
    strength: int  # 1..10
    price_vs_ema20_pct: float
    ema20_vs_ema50_pct: float


def _pct_diff(value: float, reference: float) -> float:
    if reference == 0:
        return 0.0
    return (value - reference) / reference * 100.0


def trend_direction(price_vs_ema20_pct: float, ema20_vs_ema50_pct: float,
                    threshold: float = TREND_THRESHOLD_PCT) -> str:
    """Both spreads must agree and exceed ``threshold`` percent."""
    if price_vs_ema20_pct > threshold and ema20_vs_ema50_pct > threshold:
        return "BULLISH"
    if price_vs_ema20_pct < -threshold and ema20_vs_ema50_pct < -threshold:
        return "BEARISH"
    return "NEUTRAL"


def trend_strength(price_vs_ema20_pct: float, ema20_vs_ema50_pct: float, rsi_value: float) -> int:
    """Score 1..10 from EMA separation (0-4), RSI confirmation (0-3) and spread agreement (0-3)."""
    a, b = price_vs_ema20_pct, ema20_vs_ema50_pct
    score = 0

    separation = abs(a) + abs(b)
    for bound, points in ((3.0, 4), (2.0, 3), (1.0, 2), (0.5, 1)):
        if separation >= bound:
            score += points
            break

    bullish = a > 0 and b > 0
    bearish = a < 0 and b < 0
    if rsi_value != INSUFFICIENT:
        if bullish and rsi_value > 50:
            score += 3 if rsi_value >= 65 else 2 if rsi_value >= 55 else 1
        elif bearish and rsi_value < 50:
            score += 3 if rsi_value <= 35 else 2 if rsi_value <= 45 else 1

    if bullish or bearish:
        ratio = min(abs(a), abs(b)) / (max(abs(a), abs(b)) or 1)
        score += 3 if ratio >= 0.7 else 2 if ratio >= 0.4 else 1

    return max(1, min(10, score))


def analyze_trend(price: float, ema20: float, ema50: float, rsi_value: float) -> Optional[TrendAssessment]:
    """None when either EMA is still the insufficient-data sentinel."""
    if price <= 0 or ema20 == INSUFFICIENT or ema50 == INSUFFICIENT:
        return None
    a = _pct_diff(price, ema20)
    b = _pct_diff(ema20, ema50)
    return TrendAssessment(
        direction=trend_direction(a, b),
        strength=trend_strength(a, b, rsi_value),
        price_vs_ema20_pct=round(a, 2),
        ema20_vs_ema50_pct=round(b, 2),
    )

import time
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as naive UTC, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def now_ms() -> int:
    return int(time.time() * 1000)


def start_of_utc_day(dt: datetime = None) -> datetime:
    dt = dt or utc_now()
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


_INTERVAL_UNITS = {"m": 60, "h": 3600, "d": 86400, "w": 604800}


def interval_to_seconds(interval: str) -> int:
    """Translate an exchange candle interval (1m, 15m, 1h, 1d...) to seconds."""
    try:
        return int(interval[:-1]) * _INTERVAL_UNITS[interval[-1]]
    except (KeyError, ValueError):
        raise ValueError(f"Unsupported candle interval: {interval}")


def lookback_window_ms(interval: str, limit: int, end_ms: int = None):
    end_ms = end_ms if end_ms is not None else now_ms()
    start_ms = end_ms - interval_to_seconds(interval) * 1000 * limit
    return start_ms, end_ms

"""Price and size rounding to the exchange's tick rules.

Prices keep at most 5 significant figures and at most ``6 - szDecimals``
decimal places; integer prices are always accepted. Sizes are truncated to
``szDecimals`` so rounding never grows an order.
"""
from decimal import ROUND_DOWN, Decimal

MAX_PRICE_DECIMALS = 6
MAX_SIG_FIGS = 5


def round_price(price: float, sz_decimals: int) -> float:
    if price <= 0:
        raise ValueError(f"price must be positive, got {price}")
    if price >= 100000:
        return float(round(price))
    significant = float(f"{price:.{MAX_SIG_FIGS}g}")
    return round(significant, max(0, MAX_PRICE_DECIMALS - sz_decimals))


def round_size(size: float, sz_decimals: int) -> float:
    quantum = Decimal(1).scaleb(-sz_decimals)
    return float(Decimal(str(size)).quantize(quantum, rounding=ROUND_DOWN))


def to_wire(value: float) -> str:
    """Decimal string without exponent or trailing zeros ("103", "0.015")."""
    normalized = Decimal(str(round(value, 8))).normalize()
    text = f"{normalized:f}"
    return "0" if text in ("-0", "0") else text


def slippage_price(mid: float, is_buy: bool, slippage: float) -> float:
    """Mid moved against us so a marketable limit order crosses the book."""
    return mid * (1 + slippage) if is_buy else mid * (1 - slippage)

from typing import Any, Dict, List

from perp_trader.models.trading_models import ExchangePosition, Position


def active_symbols(exchange_positions: List[ExchangePosition]) -> List[str]:
    """Symbols the exchange reports with a non-zero size."""
    return [p.symbol for p in exchange_positions if p.szi != 0]


def pnl_pct(unrealized_pnl: float, position_value: float) -> float:
    value = abs(position_value)
    return unrealized_pnl / value * 100.0 if value > 0 else 0.0


def convert_exchange_positions(exchange_positions: List[ExchangePosition], local_positions: List[Position],
                               prices: Dict[str, float]) -> List[Dict[str, Any]]:
    """Exchange positions enriched with local stop/target data, for the decision context.

    The exchange is the source of truth for what is open; local rows only add
    what the exchange does not know about.
    """
    local_by_symbol = {p.symbol: p for p in local_positions}
    converted = []
    for pos in exchange_positions:
        if pos.szi == 0:
            continue
        local = local_by_symbol.get(pos.symbol)
        converted.append({
            "symbol": pos.symbol,
            "side": pos.side,
            "size": pos.size,
            "size_usd": abs(pos.position_value),
            "leverage": pos.leverage,
            "entry_price": pos.entry_price,
            "current_price": prices.get(pos.symbol) or pos.entry_price,
            "unrealized_pnl": pos.unrealized_pnl,
            "unrealized_pnl_pct": pnl_pct(pos.unrealized_pnl, pos.position_value),
            "liquidation_price": pos.liquidation_price,
            "stop_loss": local.stop_loss if local else None,
            "take_profit": local.take_profit if local else None,
            "opened_at": local.opened_at.isoformat() if local and local.opened_at else None,
        })
    return converted

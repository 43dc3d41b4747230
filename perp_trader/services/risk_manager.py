import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from perp_trader.config import settings
from perp_trader.engine import indicators
from perp_trader.models.trading_models import BestEffortRead, BotConfig, TradeDecision
from perp_trader.services.market_data import SymbolSnapshot, tradable_symbols
from perp_trader.utils.time_utils import utc_now

logger = logging.getLogger("risk_manager")


@dataclass
class RiskCheck:
    allowed: bool
    reason: str = ""
    check: str = ""


ALLOWED = RiskCheck(True, "ok", "ALL")


class RiskManager:
    """Pre-trade limits from a user's bot configuration.

    Only opening decisions are gated; closes and holds always pass so a
    limit breach can never trap a user in a position. Checks run in a fixed
    order and the first failure wins.
    """

    def __init__(self, config: BotConfig, testnet: bool = False):
        self.config = config
        self.symbols: List[str] = tradable_symbols(config.symbols, testnet)

    def check_symbol(self, decision: TradeDecision) -> Optional[RiskCheck]:
        if decision.symbol not in self.symbols:
            return RiskCheck(False, f"{decision.symbol} is not in the traded symbol set", "SYMBOL")
        return None

    def check_leverage(self, decision: TradeDecision) -> Optional[RiskCheck]:
        leverage = decision.leverage or 1
        if leverage > self.config.max_leverage:
            return RiskCheck(False, f"leverage {leverage}x exceeds max {self.config.max_leverage}x", "MAX_LEVERAGE")
        return None

    def check_size(self, decision: TradeDecision, account_value: float) -> Optional[RiskCheck]:
        if not decision.size_usd or decision.size_usd <= 0:
            return RiskCheck(False, "decision carries no position size", "POSITION_SIZE")
        max_size = account_value * self.config.max_position_size
        if decision.size_usd > max_size:
            return RiskCheck(False, f"position size {decision.size_usd:.2f} exceeds max {max_size:.2f}", "POSITION_SIZE")
        return None

    @staticmethod
    def minimum_size(account_value: float) -> float:
        return min(settings.MIN_ORDER_USD, account_value * settings.MIN_ORDER_ACCOUNT_FRACTION)

    def check_min_size(self, decision: TradeDecision, account_value: float) -> Optional[RiskCheck]:
        minimum = self.minimum_size(account_value)
        if decision.size_usd < minimum:
            return RiskCheck(False, f"position size {decision.size_usd:.2f} below minimum {minimum:.2f}", "MIN_SIZE")
        return None

    def daily_loss_limit(self) -> float:
        return self.config.starting_capital * self.config.max_daily_loss / 100.0

    def check_daily_stop(self, realized_pnl_today: float) -> bool:
        """True once today's realised loss reaches the daily limit."""
        return -realized_pnl_today >= self.daily_loss_limit() > 0

    def check_account_value(self, account_value: float) -> Optional[RiskCheck]:
        if account_value < self.config.min_account_value:
            return RiskCheck(
                False,
                f"account value {account_value:.2f} below minimum {self.config.min_account_value:.2f}",
                "MIN_ACCOUNT_VALUE",
            )
        return None

    @staticmethod
    def check_open_orders(decision: TradeDecision, open_orders: Optional[BestEffortRead]) -> Optional[RiskCheck]:
        """A pending order on the symbol, or an unreadable order book, blocks the open."""
        if open_orders is None:
            return None
        if not open_orders.ok:
            return RiskCheck(False, f"open orders could not be read: {open_orders.error}", "OPEN_ORDERS")
        pending = [o for o in open_orders.value if o.get("coin") == decision.symbol]
        if pending:
            return RiskCheck(False, f"{len(pending)} pending order(s) on {decision.symbol}", "OPEN_ORDERS")
        return None

    def check_positions(self, decision: TradeDecision, open_positions: Dict[str, str]) -> Optional[RiskCheck]:
        if decision.symbol in open_positions:
            return RiskCheck(False, f"already have a {open_positions[decision.symbol]} position on {decision.symbol}",
                             "DUPLICATE_POSITION")
        if len(open_positions) >= self.config.max_total_positions:
            return RiskCheck(False, f"max {self.config.max_total_positions} open positions reached", "MAX_POSITIONS")
        side = "LONG" if decision.decision == "OPEN_LONG" else "SHORT"
        same_side = sum(1 for s in open_positions.values() if s == side)
        if same_side >= self.config.max_same_direction_positions:
            return RiskCheck(
                False,
                f"{same_side}/{self.config.max_same_direction_positions} {side} positions already open",
                "SAME_DIRECTION",
            )
        return None

    @staticmethod
    def check_recent_open(decision: TradeDecision, last_open_at: Optional[datetime],
                          now: datetime) -> Optional[RiskCheck]:
        if last_open_at is None:
            return None
        elapsed = (now - last_open_at).total_seconds()
        if elapsed < settings.DUPLICATE_GUARD_SEC:
            return RiskCheck(False, f"{decision.symbol} opened {int(elapsed)}s ago", "DUPLICATE_GUARD")
        if elapsed < settings.SYMBOL_COOLDOWN_SEC:
            return RiskCheck(False, f"{decision.symbol} cooldown: opened {int(elapsed // 60)}min ago", "COOLDOWN")
        return None

    @staticmethod
    def check_trend(decision: TradeDecision, snapshot: Optional[SymbolSnapshot]) -> Optional[RiskCheck]:
        """Refuse to open against a strong trend."""
        if snapshot is None:
            return None
        trend = indicators.analyze_trend(snapshot.current_price, snapshot.ema20, snapshot.ema50, snapshot.rsi)
        if trend is None or trend.strength < settings.TREND_GUARD_MIN_STRENGTH:
            return None
        against = ((decision.decision == "OPEN_LONG" and trend.direction == "BEARISH")
                   or (decision.decision == "OPEN_SHORT" and trend.direction == "BULLISH"))
        if against:
            return RiskCheck(False, f"strong {trend.direction} trend (strength {trend.strength}/10)", "TREND_GUARD")
        return None

    def validate(self, decision: TradeDecision, account_value: float, realized_pnl_today: float,
                 open_positions: Dict[str, str] = None, open_orders: BestEffortRead = None,
                 last_open_at: datetime = None, snapshot: SymbolSnapshot = None,
                 now: datetime = None) -> RiskCheck:
        """``open_positions`` maps symbol to side. ``open_orders`` of None skips the pending-order check."""
        if not decision.is_open:
            return ALLOWED
        open_positions = open_positions or {}
        now = now or utc_now()
        checks = (
            lambda: self.check_symbol(decision),
            lambda: self.check_account_value(account_value),
            lambda: self.check_leverage(decision),
            lambda: self.check_size(decision, account_value),
            lambda: self.check_min_size(decision, account_value),
            lambda: self.check_open_orders(decision, open_orders),
            lambda: self.check_positions(decision, open_positions),
            lambda: self.check_recent_open(decision, last_open_at, now),
            lambda: self.check_trend(decision, snapshot),
        )
        for run in checks:
            check = run()
            if check is not None:
                return check
        if self.check_daily_stop(realized_pnl_today):
            return RiskCheck(
                False,
                f"daily loss {-realized_pnl_today:.2f} reached limit {self.daily_loss_limit():.2f}",
                "DAILY_LOSS",
            )
        return ALLOWED

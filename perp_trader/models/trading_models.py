from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar

from perp_trader.config import settings

T = TypeVar("T")

DECISIONS = ("OPEN_LONG", "OPEN_SHORT", "CLOSE", "HOLD")


@dataclass
class BotConfig:
    user_id: str
    is_active: bool
    model_name: str
    symbols: List[str]
    max_leverage: int
    max_position_size: float  # fraction of account value
    max_daily_loss: float  # percent of starting capital
    min_account_value: float
    starting_capital: float
    max_total_positions: int = 3
    max_same_direction_positions: int = 2

    def validate(self) -> "BotConfig":
        if not settings.MIN_LEVERAGE <= self.max_leverage <= settings.MAX_LEVERAGE:
            raise ValueError(
                f"max_leverage {self.max_leverage} outside [{settings.MIN_LEVERAGE}, {settings.MAX_LEVERAGE}]"
            )
        if not settings.MIN_POSITION_SIZE <= self.max_position_size <= settings.MAX_POSITION_SIZE:
            raise ValueError(
                f"max_position_size {self.max_position_size} outside "
                f"[{settings.MIN_POSITION_SIZE}, {settings.MAX_POSITION_SIZE}]"
            )
        if self.is_active and not self.symbols:
            raise ValueError("an active bot needs at least one symbol")
        return self


@dataclass
class UserCredentials:
    user_id: str
    wallet_address: str
    private_key: str
    testnet: bool = False


@dataclass
class Position:
    user_id: str
    symbol: str
    side: str  # LONG / SHORT
    size: float  # coins
    size_usd: float
    leverage: int
    entry_price: float
    current_price: float
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    liquidation_price: Optional[float] = None
    entry_order_id: Optional[str] = None
    tp_order_id: Optional[str] = None
    sl_order_id: Optional[str] = None
    opened_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    @property
    def is_long(self) -> bool:
        return self.side == "LONG"


@dataclass
class Trade:
    user_id: str
    symbol: str
    action: str  # OPEN / CLOSE
    side: str
    size: float
    size_usd: float
    leverage: int
    price: float
    pnl: Optional[float] = None
    reasoning: str = ""
    model_name: str = ""
    confidence: Optional[float] = None
    tx_ref: Optional[str] = None
    status: str = "EXECUTED"  # EXECUTED / FAILED / CANCELLED / PENDING
    error: Optional[str] = None
    executed_at: Optional[datetime] = None


@dataclass
class LockRecord:
    user_id: str
    lock_id: str
    acquired_at: datetime
    expires_at: datetime


@dataclass
class CircuitBreakerState:
    user_id: str
    state: str = "active"  # active / tripped / cooldown
    consecutive_ai_failures: int = 0
    consecutive_losses: int = 0
    tripped_at: Optional[datetime] = None
    reason: Optional[str] = None


@dataclass
class ExchangePosition:
    symbol: str
    szi: float  # signed size, negative when short
    entry_price: float
    leverage: int
    unrealized_pnl: float
    position_value: float
    liquidation_price: Optional[float] = None

    @property
    def side(self) -> str:
        return "LONG" if self.szi > 0 else "SHORT"

    @property
    def size(self) -> float:
        return abs(self.szi)


@dataclass
class AccountState:
    account_value: float
    total_margin_used: float
    withdrawable: float
    positions: List[ExchangePosition] = field(default_factory=list)


@dataclass(frozen=True)
class AssetInfo:
    asset_id: int
    sz_decimals: int
    max_leverage: int


@dataclass
class Candle:
    t: int  # open time, ms
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    symbol: Optional[str] = None
    interval: Optional[str] = None


@dataclass
class TradeDecision:
    decision: str
    symbol: Optional[str] = None
    reasoning: str = ""
    confidence: Optional[float] = None
    leverage: Optional[int] = None
    size_usd: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.decision in ("OPEN_LONG", "OPEN_SHORT")

    def downgrade(self, reason: str) -> "TradeDecision":
        return TradeDecision(
            decision="HOLD",
            symbol=self.symbol,
            reasoning=f"{reason} (was {self.decision}: {self.reasoning})",
            confidence=self.confidence,
            raw=self.raw,
        )


@dataclass
class OrderResult:
    status: str  # FILLED / RESTING
    order_id: Optional[int]
    symbol: str
    price: float
    size: float
    avg_price: Optional[float] = None

    @property
    def tx_ref(self) -> str:
        return f"{self.status.lower()}_{self.order_id}"


@dataclass
class NuclearCloseResult:
    symbol: str
    outcome: str  # closed / no_position / zero_size
    cancelled_count: int
    close_result: Optional[OrderResult] = None

    @property
    def tx_ref(self) -> Optional[str]:
        return self.close_result.tx_ref if self.close_result else None


@dataclass
class AuthoritativeRead(Generic[T]):
    """Result of a read that drives mutations. Only ever built on success."""
    value: T


@dataclass
class BestEffortRead(Generic[T]):
    """Result of a display read; carries a default and the error on failure."""
    value: T
    ok: bool = True
    error: Optional[str] = None

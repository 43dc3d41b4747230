import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (JSON, Boolean, Column, DateTime, Float, Integer, MetaData, String, Table, Text,
                        UniqueConstraint, and_, create_engine, delete, func, insert, select, text, update)
from sqlalchemy.exc import IntegrityError

from perp_trader.models.trading_models import (BotConfig, CircuitBreakerState, LockRecord, Position, Trade,
                                               UserCredentials)
from perp_trader.utils.time_utils import utc_now

logger = logging.getLogger("database")

metadata = MetaData()

bot_configs = Table(
    'bot_configs', metadata,
    Column('user_id', String, primary_key=True),
    Column('is_active', Boolean, default=False),
    Column('model_name', String),
    Column('symbols', JSON),
    Column('max_leverage', Integer),
    Column('max_position_size', Float),
    Column('max_daily_loss', Float),
    Column('min_account_value', Float),
    Column('starting_capital', Float),
    Column('max_total_positions', Integer, default=3),
    Column('max_same_direction_positions', Integer, default=2),
    Column('updated_at', DateTime),
)

user_credentials = Table(
    'user_credentials', metadata,
    Column('user_id', String, primary_key=True),
    Column('wallet_address', String, nullable=False),
    Column('private_key', String, nullable=False),
    Column('testnet', Boolean, default=False),
)

positions = Table(
    'positions', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String, nullable=False),
    Column('symbol', String, nullable=False),
    Column('side', String, nullable=False),
    Column('size', Float, nullable=False),  # coins
    Column('size_usd', Float),
    Column('leverage', Integer),
    Column('entry_price', Float),
    Column('current_price', Float),
    Column('unrealized_pnl', Float, default=0.0),
    Column('unrealized_pnl_pct', Float, default=0.0),
    Column('stop_loss', Float),
    Column('take_profit', Float),
    Column('liquidation_price', Float),
    Column('entry_order_id', String),
    Column('tp_order_id', String),
    Column('sl_order_id', String),
    Column('opened_at', DateTime),
    Column('last_updated', DateTime),
    UniqueConstraint('user_id', 'symbol', name='uq_positions_user_symbol')
)

trades = Table(
    'trades', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String, nullable=False, index=True),
    Column('symbol', String),
    Column('action', String),
    Column('side', String),
    Column('size', Float),
    Column('size_usd', Float),
    Column('leverage', Integer),
    Column('price', Float),
    Column('pnl', Float),
    Column('reasoning', Text),
    Column('model_name', String),
    Column('confidence', Float),
    Column('tx_ref', String),
    Column('status', String, default='EXECUTED'),
    Column('error', Text),
    Column('executed_at', DateTime),
)

# At most one row per user; expired rows are cleared before each acquire.
trading_locks = Table(
    'trading_locks', metadata,
    Column('user_id', String, primary_key=True),
    Column('lock_id', String, nullable=False),
    Column('acquired_at', DateTime, nullable=False),
    Column('expires_at', DateTime, nullable=False),
)

circuit_breakers = Table(
    'circuit_breakers', metadata,
    Column('user_id', String, primary_key=True),
    Column('state', String, default='active'),
    Column('consecutive_ai_failures', Integer, default=0),
    Column('consecutive_losses', Integer, default=0),
    Column('tripped_at', DateTime),
    Column('reason', String),
)

ai_logs = Table(
    'ai_logs', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String, index=True),
    Column('model_name', String),
    Column('decision', String),
    Column('symbol', String),
    Column('reasoning', Text),
    Column('confidence', Float),
    Column('account_value', Float),
    Column('market_data', JSON),
    Column('raw_response', JSON),
    Column('created_at', DateTime),
)

system_logs = Table(
    'system_logs', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String, index=True),
    Column('level', String),
    Column('message', Text),
    Column('context', JSON),
    Column('created_at', DateTime),
)


def _position_from_row(row) -> Position:
    data = dict(row._mapping)
    data.pop('id', None)
    return Position(**data)


def _trade_from_row(row) -> Trade:
    data = dict(row._mapping)
    data.pop('id', None)
    return Trade(**data)


def _bot_config_from_row(row) -> BotConfig:
    data = dict(row._mapping)
    data.pop('updated_at', None)
    data['symbols'] = list(data.get('symbols') or [])
    return BotConfig(**data)


class Database:
    def __init__(self, url: str):
        self.url = url
        self._connected = False
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, connect_args=connect_args)
        metadata.create_all(self.engine)
        logger.info("Database engine created successfully")

    async def connect(self):
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        self._connected = True
        logger.info("Database connected successfully")

    async def disconnect(self):
        self._connected = False
        logger.info("Database disconnected")

    @property
    def connected(self) -> bool:
        return self._connected

    def _require(self):
        if not self._connected:
            raise RuntimeError("Database not connected")

    async def execute(self, query) -> int:
        """Execute a write statement in its own transaction; returns the rowcount."""
        self._require()
        with self.engine.begin() as conn:
            result = conn.execute(query)
            return result.rowcount

    async def _fetch_all(self, query) -> List[Any]:
        self._require()
        with self.engine.connect() as conn:
            return conn.execute(query).fetchall()

    async def _fetch_one(self, query):
        self._require()
        with self.engine.connect() as conn:
            return conn.execute(query).first()

    # ---- bot configs / credentials ----------------------------------------

    async def upsert_bot_config(self, config: BotConfig):
        config.validate()
        values = asdict(config)
        values['updated_at'] = utc_now()
        self._require()
        with self.engine.begin() as conn:
            existing = conn.execute(select(bot_configs.c.user_id).where(bot_configs.c.user_id == config.user_id)).first()
            if existing:
                conn.execute(update(bot_configs).where(bot_configs.c.user_id == config.user_id).values(**values))
            else:
                conn.execute(insert(bot_configs).values(**values))

    async def get_bot_config(self, user_id: str) -> Optional[BotConfig]:
        row = await self._fetch_one(select(bot_configs).where(bot_configs.c.user_id == user_id))
        return _bot_config_from_row(row) if row else None

    async def get_active_bot_configs(self) -> List[BotConfig]:
        rows = await self._fetch_all(select(bot_configs).where(bot_configs.c.is_active.is_(True)))
        return [_bot_config_from_row(r) for r in rows]

    async def upsert_credentials(self, creds: UserCredentials):
        values = asdict(creds)
        self._require()
        with self.engine.begin() as conn:
            existing = conn.execute(select(user_credentials.c.user_id).where(user_credentials.c.user_id == creds.user_id)).first()
            if existing:
                conn.execute(update(user_credentials).where(user_credentials.c.user_id == creds.user_id).values(**values))
            else:
                conn.execute(insert(user_credentials).values(**values))

    async def get_credentials(self, user_id: str) -> Optional[UserCredentials]:
        row = await self._fetch_one(select(user_credentials).where(user_credentials.c.user_id == user_id))
        return UserCredentials(**dict(row._mapping)) if row else None

    # ---- positions --------------------------------------------------------

    async def save_position(self, position: Position):
        """Insert or replace the (user, symbol) position."""
        now = utc_now()
        values = asdict(position)
        values['opened_at'] = values.get('opened_at') or now
        values['last_updated'] = now
        where = and_(positions.c.user_id == position.user_id, positions.c.symbol == position.symbol)
        self._require()
        with self.engine.begin() as conn:
            existing = conn.execute(select(positions.c.id).where(where)).first()
            if existing:
                conn.execute(update(positions).where(where).values(**values))
            else:
                conn.execute(insert(positions).values(**values))

    async def get_positions(self, user_id: str) -> List[Position]:
        rows = await self._fetch_all(select(positions).where(positions.c.user_id == user_id).order_by(positions.c.symbol))
        return [_position_from_row(r) for r in rows]

    async def get_position(self, user_id: str, symbol: str) -> Optional[Position]:
        row = await self._fetch_one(select(positions).where(
            and_(positions.c.user_id == user_id, positions.c.symbol == symbol)))
        return _position_from_row(row) if row else None

    async def update_position_market(self, user_id: str, symbol: str, current_price: float, unrealized_pnl: float,
                                     unrealized_pnl_pct: float, liquidation_price: Optional[float] = None) -> bool:
        count = await self.execute(update(positions).where(
            and_(positions.c.user_id == user_id, positions.c.symbol == symbol)
        ).values(
            current_price=current_price,
            unrealized_pnl=unrealized_pnl,
            unrealized_pnl_pct=unrealized_pnl_pct,
            liquidation_price=liquidation_price,
            last_updated=utc_now(),
        ))
        return count > 0

    async def delete_position(self, user_id: str, symbol: str) -> bool:
        count = await self.execute(delete(positions).where(
            and_(positions.c.user_id == user_id, positions.c.symbol == symbol)))
        return count > 0

    # ---- trades -----------------------------------------------------------

    async def insert_trade(self, trade: Trade):
        values = asdict(trade)
        values['executed_at'] = values.get('executed_at') or utc_now()
        await self.execute(insert(trades).values(**values))

    async def get_trades(self, user_id: str, limit: int = 50) -> List[Trade]:
        rows = await self._fetch_all(select(trades).where(trades.c.user_id == user_id)
                                     .order_by(trades.c.id.desc()).limit(limit))
        return [_trade_from_row(r) for r in rows]

    async def get_last_open_at(self, user_id: str, symbol: str) -> Optional[datetime]:
        """When the latest non-failed OPEN on ``symbol`` was recorded."""
        row = await self._fetch_one(select(func.max(trades.c.executed_at)).where(and_(
            trades.c.user_id == user_id,
            trades.c.symbol == symbol,
            trades.c.action == 'OPEN',
            trades.c.status != 'FAILED',
        )))
        return row[0] if row else None

    async def get_realized_pnl_since(self, user_id: str, since: datetime) -> float:
        row = await self._fetch_one(select(func.coalesce(func.sum(trades.c.pnl), 0.0)).where(and_(
            trades.c.user_id == user_id,
            trades.c.action == 'CLOSE',
            trades.c.status == 'EXECUTED',
            trades.c.executed_at >= since,
        )))
        return float(row[0]) if row else 0.0

    # ---- trading locks ----------------------------------------------------

    async def try_insert_lock(self, record: LockRecord, now: datetime) -> Optional[LockRecord]:
        """Insert ``record`` unless an unexpired lock exists.

        Returns None on success, otherwise the lock that is in the way.
        """
        self._require()
        try:
            with self.engine.begin() as conn:
                conn.execute(delete(trading_locks).where(and_(
                    trading_locks.c.user_id == record.user_id,
                    trading_locks.c.expires_at <= now,
                )))
                existing = conn.execute(select(trading_locks).where(trading_locks.c.user_id == record.user_id)).first()
                if existing:
                    return LockRecord(**dict(existing._mapping))
                conn.execute(insert(trading_locks).values(**asdict(record)))
                return None
        except IntegrityError:
            existing = await self.get_lock(record.user_id)
            return existing or record

    async def get_lock(self, user_id: str) -> Optional[LockRecord]:
        row = await self._fetch_one(select(trading_locks).where(trading_locks.c.user_id == user_id))
        return LockRecord(**dict(row._mapping)) if row else None

    async def delete_lock(self, user_id: str, lock_id: str) -> bool:
        count = await self.execute(delete(trading_locks).where(and_(
            trading_locks.c.user_id == user_id,
            trading_locks.c.lock_id == lock_id,
        )))
        return count > 0

    async def delete_expired_locks(self, now: datetime) -> int:
        count = await self.execute(delete(trading_locks).where(trading_locks.c.expires_at <= now))
        return count

    # ---- circuit breaker --------------------------------------------------

    async def get_circuit_breaker(self, user_id: str) -> CircuitBreakerState:
        row = await self._fetch_one(select(circuit_breakers).where(circuit_breakers.c.user_id == user_id))
        return CircuitBreakerState(**dict(row._mapping)) if row else CircuitBreakerState(user_id=user_id)

    async def save_circuit_breaker(self, state: CircuitBreakerState):
        values = asdict(state)
        self._require()
        with self.engine.begin() as conn:
            existing = conn.execute(select(circuit_breakers.c.user_id).where(circuit_breakers.c.user_id == state.user_id)).first()
            if existing:
                conn.execute(update(circuit_breakers).where(circuit_breakers.c.user_id == state.user_id).values(**values))
            else:
                conn.execute(insert(circuit_breakers).values(**values))

    # ---- logs -------------------------------------------------------------

    async def insert_ai_log(self, user_id: str, model_name: str, decision: str, symbol: Optional[str],
                            reasoning: str, confidence: Optional[float], account_value: Optional[float],
                            market_data: Dict[str, Any] = None, raw_response: Dict[str, Any] = None):
        await self.execute(insert(ai_logs).values(
            user_id=user_id,
            model_name=model_name,
            decision=decision,
            symbol=symbol,
            reasoning=reasoning,
            confidence=confidence,
            account_value=account_value,
            market_data=market_data,
            raw_response=raw_response,
            created_at=utc_now(),
        ))

    async def get_ai_logs(self, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        rows = await self._fetch_all(select(ai_logs).where(ai_logs.c.user_id == user_id)
                                     .order_by(ai_logs.c.id.desc()).limit(limit))
        return [dict(r._mapping) for r in rows]

    async def insert_system_log(self, user_id: Optional[str], level: str, message: str, context: Dict[str, Any] = None):
        await self.execute(insert(system_logs).values(
            user_id=user_id,
            level=level,
            message=message,
            context=context,
            created_at=utc_now(),
        ))

    async def get_system_logs(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        rows = await self._fetch_all(select(system_logs).where(system_logs.c.user_id == user_id)
                                     .order_by(system_logs.c.id.desc()).limit(limit))
        return [dict(r._mapping) for r in rows]

"""Trading cycle orchestration.

One cycle per active user per scheduler tick:

    ACQUIRE_LOCK -> FETCH_ACCOUNT_AND_MARKET -> COMPUTE_INDICATORS ->
    REQUEST_DECISION -> VALIDATE_RISK -> EXECUTE -> PERSIST -> RELEASE_LOCK

Any state may ABORT. The lock is held through ``TradingLock.hold`` so it is
released on every path. A held lock means another cycle is running; the
tick is skipped quietly.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from perp_trader.config import settings
from perp_trader.errors import ExchangeError, LockHeld, OrderRejected
from perp_trader.models.trading_models import (AccountState, BotConfig, ExchangePosition, OrderResult, Position,
                                               Trade, TradeDecision, UserCredentials)
from perp_trader.persistence.db import Database
from perp_trader.execution.order_executor import OrderExecutor
from perp_trader.providers.exchange_rest import ExchangeClient
from perp_trader.services import circuit_breaker
from perp_trader.services.decision_provider import DecisionProvider, parse_decision
from perp_trader.services.market_data import MarketDataService, SymbolSnapshot, tradable_symbols
from perp_trader.services.metrics import cycle_duration, cycles_counter, decisions_counter
from perp_trader.services.notifier import Notifier
from perp_trader.services.position_converter import convert_exchange_positions
from perp_trader.services.position_reconciler import prune_stale_positions
from perp_trader.services.risk_manager import RiskManager
from perp_trader.services.trading_lock import TradingLock
from perp_trader.utils.orders_enum import OrderStatus
from perp_trader.utils.time_utils import start_of_utc_day, utc_now

logger = logging.getLogger("trading_cycle")


class CycleState(Enum):
    ACQUIRE_LOCK = "ACQUIRE_LOCK"
    FETCH_ACCOUNT_AND_MARKET = "FETCH_ACCOUNT_AND_MARKET"
    COMPUTE_INDICATORS = "COMPUTE_INDICATORS"
    REQUEST_DECISION = "REQUEST_DECISION"
    VALIDATE_RISK = "VALIDATE_RISK"
    EXECUTE = "EXECUTE"
    PERSIST = "PERSIST"
    RELEASE_LOCK = "RELEASE_LOCK"
    ABORT = "ABORT"


class CycleAborted(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass
class CycleReport:
    user_id: str
    states: List[CycleState] = field(default_factory=list)
    outcome: str = "pending"  # completed / skipped / aborted
    reason: str = ""
    decision: Optional[TradeDecision] = None
    execution: Optional[str] = None

    def enter(self, state: CycleState):
        self.states.append(state)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "states": [s.value for s in self.states],
            "outcome": self.outcome,
            "reason": self.reason,
            "decision": self.decision.decision if self.decision else None,
            "symbol": self.decision.symbol if self.decision else None,
            "execution": self.execution,
        }


@dataclass
class ExecutionOutcome:
    """What EXECUTE did, applied to storage in PERSIST."""
    status: str  # opened / cancelled / pending / closed / failed / emergency_closed / unprotected / none
    trades: List[Trade] = field(default_factory=list)
    save_position: Optional[Position] = None
    delete_symbol: Optional[str] = None
    won: Optional[bool] = None
    alerts: List[str] = field(default_factory=list)
    opened: Optional[Dict[str, Any]] = None
    closed: Optional[Dict[str, Any]] = None


class TradingCycleOrchestrator:
    def __init__(self, db: Database, client: ExchangeClient, executor: OrderExecutor,
                 decision_provider: DecisionProvider, lock: TradingLock = None,
                 market_data: MarketDataService = None, notifier: Notifier = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.db = db
        self.client = client
        self.executor = executor
        self.decision_provider = decision_provider
        self.lock = lock or TradingLock(db)
        self.market_data = market_data or MarketDataService(client)
        self.notifier = notifier or Notifier(settings.NOTIFIER_WEBHOOK)
        self.sleep = sleep

    async def run_all(self) -> List[CycleReport]:
        """One cycle per active bot, concurrently across users."""
        await self.lock.reap_expired()
        configs = await self.db.get_active_bot_configs()
        if not configs:
            logger.info("No active bots")
            return []
        logger.info(f"Starting trading cycle for {len(configs)} active bot(s)")
        results = await asyncio.gather(*[self.run_cycle(c) for c in configs], return_exceptions=True)
        reports = []
        for config, result in zip(configs, results):
            if isinstance(result, BaseException):
                logger.error(f"Trading cycle for {config.user_id} crashed: {result}")
                reports.append(CycleReport(user_id=config.user_id, outcome="aborted", reason=str(result)))
            else:
                reports.append(result)
        return reports

    async def run_cycle(self, config: BotConfig) -> CycleReport:
        report = CycleReport(user_id=config.user_id)
        report.enter(CycleState.ACQUIRE_LOCK)
        acquired = False
        started = time.monotonic()
        try:
            async with self.lock.hold(config.user_id):
                acquired = True
                await self._run_locked(config, report)
            report.outcome = "completed"
        except LockHeld as e:
            report.outcome = "skipped"
            report.reason = str(e)
            logger.info(f"Skipping {config.user_id}: another cycle holds the lock")
        except CycleAborted as e:
            self._abort(report, e.reason)
            logger.warning(f"Cycle for {config.user_id} aborted: {e.reason}")
        except Exception as e:
            self._abort(report, f"{type(e).__name__}: {e}")
            logger.exception(f"Trading cycle error for {config.user_id}")
            await self._system_log(config.user_id, "ERROR", "Trading cycle error", {"error": str(e)})
            await self.notifier.notify_risk_alert(config.user_id, "bot_error", f"Trading cycle error: {e}")
        finally:
            if acquired:
                report.enter(CycleState.RELEASE_LOCK)
            cycles_counter.labels(outcome=report.outcome).inc()
            cycle_duration.observe(time.monotonic() - started)
        return report

    @staticmethod
    def _abort(report: CycleReport, reason: str):
        report.enter(CycleState.ABORT)
        report.outcome = "aborted"
        report.reason = reason

    async def _system_log(self, user_id: str, level: str, message: str, context: Dict[str, Any] = None):
        try:
            await self.db.insert_system_log(user_id, level, message, context)
        except Exception:
            logger.exception("Failed to write system log")

    async def _check_circuit_breaker(self, user_id: str):
        state = await self.db.get_circuit_breaker(user_id)
        allowed, reason = circuit_breaker.should_allow_trading(state)
        if not allowed:
            await self._system_log(user_id, "WARNING", f"Circuit breaker blocked trading: {reason}")
            raise CycleAborted(reason)
        if state.state == circuit_breaker.TRIPPED:
            await self.db.save_circuit_breaker(circuit_breaker.enter_cooldown(state))
            logger.info(f"Circuit breaker for {user_id} entering cooldown")

    async def _run_locked(self, config: BotConfig, report: CycleReport):
        user_id = config.user_id
        await self._check_circuit_breaker(user_id)

        creds = await self.db.get_credentials(user_id)
        if creds is None:
            await self._system_log(user_id, "ERROR", "Trading cycle skipped: missing credentials")
            raise CycleAborted("missing credentials")
        testnet = creds.testnet
        symbols = tradable_symbols(config.symbols, testnet)

        report.enter(CycleState.FETCH_ACCOUNT_AND_MARKET)
        try:
            account, mids, candles = await asyncio.gather(
                self.client.get_account_state(creds.wallet_address, testnet),
                self.client.get_all_mids(testnet),
                self.market_data.fetch_candles(symbols, testnet),
            )
        except ExchangeError as e:
            raise CycleAborted(f"fetch failed: {e}")

        # account.positions comes from an authoritative read, safe to prune against
        stale = await prune_stale_positions(self.db, user_id, account.positions)
        if stale:
            logger.info(f"Pruned stale positions for {user_id}: {stale}")

        report.enter(CycleState.COMPUTE_INDICATORS)
        snapshots = self.market_data.snapshots_from(symbols, candles, mids)
        local_positions = await self.db.get_positions(user_id)
        context = {
            "user_id": user_id,
            "model_name": config.model_name,
            "testnet": testnet,
            "market_data": {s: snap.to_dict() for s, snap in snapshots.items()},
            "account": {
                "account_value": account.account_value,
                "total_margin_used": account.total_margin_used,
                "withdrawable": account.withdrawable,
            },
            "positions": convert_exchange_positions(account.positions, local_positions, mids),
            "limits": {
                "max_leverage": config.max_leverage,
                "max_position_size": config.max_position_size,
                "max_daily_loss": config.max_daily_loss,
                "min_account_value": config.min_account_value,
                "max_total_positions": config.max_total_positions,
                "max_same_direction_positions": config.max_same_direction_positions,
            },
        }

        report.enter(CycleState.REQUEST_DECISION)
        decision = await self._request_decision(config, context)
        await self.db.insert_ai_log(
            user_id, config.model_name, decision.decision, decision.symbol, decision.reasoning,
            decision.confidence, account.account_value, market_data=context["market_data"], raw_response=decision.raw,
        )

        report.enter(CycleState.VALIDATE_RISK)
        decision = await self._validate_risk(config, creds, decision, account, snapshots)
        report.decision = decision
        decisions_counter.labels(decision=decision.decision).inc()
        logger.info(f"{user_id} decision: {decision.decision} {decision.symbol or ''} ({decision.reasoning[:120]})")

        report.enter(CycleState.EXECUTE)
        if decision.is_open:
            outcome = await self._execute_open(config, creds, decision, mids)
        elif decision.decision == "CLOSE":
            outcome = await self._execute_close(config, creds, decision, mids)
        else:
            outcome = ExecutionOutcome(status="none")
        report.execution = outcome.status

        report.enter(CycleState.PERSIST)
        await self._persist(user_id, outcome)

    async def _request_decision(self, config: BotConfig, context: Dict[str, Any]) -> TradeDecision:
        user_id = config.user_id
        state = await self.db.get_circuit_breaker(user_id)
        try:
            raw = await self.decision_provider.decide(context)
        except Exception as e:
            state = circuit_breaker.record_ai_failure(state)
            await self.db.save_circuit_breaker(state)
            if state.state == circuit_breaker.TRIPPED:
                message = f"Circuit breaker tripped after {state.consecutive_ai_failures} consecutive AI failures"
                logger.error(f"{user_id}: {message}")
                await self._system_log(user_id, "CRITICAL", message)
                await self.notifier.notify_risk_alert(user_id, "circuit_breaker", message)
            raise CycleAborted(f"decision provider failed: {e}")
        await self.db.save_circuit_breaker(circuit_breaker.record_ai_success(state))
        return parse_decision(raw)

    async def _validate_risk(self, config: BotConfig, creds: UserCredentials, decision: TradeDecision,
                             account: AccountState, snapshots: Dict[str, SymbolSnapshot]) -> TradeDecision:
        if not decision.is_open:
            return decision
        user_id = config.user_id
        realized = await self.db.get_realized_pnl_since(user_id, start_of_utc_day())
        open_positions = {p.symbol: p.side for p in await self.db.get_positions(user_id)}
        open_positions.update((p.symbol, p.side) for p in account.positions if p.szi != 0)
        open_orders = await self.client.get_frontend_open_orders(creds.wallet_address, creds.testnet)
        last_open_at = await self.db.get_last_open_at(user_id, decision.symbol) if decision.symbol else None
        check = RiskManager(config, testnet=creds.testnet).validate(
            decision, account.account_value, realized, open_positions,
            open_orders=open_orders, last_open_at=last_open_at, snapshot=snapshots.get(decision.symbol),
        )
        if check.allowed:
            return decision
        logger.warning(f"Risk check {check.check} downgraded {decision.decision} {decision.symbol}: {check.reason}")
        await self._system_log(user_id, "WARNING", f"Risk check {check.check} blocked {decision.decision}",
                               {"symbol": decision.symbol, "reason": check.reason})
        return decision.downgrade(check.reason)

    async def _with_attempts(self, label: str, symbol: str, fn: Callable[[], Awaitable[OrderResult]]) -> Optional[OrderResult]:
        attempts = max(1, settings.PROTECTIVE_ORDER_ATTEMPTS)
        for attempt in range(1, attempts + 1):
            try:
                return await fn()
            except ExchangeError as e:
                logger.warning(f"{label} for {symbol} failed (attempt {attempt}/{attempts}): {e}")
                if attempt < attempts:
                    await self.sleep(settings.PROTECTIVE_ORDER_RETRY_DELAY_SEC)
        return None

    @staticmethod
    def _failed_trade(config: BotConfig, decision: TradeDecision, action: str, side: str, price: float,
                      error: Exception) -> Trade:
        return Trade(
            user_id=config.user_id,
            symbol=decision.symbol,
            action=action,
            side=side,
            size=0.0,
            size_usd=decision.size_usd or 0.0,
            leverage=decision.leverage or 1,
            price=price,
            reasoning=decision.reasoning,
            model_name=config.model_name,
            confidence=decision.confidence,
            status="FAILED",
            error=str(error),
        )

    async def _execute_open(self, config: BotConfig, creds: UserCredentials, decision: TradeDecision,
                            mids: Dict[str, float]) -> ExecutionOutcome:
        symbol = decision.symbol
        is_long = decision.decision == "OPEN_LONG"
        side = "LONG" if is_long else "SHORT"
        leverage = decision.leverage or 1
        testnet = creds.testnet

        try:
            price = mids.get(symbol) or await self.client.get_market_price(symbol, testnet)
            entry = await self.executor.place_order(creds, symbol, is_long, decision.size_usd / price, price=price,
                                                    testnet=testnet, leverage=leverage)
        except ExchangeError as e:
            logger.error(f"Entry order for {symbol} failed: {e}")
            await self._system_log(config.user_id, "ERROR", f"Entry order failed for {symbol}", {"error": str(e)})
            return ExecutionOutcome(status="failed",
                                    trades=[self._failed_trade(config, decision, "OPEN", side, mids.get(symbol) or 0.0, e)])

        if entry.status != OrderStatus.FILLED.value:
            return await self._unfilled_entry(config, creds, decision, entry, side)

        entry_price = entry.avg_price or entry.price
        stop_loss = decision.stop_loss
        if not stop_loss:
            pct = settings.DEFAULT_STOP_LOSS_PCT
            stop_loss = entry_price * (1 - pct) if is_long else entry_price * (1 + pct)

        open_trade = Trade(
            user_id=config.user_id,
            symbol=symbol,
            action="OPEN",
            side=side,
            size=entry.size,
            size_usd=decision.size_usd,
            leverage=leverage,
            price=entry_price,
            reasoning=decision.reasoning,
            model_name=config.model_name,
            confidence=decision.confidence,
            tx_ref=entry.tx_ref,
        )

        sl = await self._with_attempts("stop_loss", symbol, lambda: self.executor.place_stop_loss(
            creds, symbol, entry.size, stop_loss, is_long, testnet))
        if sl is None:
            return await self._emergency_close(config, creds, decision, entry, open_trade, is_long)

        tp = None
        if decision.take_profit:
            tp = await self._with_attempts("take_profit", symbol, lambda: self.executor.place_take_profit(
                creds, symbol, entry.size, decision.take_profit, is_long, testnet))
            if tp is None:
                logger.warning(f"{symbol} opened without take profit")

        position = Position(
            user_id=config.user_id,
            symbol=symbol,
            side=side,
            size=entry.size,
            size_usd=decision.size_usd,
            leverage=leverage,
            entry_price=entry_price,
            current_price=entry_price,
            stop_loss=stop_loss,
            take_profit=decision.take_profit if tp else None,
            entry_order_id=str(entry.order_id) if entry.order_id is not None else None,
            sl_order_id=str(sl.order_id) if sl.order_id is not None else None,
            tp_order_id=str(tp.order_id) if tp and tp.order_id is not None else None,
            opened_at=utc_now(),
        )
        logger.info(f"Opened {side} {symbol} size={entry.size} at {entry_price} sl={stop_loss} tp={position.take_profit}")
        return ExecutionOutcome(
            status="opened",
            trades=[open_trade],
            save_position=position,
            opened={"symbol": symbol, "side": side, "size_usd": decision.size_usd, "leverage": leverage,
                    "entry_price": entry_price, "stop_loss": stop_loss, "take_profit": position.take_profit,
                    "confidence": decision.confidence},
        )

    async def _unfilled_entry(self, config: BotConfig, creds: UserCredentials, decision: TradeDecision,
                              entry: OrderResult, side: str) -> ExecutionOutcome:
        """An entry that rested instead of filling opens nothing; pull it off the book."""
        symbol = decision.symbol
        logger.warning(f"Entry order {entry.order_id} for {symbol} is resting, not filled; cancelling")
        cancelled = False
        if entry.order_id is not None:
            try:
                cancelled = await self.executor.cancel_order(creds, symbol, entry.order_id, creds.testnet)
            except ExchangeError as e:
                logger.error(f"Cancel of resting entry {entry.order_id} for {symbol} failed: {e}")
        trade = Trade(
            user_id=config.user_id,
            symbol=symbol,
            action="OPEN",
            side=side,
            size=0.0,
            size_usd=decision.size_usd,
            leverage=decision.leverage or 1,
            price=entry.price,
            reasoning=decision.reasoning,
            model_name=config.model_name,
            confidence=decision.confidence,
            tx_ref=entry.tx_ref,
            status="CANCELLED" if cancelled else "PENDING",
        )
        if cancelled:
            await self._system_log(config.user_id, "WARNING", f"Entry order for {symbol} did not fill and was cancelled",
                                   {"order_id": entry.order_id})
            return ExecutionOutcome(status="cancelled", trades=[trade])
        trade.error = "resting entry could not be cancelled"
        return ExecutionOutcome(status="pending", trades=[trade], alerts=[
            f"Entry order {entry.order_id} for {symbol} is resting on the book and could not be cancelled"])

    async def _emergency_close(self, config: BotConfig, creds: UserCredentials, decision: TradeDecision,
                               entry: OrderResult, open_trade: Trade, is_long: bool) -> ExecutionOutcome:
        symbol = decision.symbol
        logger.error(f"Stop loss could not be placed for {symbol}; closing position")
        try:
            price = await self.client.get_market_price(symbol, creds.testnet)
            result = await self.executor.close_position(creds, symbol, entry.size, price, not is_long, creds.testnet)
        except ExchangeError as e:
            message = f"{symbol} is open WITHOUT a stop loss and the emergency close failed: {e}"
            logger.critical(message)
            position = Position(
                user_id=config.user_id, symbol=symbol, side=open_trade.side, size=entry.size,
                size_usd=open_trade.size_usd, leverage=open_trade.leverage, entry_price=open_trade.price,
                current_price=open_trade.price, opened_at=utc_now(),
                entry_order_id=str(entry.order_id) if entry.order_id is not None else None,
            )
            return ExecutionOutcome(status="unprotected", trades=[open_trade], save_position=position,
                                    alerts=[message])
        close_trade = Trade(
            user_id=config.user_id,
            symbol=symbol,
            action="CLOSE",
            side=open_trade.side,
            size=entry.size,
            size_usd=open_trade.size_usd,
            leverage=open_trade.leverage,
            price=price,
            reasoning="Emergency close: stop loss placement failed",
            model_name=config.model_name,
            tx_ref=result.tx_ref,
        )
        return ExecutionOutcome(status="emergency_closed", trades=[open_trade, close_trade],
                                alerts=[f"{symbol} closed because its stop loss could not be placed"])

    async def _execute_close(self, config: BotConfig, creds: UserCredentials, decision: TradeDecision,
                             mids: Dict[str, float]) -> ExecutionOutcome:
        symbol = decision.symbol
        testnet = creds.testnet
        local = await self.db.get_position(config.user_id, symbol)
        try:
            live = (await self.client.get_user_positions(creds.wallet_address, testnet)).value
        except ExchangeError as e:
            return ExecutionOutcome(status="failed",
                                    trades=[self._failed_trade(config, decision, "CLOSE", "CLOSE", 0.0, e)])

        actual: Optional[ExchangePosition] = next((p for p in live if p.symbol == symbol and p.szi != 0), None)
        if actual is None:
            logger.warning(f"No {symbol} position on the exchange; removing local record")
            return ExecutionOutcome(status="none", delete_symbol=symbol if local else None)

        price = mids.get(symbol) or 0.0
        try:
            if not price:
                price = await self.client.get_market_price(symbol, testnet)
            try:
                result = await self.executor.close_position(creds, symbol, actual.size, price, actual.szi < 0, testnet)
                tx_ref = result.tx_ref
            except OrderRejected as e:
                logger.warning(f"Close of {symbol} rejected ({e}); cancelling orders and retrying")
                nuclear = await self.executor.nuclear_close_position(creds, symbol, testnet)
                tx_ref = nuclear.tx_ref or nuclear.outcome
        except ExchangeError as e:
            logger.error(f"Close of {symbol} failed: {e}")
            await self._system_log(config.user_id, "ERROR", f"Close failed for {symbol}", {"error": str(e)})
            return ExecutionOutcome(status="failed",
                                    trades=[self._failed_trade(config, decision, "CLOSE", actual.side, price, e)])

        pnl = actual.unrealized_pnl
        trade = Trade(
            user_id=config.user_id,
            symbol=symbol,
            action="CLOSE",
            side=actual.side,
            size=actual.size,
            size_usd=abs(actual.position_value),
            leverage=actual.leverage,
            price=price,
            pnl=pnl,
            reasoning=decision.reasoning,
            model_name=config.model_name,
            confidence=decision.confidence,
            tx_ref=tx_ref,
        )
        pct = pnl / abs(actual.position_value) * 100.0 if actual.position_value else 0.0
        return ExecutionOutcome(
            status="closed",
            trades=[trade],
            delete_symbol=symbol,
            won=pnl >= 0,
            closed={"symbol": symbol, "side": actual.side, "pnl": pnl, "pnl_pct": pct},
        )

    async def _persist(self, user_id: str, outcome: ExecutionOutcome):
        for trade in outcome.trades:
            await self.db.insert_trade(trade)
        if outcome.save_position is not None:
            await self.db.save_position(outcome.save_position)
        if outcome.delete_symbol:
            await self.db.delete_position(user_id, outcome.delete_symbol)
        if outcome.won is not None:
            state = circuit_breaker.record_trade_outcome(await self.db.get_circuit_breaker(user_id), outcome.won)
            await self.db.save_circuit_breaker(state)
            if state.state == circuit_breaker.TRIPPED and not outcome.won:
                outcome.alerts.append(f"Circuit breaker tripped after {state.consecutive_losses} consecutive losses")
        for alert in outcome.alerts:
            await self._system_log(user_id, "CRITICAL", alert)
            await self.notifier.notify_risk_alert(user_id, "execution", alert)
        if outcome.opened:
            await self.notifier.notify_trade_opened(user_id, **outcome.opened)
        if outcome.closed:
            await self.notifier.notify_trade_closed(user_id, **outcome.closed)

"""Circuit breaker over consecutive AI failures and losing trades.

States: ``active`` (trading allowed), ``tripped`` (blocked until the cooldown
elapses), ``cooldown`` (allowed again; the next AI success returns it to
``active``). All functions return new state objects.
"""
import math
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Tuple

from perp_trader.config import settings
from perp_trader.models.trading_models import CircuitBreakerState
from perp_trader.utils.time_utils import utc_now

ACTIVE = "active"
TRIPPED = "tripped"
COOLDOWN = "cooldown"


def should_allow_trading(state: CircuitBreakerState, now: datetime = None,
                         cooldown_minutes: int = None) -> Tuple[bool, str]:
    now = now or utc_now()
    cooldown_minutes = settings.CIRCUIT_BREAKER_COOLDOWN_MIN if cooldown_minutes is None else cooldown_minutes
    current = state.state or ACTIVE
    if current in (ACTIVE, COOLDOWN):
        return True, "Circuit breaker is active"
    if current == TRIPPED:
        tripped_at = state.tripped_at or datetime.min
        remaining = timedelta(minutes=cooldown_minutes) - (now - tripped_at)
        if remaining <= timedelta(0):
            return True, "Cooldown period elapsed, entering cooldown state"
        minutes = math.ceil(remaining / timedelta(minutes=1))
        return False, f"Circuit breaker tripped. {minutes} minute(s) remaining in cooldown"
    return True, f"Unknown circuit breaker state: {current}"


def enter_cooldown(state: CircuitBreakerState) -> CircuitBreakerState:
    return replace(state, state=COOLDOWN)


def record_ai_failure(state: CircuitBreakerState, max_failures: int = None, now: datetime = None) -> CircuitBreakerState:
    max_failures = settings.CIRCUIT_BREAKER_MAX_AI_FAILURES if max_failures is None else max_failures
    failures = (state.consecutive_ai_failures or 0) + 1
    if failures >= max_failures:
        return replace(state, consecutive_ai_failures=failures, state=TRIPPED, tripped_at=now or utc_now(),
                       reason=f"{failures} consecutive AI failures")
    return replace(state, consecutive_ai_failures=failures)


def record_ai_success(state: CircuitBreakerState) -> CircuitBreakerState:
    current = state.state or ACTIVE
    return replace(state, consecutive_ai_failures=0, state=ACTIVE if current == COOLDOWN else current)


def record_trade_outcome(state: CircuitBreakerState, won: bool, max_losses: int = None,
                         now: datetime = None) -> CircuitBreakerState:
    if won:
        return replace(state, consecutive_losses=0)
    max_losses = settings.CIRCUIT_BREAKER_MAX_LOSSES if max_losses is None else max_losses
    losses = (state.consecutive_losses or 0) + 1
    if losses >= max_losses:
        return replace(state, consecutive_losses=losses, state=TRIPPED, tripped_at=now or utc_now(),
                       reason=f"{losses} consecutive losses")
    return replace(state, consecutive_losses=losses)

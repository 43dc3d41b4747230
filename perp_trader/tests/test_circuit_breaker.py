from datetime import datetime, timedelta

from perp_trader.models.trading_models import CircuitBreakerState
from perp_trader.services import circuit_breaker as cb

NOW = datetime(2025, 1, 1, 12, 0, 0)


def test_active_allows_trading():
    allowed, _ = cb.should_allow_trading(CircuitBreakerState(user_id="u"), now=NOW)
    assert allowed


def test_trips_after_max_ai_failures():
    state = CircuitBreakerState(user_id="u")
    for _ in range(3):
        state = cb.record_ai_failure(state, max_failures=3, now=NOW)
    assert state.state == cb.TRIPPED
    assert state.tripped_at == NOW
    allowed, reason = cb.should_allow_trading(state, now=NOW + timedelta(minutes=10), cooldown_minutes=30)
    assert not allowed
    assert "20 minute(s)" in reason


def test_cooldown_then_success_returns_to_active():
    state = CircuitBreakerState(user_id="u", state=cb.TRIPPED, tripped_at=NOW, consecutive_ai_failures=3)
    allowed, _ = cb.should_allow_trading(state, now=NOW + timedelta(minutes=31), cooldown_minutes=30)
    assert allowed
    state = cb.enter_cooldown(state)
    assert state.state == cb.COOLDOWN
    state = cb.record_ai_success(state)
    assert state.state == cb.ACTIVE
    assert state.consecutive_ai_failures == 0


def test_success_resets_failure_count():
    state = cb.record_ai_failure(CircuitBreakerState(user_id="u"), max_failures=3)
    assert state.consecutive_ai_failures == 1
    assert cb.record_ai_success(state).consecutive_ai_failures == 0


def test_consecutive_losses_trip_and_win_resets():
    state = CircuitBreakerState(user_id="u")
    for _ in range(4):
        state = cb.record_trade_outcome(state, won=False, max_losses=5, now=NOW)
    assert state.state == cb.ACTIVE
    assert cb.record_trade_outcome(state, won=True).consecutive_losses == 0
    state = cb.record_trade_outcome(state, won=False, max_losses=5, now=NOW)
    assert state.state == cb.TRIPPED
    assert state.reason == "5 consecutive losses"


def test_functions_do_not_mutate_input():
    state = CircuitBreakerState(user_id="u")
    cb.record_ai_failure(state, max_failures=1)
    assert state.state == cb.ACTIVE

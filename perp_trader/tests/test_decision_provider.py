import httpx
import pytest

from perp_trader.services.decision_provider import (DecisionProviderError, HoldDecisionProvider,
                                                    WebhookDecisionProvider, parse_decision)


def test_parse_open_long():
    decision = parse_decision({"decision": "open_long", "symbol": "ETH", "leverage": "3", "size_usd": 250,
                               "stop_loss": 2900, "take_profit": "3300", "confidence": 0.7, "reasoning": "trend"})
    assert decision.decision == "OPEN_LONG"
    assert decision.is_open
    assert decision.leverage == 3
    assert decision.size_usd == 250.0
    assert decision.take_profit == 3300.0


def test_unknown_decision_becomes_hold():
    decision = parse_decision({"decision": "BUY_EVERYTHING", "symbol": "BTC"})
    assert decision.decision == "HOLD"


def test_open_without_symbol_becomes_hold():
    assert parse_decision({"decision": "OPEN_SHORT"}).decision == "HOLD"


def test_non_object_becomes_hold():
    assert parse_decision(["HOLD"]).decision == "HOLD"


def test_downgrade_keeps_prior_reasoning():
    decision = parse_decision({"decision": "OPEN_LONG", "symbol": "BTC", "size_usd": 10, "reasoning": "breakout"})
    held = decision.downgrade("leverage too high")
    assert held.decision == "HOLD"
    assert held.reasoning == "leverage too high (was OPEN_LONG: breakout)"


@pytest.mark.asyncio
async def test_hold_provider():
    assert (await HoldDecisionProvider().decide({}))["decision"] == "HOLD"


@pytest.mark.asyncio
async def test_webhook_provider_posts_context():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"decision": "HOLD", "reasoning": "wait"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = WebhookDecisionProvider("https://ai.local/decide", client=client)
    answer = await provider.decide({"user_id": "alice"})
    assert answer["reasoning"] == "wait"
    assert seen[0].url == "https://ai.local/decide"
    await provider.aclose()


@pytest.mark.asyncio
async def test_webhook_provider_errors_are_wrapped():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    provider = WebhookDecisionProvider("https://ai.local/decide", client=client)
    with pytest.raises(DecisionProviderError):
        await provider.decide({})
    await provider.aclose()

"""Adapters for the external AI decision source.

The provider receives a JSON-able context (symbols, prices, indicators,
account state, positions) and answers ``{decision, symbol, reasoning,
confidence, ...}``. Everything it returns goes through ``parse_decision``.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from perp_trader.config import settings
from perp_trader.models.trading_models import DECISIONS, TradeDecision

logger = logging.getLogger("decision_provider")


class DecisionProviderError(Exception):
    pass


def _opt_float(value) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def parse_decision(raw: Dict[str, Any]) -> TradeDecision:
    """Validate a provider answer. Anything outside the vocabulary becomes HOLD."""
    if not isinstance(raw, dict):
        logger.warning(f"Decision provider returned non-object {raw!r}; treating as HOLD")
        return TradeDecision(decision="HOLD", reasoning="invalid provider response")

    value = str(raw.get("decision", "")).strip().upper()
    reasoning = str(raw.get("reasoning") or "")
    if value not in DECISIONS:
        logger.warning(f"Unknown decision {raw.get('decision')!r}; treating as HOLD")
        return TradeDecision(decision="HOLD", symbol=raw.get("symbol"), reasoning=reasoning,
                             confidence=_opt_float(raw.get("confidence")), raw=raw)

    symbol = raw.get("symbol")
    if value != "HOLD" and not symbol:
        logger.warning(f"{value} without a symbol; treating as HOLD")
        return TradeDecision(decision="HOLD", reasoning=reasoning, raw=raw)

    leverage = _opt_float(raw.get("leverage"))
    return TradeDecision(
        decision=value,
        symbol=symbol,
        reasoning=reasoning,
        confidence=_opt_float(raw.get("confidence")),
        leverage=int(leverage) if leverage else None,
        size_usd=_opt_float(raw.get("size_usd")),
        stop_loss=_opt_float(raw.get("stop_loss")),
        take_profit=_opt_float(raw.get("take_profit")),
        raw=raw,
    )


class DecisionProvider:
    name = "base"

    async def decide(self, context: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def aclose(self):
        pass


class HoldDecisionProvider(DecisionProvider):
    """Used when no provider is configured; never trades."""
    name = "hold"

    async def decide(self, context: Dict[str, Any]) -> Dict[str, Any]:
        return {"decision": "HOLD", "reasoning": "no decision provider configured", "confidence": 0.0}


class WebhookDecisionProvider(DecisionProvider):
    name = "webhook"

    def __init__(self, url: str, timeout: float = None, client: httpx.AsyncClient = None):
        self.url = url
        self.client = client or httpx.AsyncClient(timeout=timeout or settings.DECISION_PROVIDER_TIMEOUT_SEC)

    async def decide(self, context: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.client.post(self.url, json=context)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DecisionProviderError(f"Decision provider call failed: {e}") from e

    async def aclose(self):
        await self.client.aclose()


def build_decision_provider() -> DecisionProvider:
    if settings.DECISION_PROVIDER_URL:
        return WebhookDecisionProvider(settings.DECISION_PROVIDER_URL)
    logger.warning("DECISION_PROVIDER_URL not set; every cycle will HOLD")
    return HoldDecisionProvider()

import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger("notifier")


class Notifier:
    """Posts trade and risk events to a webhook; logs them when none is set.

    Failures are logged and swallowed so a notification can never block trading.
    """

    def __init__(self, webhook_url: str = "", client: Optional[httpx.AsyncClient] = None):
        self.webhook = webhook_url
        self.client = client or httpx.AsyncClient(timeout=5.0)

    async def _send(self, event: str, payload: Dict[str, Any]):
        msg = {"event": event, **payload}
        if not self.webhook:
            logger.info("Notification: %s", msg)
            return
        try:
            await self.client.post(self.webhook, json=msg)
        except Exception:
            logger.exception("Notifier failed")

    async def notify_trade_opened(self, user_id: str, symbol: str, side: str, size_usd: float, leverage: int,
                                  entry_price: float, stop_loss: Optional[float], take_profit: Optional[float],
                                  confidence: Optional[float] = None):
        await self._send("trade_opened", {
            "user_id": user_id,
            "symbol": symbol,
            "side": side,
            "size_usd": size_usd,
            "leverage": leverage,
            "entry_price": entry_price,
            "stop_loss": stop_loss,
            "take_profit": take_profit,
            "confidence": confidence,
        })

    async def notify_trade_closed(self, user_id: str, symbol: str, side: str, pnl: float, pnl_pct: float):
        await self._send("trade_closed", {
            "user_id": user_id,
            "symbol": symbol,
            "side": side,
            "pnl": pnl,
            "pnl_pct": pnl_pct,
        })

    async def notify_risk_alert(self, user_id: str, kind: str, message: str):
        await self._send("risk_alert", {"user_id": user_id, "type": kind, "message": message})

    async def aclose(self):
        await self.client.aclose()

"""Hyperliquid REST client (info + exchange endpoints).

Reads come in two flavours. Authoritative reads (positions, account state,
``fetch_open_orders``) raise on failure because callers use them to decide
what to delete or cancel. Best-effort reads return a ``BestEffortRead`` with
an empty value and the error attached; they never raise.
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from perp_trader.config import settings
from perp_trader.errors import ExchangeError, OrderRejected, PriceUnavailable, UnknownAsset
from perp_trader.models.trading_models import (AccountState, AssetInfo, AuthoritativeRead, BestEffortRead,
                                               Candle, ExchangePosition, UserCredentials)
from perp_trader.providers.candles import EXCHANGE_INTERVALS, parse_candles
from perp_trader.providers.http_retry import fetch_with_retry
from perp_trader.providers.metadata_cache import AssetMetadataCache
from perp_trader.providers.signing import ActionSigner
from perp_trader.utils.time_utils import lookback_window_ms

logger = logging.getLogger("exchange_rest")


def _to_float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_exchange_position(raw: Dict[str, Any]) -> ExchangePosition:
    pos = raw.get("position", raw)
    leverage = pos.get("leverage") or {}
    liq = pos.get("liquidationPx")
    return ExchangePosition(
        symbol=pos["coin"],
        szi=_to_float(pos.get("szi")),
        entry_price=_to_float(pos.get("entryPx")),
        leverage=int(_to_float(leverage.get("value") if isinstance(leverage, dict) else leverage, 1)),
        unrealized_pnl=_to_float(pos.get("unrealizedPnl")),
        position_value=_to_float(pos.get("positionValue")),
        liquidation_price=_to_float(liq) if liq is not None else None,
    )


def parse_account_state(state: Dict[str, Any]) -> AccountState:
    margin = state.get("marginSummary") or state.get("crossMarginSummary") or {}
    withdrawable = _to_float(state.get("withdrawable"))
    account_value = _to_float(margin.get("accountValue"), withdrawable)
    return AccountState(
        account_value=account_value,
        total_margin_used=_to_float(margin.get("totalMarginUsed")),
        withdrawable=withdrawable,
        positions=[parse_exchange_position(p) for p in state.get("assetPositions") or []],
    )


class ExchangeClient:
    def __init__(
        self,
        http: Optional[httpx.AsyncClient] = None,
        metadata_ttl: float = None,
        clock: Callable[[], float] = time.monotonic,
        sleep=asyncio.sleep,
        signer_factory: Callable[[str], Any] = ActionSigner,
        max_retries: int = None,
        timeout: float = None,
    ):
        self.http = http or httpx.AsyncClient()
        self._owns_http = http is None
        self.sleep = sleep
        self.max_retries = max_retries
        self.timeout = timeout
        self._signer_factory = signer_factory
        self._signers: Dict[str, Any] = {}
        self.metadata_cache = AssetMetadataCache(self._fetch_metadata, ttl=metadata_ttl, clock=clock)

    @staticmethod
    def base_url(testnet: bool) -> str:
        return settings.EXCHANGE_TESTNET_URL if testnet else settings.EXCHANGE_MAINNET_URL

    @staticmethod
    def ws_url(testnet: bool) -> str:
        return settings.EXCHANGE_TESTNET_WS_URL if testnet else settings.EXCHANGE_MAINNET_WS_URL

    async def aclose(self):
        if self._owns_http:
            await self.http.aclose()

    async def _post(self, path: str, payload: Dict[str, Any], testnet: bool) -> Any:
        response = await fetch_with_retry(
            self.http,
            "POST",
            f"{self.base_url(testnet)}{path}",
            json=payload,
            max_retries=self.max_retries,
            timeout=self.timeout,
            sleep=self.sleep,
        )
        try:
            return response.json()
        except ValueError as e:
            raise ExchangeError(f"Invalid JSON from {path}: {response.text[:200]}") from e

    async def info(self, payload: Dict[str, Any], testnet: bool) -> Any:
        return await self._post("/info", payload, testnet)

    # ---- metadata -------------------------------------------------------

    async def _fetch_metadata(self, testnet: bool) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        data = await self.info({"type": "metaAndAssetCtxs"}, testnet)
        if not isinstance(data, list) or len(data) < 2:
            raise ExchangeError(f"Unexpected metaAndAssetCtxs response: {str(data)[:200]}")
        meta, contexts = data[0], data[1]
        return meta.get("universe", []), contexts

    async def get_asset_metadata(self, testnet: bool):
        """(universe, contexts) for the network, served from the TTL cache."""
        entry = await self.metadata_cache.get(testnet)
        return entry.universe, entry.contexts

    async def get_asset_info(self, symbol: str, testnet: bool) -> AssetInfo:
        universe, _ = await self.get_asset_metadata(testnet)
        for index, asset in enumerate(universe):
            if asset.get("name") == symbol:
                return AssetInfo(
                    asset_id=index,
                    sz_decimals=int(asset.get("szDecimals", 0)),
                    max_leverage=int(asset.get("maxLeverage", 1)),
                )
        raise UnknownAsset(symbol, testnet)

    # ---- prices ---------------------------------------------------------

    async def get_all_mids(self, testnet: bool) -> Dict[str, float]:
        mids = await self.info({"type": "allMids"}, testnet)
        return {symbol: _to_float(px) for symbol, px in (mids or {}).items()}

    async def get_market_price(self, symbol: str, testnet: bool) -> float:
        mids = await self.get_all_mids(testnet)
        price = mids.get(symbol)
        if not price:
            raise PriceUnavailable(symbol)
        return price

    async def get_candles(self, symbol: str, interval: str = None, limit: int = None, testnet: bool = False,
                          end_ms: int = None) -> List[Candle]:
        """Raw exchange candles. Intervals the exchange does not serve are built by ``MarketDataService``."""
        interval = interval or settings.CANDLE_INTERVAL
        limit = limit or settings.CANDLE_LIMIT
        if interval not in EXCHANGE_INTERVALS:
            raise ValueError(f"Exchange does not serve {interval} candles")
        start_ms, end_ms = lookback_window_ms(interval, limit, end_ms)
        raw = await self.info({
            "type": "candleSnapshot",
            "req": {"coin": symbol, "interval": interval, "startTime": start_ms, "endTime": end_ms},
        }, testnet)
        candles = parse_candles(raw if isinstance(raw, list) else [])
        return candles[-limit:]

    # ---- account --------------------------------------------------------

    async def get_account_state(self, address: str, testnet: bool) -> AccountState:
        state = await self.info({"type": "clearinghouseState", "user": address}, testnet)
        if not isinstance(state, dict):
            raise ExchangeError(f"Unexpected clearinghouseState response: {str(state)[:200]}")
        return parse_account_state(state)

    async def get_user_positions(self, address: str, testnet: bool) -> AuthoritativeRead:
        """Positions as reported by the exchange. Raises on any failure."""
        state = await self.get_account_state(address, testnet)
        return AuthoritativeRead(value=state.positions)

    async def fetch_open_orders(self, address: str, testnet: bool, frontend: bool = True) -> List[Dict[str, Any]]:
        kind = "frontendOpenOrders" if frontend else "openOrders"
        orders = await self.info({"type": kind, "user": address}, testnet)
        if not isinstance(orders, list):
            raise ExchangeError(f"Unexpected {kind} response: {str(orders)[:200]}")
        return orders

    async def _best_effort_orders(self, address: str, testnet: bool, frontend: bool) -> BestEffortRead:
        try:
            return BestEffortRead(value=await self.fetch_open_orders(address, testnet, frontend))
        except Exception as e:
            logger.warning(f"Open orders read failed for {address}: {e}")
            return BestEffortRead(value=[], ok=False, error=str(e))

    async def get_user_open_orders(self, address: str, testnet: bool) -> BestEffortRead:
        return await self._best_effort_orders(address, testnet, frontend=False)

    async def get_frontend_open_orders(self, address: str, testnet: bool) -> BestEffortRead:
        return await self._best_effort_orders(address, testnet, frontend=True)

    # ---- signed actions -------------------------------------------------

    def _signer(self, account: UserCredentials):
        signer = self._signers.get(account.private_key)
        if signer is None:
            signer = self._signer_factory(account.private_key)
            self._signers[account.private_key] = signer
        return signer

    async def post_action(self, account: UserCredentials, action: Dict[str, Any], testnet: bool) -> Dict[str, Any]:
        """Sign once and post; retries resend the identical nonce."""
        payload = self._signer(account).build_payload(action, testnet)
        result = await self._post("/exchange", payload, testnet)
        if not isinstance(result, dict):
            raise ExchangeError(f"Unexpected exchange response: {str(result)[:200]}")
        if result.get("status") == "err":
            raise OrderRejected(str(result.get("response")))
        return result

    async def set_leverage(self, account: UserCredentials, symbol: str, leverage: int, testnet: bool) -> bool:
        """Best effort: failures are logged and the existing leverage stays in force."""
        try:
            info = await self.get_asset_info(symbol, testnet)
            action = {
                "type": "updateLeverage",
                "asset": info.asset_id,
                "isCross": True,
                "leverage": int(min(leverage, info.max_leverage)),
            }
            await self.post_action(account, action, testnet)
            logger.info(f"Leverage for {symbol} set to {action['leverage']}x")
            return True
        except Exception as e:
            logger.warning(f"Failed to set leverage for {symbol} to {leverage}x, continuing: {e}")
            return False

"""Streamed market data routes."""
from dataclasses import asdict
from fastapi import APIRouter, Depends, HTTPException
from perp_trader.api.dependencies.services import ServiceRegistry, get_service_registry

router = APIRouter(prefix="/market", tags=["market"])

@router.get("/candles/{symbol}")
async def latest_candle(symbol: str, registry: ServiceRegistry = Depends(get_service_registry)):
    stream = registry.get("market_stream")
    candle = stream.latest.get(symbol)
    if candle is None:
        raise HTTPException(status_code=404, detail=f"No streamed candle for {symbol}")
    return asdict(candle)

__all__ = ["router"]

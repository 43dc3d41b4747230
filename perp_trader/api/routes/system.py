"""System & metadata routes (root, health, status, config, metrics)."""
from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from perp_trader.config import settings
from perp_trader.api.dependencies.services import ServiceRegistry, get_service_registry
from perp_trader.api.state.startup import get_startup_events
from perp_trader.utils.time_utils import utc_now

router = APIRouter()

@router.get("/")
async def root(registry: ServiceRegistry = Depends(get_service_registry)):
    return {
        "name": "Perp Trader",
        "version": "1.0.0",
        "description": "Automated perpetual futures trading core",
        "services": registry.names(),
        "auto_start": settings.AUTO_START_SCHEDULERS,
        "endpoints": {
            "health": "/health",
            "status": "/status",
            "startup_events": "/startup/log",
            "metrics": "/metrics",
            "docs": "/docs",
            "control": "/control/",
            "market": "/market/",
        },
    }

@router.get("/health")
async def health():
    return {"status": "healthy", "timestamp": utc_now().isoformat()}

@router.get("/status")
async def status(registry: ServiceRegistry = Depends(get_service_registry)):
    return registry.all_status()

@router.get("/startup/log")
async def startup_log(limit: int = 100):
    return {"events": get_startup_events(limit)}

@router.get("/config")
async def get_config():
    return {
        "trading_cycle_interval_sec": settings.TRADING_CYCLE_INTERVAL_SEC,
        "reconcile_interval_sec": settings.RECONCILE_INTERVAL_SEC,
        "trading_lock_ttl_sec": settings.TRADING_LOCK_TTL_SEC,
        "candle_interval": settings.CANDLE_INTERVAL,
        "candle_limit": settings.CANDLE_LIMIT,
        "close_slippage": settings.CLOSE_SLIPPAGE,
        "default_stop_loss_pct": settings.DEFAULT_STOP_LOSS_PCT,
        "market_stream_enabled": settings.MARKET_STREAM_ENABLE,
        "decision_provider_configured": bool(settings.DECISION_PROVIDER_URL),
        "app_port": settings.APP_PORT,
    }

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

__all__ = ["router"]

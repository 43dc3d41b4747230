"""Trading control routes: schedulers, manual cycles, sync and recovery."""
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from perp_trader.api.dependencies.services import ServiceRegistry, get_service_registry
from perp_trader.api.dependencies.auth import require_control_token
from perp_trader.errors import ExchangeError, LockHeld

router = APIRouter(prefix="/control", tags=["trading-control"], dependencies=[Depends(require_control_token)])

SCHEDULERS = ("trading_scheduler", "reconcile_scheduler")

class NuclearCloseRequest(BaseModel):
    user_id: str
    symbol: str

@router.post("/start")
async def start_trading(registry: ServiceRegistry = Depends(get_service_registry)):
    started = []
    for name in SCHEDULERS:
        scheduler = registry.get(name)
        await scheduler.start()
        started.append(name)
    return {"status": "started", "services": started}

@router.post("/stop")
async def stop_trading(registry: ServiceRegistry = Depends(get_service_registry)):
    stopped = []
    for name in SCHEDULERS:
        scheduler = registry.get(name)
        await scheduler.stop()
        stopped.append(name)
    return {"status": "stopped", "services": stopped}

@router.post("/cycle/{user_id}")
async def run_cycle(user_id: str, registry: ServiceRegistry = Depends(get_service_registry)):
    db = registry.get("database")
    config = await db.get_bot_config(user_id)
    if config is None:
        raise HTTPException(status_code=404, detail=f"No bot config for {user_id}")
    report = await registry.get("orchestrator").run_cycle(config)
    return report.to_dict()

@router.post("/reconcile")
async def reconcile(registry: ServiceRegistry = Depends(get_service_registry)):
    report = await registry.get("reconciler").reconcile_all()
    return report.to_dict()

@router.post("/nuclear-close")
async def nuclear_close(request: NuclearCloseRequest, registry: ServiceRegistry = Depends(get_service_registry)):
    """Runs under the user's trading lock so it cannot interleave with a cycle."""
    db = registry.get("database")
    creds = await db.get_credentials(request.user_id)
    if creds is None:
        raise HTTPException(status_code=404, detail=f"No credentials for {request.user_id}")
    executor = registry.get("executor")
    try:
        async with registry.get("trading_lock").hold(request.user_id):
            result = await executor.nuclear_close_position(creds, request.symbol, creds.testnet)
            if result.outcome == "closed":
                await db.delete_position(request.user_id, request.symbol)
    except LockHeld as e:
        raise HTTPException(status_code=409, detail=f"Trading cycle in progress: {e}")
    except ExchangeError as e:
        raise HTTPException(status_code=502, detail=f"Nuclear close failed: {e}")
    return {
        "symbol": result.symbol,
        "outcome": result.outcome,
        "cancelled_count": result.cancelled_count,
        "tx_ref": result.tx_ref,
    }

__all__ = ["router"]

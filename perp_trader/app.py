import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from perp_trader.config import settings

from perp_trader.persistence.db import Database
from perp_trader.providers.exchange_rest import ExchangeClient
from perp_trader.providers.market_ws import CandleStream
from perp_trader.execution.order_executor import OrderExecutor
from perp_trader.services.decision_provider import build_decision_provider
from perp_trader.services.market_data import MarketDataService
from perp_trader.services.notifier import Notifier
from perp_trader.services.position_reconciler import PositionReconciler
from perp_trader.services.scheduler import RecurringScheduler
from perp_trader.services.trading_cycle import TradingCycleOrchestrator
from perp_trader.services.trading_lock import TradingLock
from perp_trader.api.router import api_router
from perp_trader.api.dependencies.services import service_registry
from perp_trader.api.state.startup import record_startup_event
from perp_trader.utils.logging_config import configure_logging

logger = logging.getLogger("app")


def _bootstrap_services():
    db = Database(settings.DATABASE_URL)
    client = ExchangeClient()
    executor = OrderExecutor(client)
    notifier = Notifier(settings.NOTIFIER_WEBHOOK)
    lock = TradingLock(db)
    orchestrator = TradingCycleOrchestrator(
        db,
        client,
        executor,
        build_decision_provider(),
        lock=lock,
        market_data=MarketDataService(client),
        notifier=notifier,
    )
    reconciler = PositionReconciler(db, client)
    created = {
        "database": db,
        "exchange": client,
        "executor": executor,
        "notifier": notifier,
        "trading_lock": lock,
        "orchestrator": orchestrator,
        "reconciler": reconciler,
        "trading_scheduler": RecurringScheduler("trading_cycle", settings.TRADING_CYCLE_INTERVAL_SEC,
                                                orchestrator.run_all),
        "reconcile_scheduler": RecurringScheduler("position_sync", settings.RECONCILE_INTERVAL_SEC,
                                                  reconciler.reconcile_all),
        "market_stream": None,
    }
    if settings.MARKET_STREAM_ENABLE:
        symbols = [s.strip() for s in settings.MARKET_STREAM_SYMBOLS.split(",") if s.strip()]
        created["market_stream"] = CandleStream(symbols, testnet=settings.MARKET_STREAM_TESTNET)
    for name, svc in created.items():
        service_registry.register(name, svc)
    return created


async def _shutdown(created):
    for name in ("trading_scheduler", "reconcile_scheduler", "market_stream"):
        service = created.get(name)
        if service is None:
            continue
        try:
            await service.stop()
            logger.info(f"{name} stopped")
        except Exception as e:
            logger.error(f"Failed to stop {name}: {e}")
    await created["orchestrator"].decision_provider.aclose()
    await created["notifier"].aclose()
    await created["exchange"].aclose()
    await created["database"].disconnect()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager."""
    configure_logging()
    logger.info("Starting Perp Trader...")

    created = _bootstrap_services()
    db = created["database"]
    try:
        await db.connect()
        logger.info("Database initialized successfully")
        record_startup_event("database", "connected")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        record_startup_event("database_error", "connect_failed", error=str(e))

    if settings.AUTO_START_SCHEDULERS:
        if db.connected:
            await created["trading_scheduler"].start()
            await created["reconcile_scheduler"].start()
            record_startup_event("auto_start", "schedulers_started")
        else:
            logger.warning("AUTO_START_SCHEDULERS enabled but database is unavailable")
            record_startup_event("auto_start_skip", "schedulers_not_started", reason="database_unavailable")

    stream = created["market_stream"]
    if stream is not None:
        await stream.start()
        record_startup_event("market_stream", "started", symbols=stream.symbols)

    yield

    logger.info("Shutting down trading services...")
    await _shutdown(created)


app = FastAPI(
    title="Perp Trader",
    description="Automated perpetual futures trading core",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(api_router)

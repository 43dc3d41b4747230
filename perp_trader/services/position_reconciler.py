"""Keeps local positions in line with what the exchange reports.

Positions closed on the exchange (stop loss, take profit, liquidation,
manual close) are deleted locally. A failed exchange read means "unknown":
the user is skipped and nothing is deleted. Positions are never created here.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Tuple

from perp_trader.models.trading_models import ExchangePosition
from perp_trader.persistence.db import Database
from perp_trader.providers.exchange_rest import ExchangeClient
from perp_trader.services.metrics import reconciled_positions_counter
from perp_trader.services.position_converter import active_symbols, pnl_pct

logger = logging.getLogger("position_reconciler")


@dataclass
class ReconcileReport:
    users_checked: int = 0
    users_skipped: List[str] = field(default_factory=list)
    deleted: List[Tuple[str, str]] = field(default_factory=list)
    refreshed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "users_checked": self.users_checked,
            "users_skipped": self.users_skipped,
            "deleted": [{"user_id": u, "symbol": s} for u, s in self.deleted],
            "refreshed": self.refreshed,
            "errors": self.errors,
        }


async def prune_stale_positions(db: Database, user_id: str, exchange_positions: List[ExchangePosition]) -> List[str]:
    """Delete local positions the exchange no longer reports with a non-zero size.

    ``exchange_positions`` must come from a successful authoritative read.
    """
    live = set(active_symbols(exchange_positions))
    deleted = []
    for position in await db.get_positions(user_id):
        if position.symbol in live:
            continue
        if await db.delete_position(user_id, position.symbol):
            deleted.append(position.symbol)
            reconciled_positions_counter.inc()
            logger.info(f"Removed stale {position.symbol} {position.side} position for {user_id}")
    return deleted


class PositionReconciler:
    def __init__(self, db: Database, client: ExchangeClient):
        self.db = db
        self.client = client

    async def refresh_positions(self, user_id: str, exchange_positions: List[ExchangePosition]) -> int:
        by_symbol = {p.symbol: p for p in exchange_positions if p.szi != 0}
        refreshed = 0
        for position in await self.db.get_positions(user_id):
            live = by_symbol.get(position.symbol)
            if live is None:
                continue
            mark = abs(live.position_value) / live.size if live.size else position.current_price
            if await self.db.update_position_market(
                user_id,
                position.symbol,
                current_price=mark,
                unrealized_pnl=live.unrealized_pnl,
                unrealized_pnl_pct=pnl_pct(live.unrealized_pnl, live.position_value),
                liquidation_price=live.liquidation_price,
            ):
                refreshed += 1
        return refreshed

    async def reconcile_user(self, user_id: str) -> Tuple[List[str], int]:
        """Raises when credentials are missing or the exchange read fails."""
        creds = await self.db.get_credentials(user_id)
        if creds is None:
            raise LookupError(f"No credentials for {user_id}")
        read = await self.client.get_user_positions(creds.wallet_address, creds.testnet)
        deleted = await prune_stale_positions(self.db, user_id, read.value)
        refreshed = await self.refresh_positions(user_id, read.value)
        return deleted, refreshed

    async def reconcile_all(self) -> ReconcileReport:
        report = ReconcileReport()
        for config in await self.db.get_active_bot_configs():
            user_id = config.user_id
            try:
                deleted, refreshed = await self.reconcile_user(user_id)
            except Exception as e:
                logger.warning(f"Skipping position sync for {user_id}: {e}")
                report.users_skipped.append(user_id)
                report.errors.append(f"{user_id}: {e}")
                continue
            report.users_checked += 1
            report.deleted.extend((user_id, symbol) for symbol in deleted)
            report.refreshed += refreshed
        if report.deleted:
            logger.info(f"Position sync removed {len(report.deleted)} stale position(s)")
        return report

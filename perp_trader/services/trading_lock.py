"""Per-user exclusive lock for trading cycles.

A lock row lives for ``TRADING_LOCK_TTL_SEC`` (two minutes). Expired rows are
ignored by ``acquire``, so a crashed cycle can block its user for at most one
TTL. ``release`` only removes the row when the caller still owns it.
"""
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, TypeVar

from perp_trader.config import settings
from perp_trader.errors import LockHeld
from perp_trader.models.trading_models import LockRecord
from perp_trader.persistence.db import Database
from perp_trader.utils.time_utils import utc_now

logger = logging.getLogger("trading_lock")

T = TypeVar("T")


class TradingLock:
    def __init__(self, db: Database, ttl_seconds: int = None, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.ttl = timedelta(seconds=settings.TRADING_LOCK_TTL_SEC if ttl_seconds is None else ttl_seconds)
        self._clock = clock

    async def acquire(self, user_id: str) -> LockRecord:
        now = self._clock()
        record = LockRecord(
            user_id=user_id,
            lock_id=uuid.uuid4().hex,
            acquired_at=now,
            expires_at=now + self.ttl,
        )
        holder = await self.db.try_insert_lock(record, now)
        if holder is not None:
            raise LockHeld(user_id, expires_at=holder.expires_at)
        logger.debug(f"Lock {record.lock_id} acquired for {user_id}")
        return record

    async def release(self, user_id: str, lock_id: str) -> bool:
        released = await self.db.delete_lock(user_id, lock_id)
        if not released:
            logger.warning(f"Lock {lock_id} for {user_id} was not held at release (expired or replaced)")
        return released

    async def reap_expired(self) -> int:
        reaped = await self.db.delete_expired_locks(self._clock())
        if reaped:
            logger.info(f"Reaped {reaped} expired trading locks")
        return reaped

    @asynccontextmanager
    async def hold(self, user_id: str):
        """Acquire for the duration of the block; released on every exit path."""
        record = await self.acquire(user_id)
        try:
            yield record
        finally:
            try:
                await self.release(user_id, record.lock_id)
            except Exception:
                logger.exception(f"Failed to release lock for {user_id}; it expires at {record.expires_at}")

    async def run_exclusive(self, user_id: str, fn: Callable[[LockRecord], Awaitable[T]]) -> T:
        async with self.hold(user_id) as record:
            return await fn(record)

    async def current(self, user_id: str) -> Optional[LockRecord]:
        record = await self.db.get_lock(user_id)
        if record and record.expires_at <= self._clock():
            return None
        return record

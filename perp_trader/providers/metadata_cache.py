"""Short-lived cache of the exchange asset universe.

One entry per client, keyed by network. The entry is an immutable snapshot and
is swapped wholesale on refresh, so readers never observe a half-written
universe. Concurrent refreshes for the same network collapse into one fetch.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from perp_trader.config import settings

logger = logging.getLogger("metadata_cache")

Fetcher = Callable[[bool], Awaitable[Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]]]


@dataclass(frozen=True)
class AssetMetadataEntry:
    testnet: bool
    universe: Tuple[Dict[str, Any], ...]
    contexts: Tuple[Dict[str, Any], ...]
    fetched_at: float

    def is_fresh(self, testnet: bool, now: float, ttl: float) -> bool:
        return self.testnet == testnet and (now - self.fetched_at) < ttl


class AssetMetadataCache:
    def __init__(self, fetcher: Fetcher, ttl: float = None, clock: Callable[[], float] = time.monotonic):
        self._fetcher = fetcher
        self.ttl = settings.METADATA_CACHE_TTL_SEC if ttl is None else ttl
        self._clock = clock
        self._entry: Optional[AssetMetadataEntry] = None
        self._lock = asyncio.Lock()
        self.fetch_count = 0

    @property
    def entry(self) -> Optional[AssetMetadataEntry]:
        return self._entry

    async def get(self, testnet: bool) -> AssetMetadataEntry:
        entry = self._entry
        if entry is not None and entry.is_fresh(testnet, self._clock(), self.ttl):
            return entry
        async with self._lock:
            # another waiter may have refreshed while we queued
            entry = self._entry
            if entry is not None and entry.is_fresh(testnet, self._clock(), self.ttl):
                return entry
            universe, contexts = await self._fetcher(testnet)
            self.fetch_count += 1
            entry = AssetMetadataEntry(
                testnet=testnet,
                universe=tuple(universe),
                contexts=tuple(contexts),
                fetched_at=self._clock(),
            )
            self._entry = entry
            logger.debug(f"Asset metadata refreshed ({'testnet' if testnet else 'mainnet'}, {len(entry.universe)} assets)")
            return entry

    def invalidate(self):
        self._entry = None

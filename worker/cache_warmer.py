# background worker for cache warming and maintenance
# runs on the api's event loop: checks cache health, sweeps expired
# in-memory entries and re-warms the common calculator scenarios

import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional

from service.cache import CacheManager
from service.calculator import CalculationCache

logger = logging.getLogger(__name__)

class CacheWarmer:
    """
    background worker that keeps hot calculator results cached
    and notices when the cache backend goes away
    """

    def __init__(self, calc_cache: CalculationCache, cache: CacheManager, interval_seconds: int = 3600):
        """
        initialize cache warmer

        args:
            calc_cache: calculation result cache to warm
            cache: cache manager (health checks + expiry sweeps)
            interval_seconds: how often to run (default 1 hour)
        """
        self.calc_cache = calc_cache
        self.cache = cache
        self.interval = interval_seconds
        self.running = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Task:
        """start the background worker on the running loop"""
        self.running = True
        self._task = asyncio.create_task(self.run())
        logger.info("🔄 cache warmer started (interval: %ss)", self.interval)
        return self._task

    async def run(self):
        while self.running:
            try:
                await self.run_once()
            except Exception as e:
                logger.warning("⚠️  cache warming error: %s", e)

            await asyncio.sleep(self.interval)

    async def stop(self):
        """stop the background worker"""
        self.running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("🛑 cache warmer stopped")

    async def run_once(self) -> Dict[str, int]:
        """
        one maintenance pass

        returns:
            counts of what was done (purged entries, warmed scenarios)
        """
        if not self.cache.enabled:
            logger.debug("⏸️  cache disabled, nothing to warm")
            return {"purged": 0, "warmed": 0}

        start_time = datetime.now()

        if not await self.cache.ping():
            # degraded, not fatal - requests keep working without a cache
            logger.warning("cache backend (%s) unreachable, skipping warm-up", self.cache.backend_name)
            return {"purged": 0, "warmed": 0}

        purged = await self.cache.purge_expired()
        warmed = await self.calc_cache.warm_cache()

        elapsed = (datetime.now() - start_time).total_seconds()
        logger.info("✅ purged %d expired entries, warmed %d calculator results in %.2fs",
                    purged, warmed, elapsed)
        return {"purged": purged, "warmed": warmed}

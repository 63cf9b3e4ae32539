from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from .consents import ConsentService
from .sync_engine import SyncEngine

logger = logging.getLogger("banklink.backend.housekeeping")


class Housekeeper:
    """Periodic background jobs: consent expiry sweep and incremental sync."""

    def __init__(
        self,
        consents: ConsentService,
        engine: SyncEngine,
        *,
        sweep_interval: int = 3600,
        sync_interval: int = 0,
    ):
        self._consents = consents
        self._engine = engine
        self.sweep_interval = sweep_interval
        self.sync_interval = sync_interval
        self._tasks: List[asyncio.Task] = []
        self._stopping = False

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping = False
        if self.sweep_interval > 0:
            self._tasks.append(asyncio.create_task(self._loop("expiry-sweep", self.sweep_interval, self.run_sweep)))
        if self.sync_interval > 0:
            self._tasks.append(
                asyncio.create_task(self._loop("incremental-sync", self.sync_interval, self.run_incremental_sync))
            )

    async def stop(self) -> None:
        self._stopping = True
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def run_sweep(self) -> int:
        return self._consents.sweep_expired()

    async def run_incremental_sync(self) -> int:
        results = await self._engine.sync_all_active()
        failed = [consent_id for consent_id, result in results.items() if not result.success]
        if failed:
            logger.warning("Incremental sync failed for %d of %d consents", len(failed), len(results))
        return len(results)

    async def _loop(self, name: str, interval: int, job: Callable[[], Awaitable[Optional[int]]]) -> None:
        while not self._stopping:
            try:
                count = await job()
                if count:
                    logger.info("%s processed %d items", name, count)
            except Exception:  # noqa: BLE001
                logger.exception("%s job failed", name)
            await asyncio.sleep(interval)

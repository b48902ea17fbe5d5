import asyncio
import logging

from scheduler.worker_pool import WorkerPool

logger = logging.getLogger("automation_engine")


class SchedulerLoop:
    def __init__(self, pool: WorkerPool, interval_seconds: int = 30):
        self.pool = pool
        self.interval = interval_seconds
        self.running = False

    async def start(self):
        """Starts the job polling loop."""
        if self.running:
            return

        self.running = True
        logger.info(f"Scheduler started (every {self.interval}s).")

        while self.running:
            try:
                await self._tick()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}")

            await asyncio.sleep(self.interval)

    def stop(self):
        self.running = False
        logger.info("Scheduler stopped.")

    async def _tick(self):
        """Process one tick of the scheduler."""
        stats = await self.pool.run_once()
        if stats["due"]:
            logger.info(f"Tick: {stats['claimed']} claimed, {stats['requeued']} requeued, {stats['failed']} failed")

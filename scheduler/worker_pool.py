import asyncio
import logging
import traceback
from typing import Dict

from executor.dag_executor import DagExecutor
from models.job import AutomationJob
from scheduler.job_scheduler import JobScheduler

logger = logging.getLogger("automation_engine")


class WorkerPool:
    """
    One poll cycle: recover stale claims, fetch a batch of due jobs and work
    them with `worker_count` concurrent workers. A job is only executed by
    the worker whose claim succeeded.

    Store calls are blocking, so they run in threads, and every job is driven
    on its own thread with its own event loop. Workers then overlap on store
    round-trips as well as on dispatcher I/O.
    """

    def __init__(self, scheduler: JobScheduler, executor: DagExecutor, worker_count: int = 4):
        self.scheduler = scheduler
        self.executor = executor
        self.worker_count = max(1, worker_count)

    async def run_once(self) -> Dict[str, int]:
        stats = {"released": 0, "due": 0, "claimed": 0, "skipped": 0, "completed": 0, "requeued": 0, "failed": 0}
        try:
            stats["released"] = await asyncio.to_thread(self.scheduler.release_stale)
            jobs = await asyncio.to_thread(self.scheduler.due_jobs)
        except Exception as e:
            logger.error(f"Could not fetch due jobs: {e}")
            return stats

        stats["due"] = len(jobs)
        if not jobs:
            return stats

        queue: asyncio.Queue = asyncio.Queue()
        for job in jobs:
            queue.put_nowait(job)

        async def worker(worker_id: int):
            while True:
                try:
                    job = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                await self._process(worker_id, job, stats)

        await asyncio.gather(*(worker(i) for i in range(min(self.worker_count, len(jobs)))))
        logger.info(f"Poll cycle done: {stats}")
        return stats

    async def _process(self, worker_id: int, job: AutomationJob, stats: Dict[str, int]) -> None:
        try:
            if not await asyncio.to_thread(self.scheduler.claim, job):
                stats["skipped"] += 1
                return
        except Exception as e:
            logger.error(f"[worker-{worker_id}] Claim failed for job {job.id}: {e}")
            stats["skipped"] += 1
            return

        stats["claimed"] += 1
        logger.debug(f"[worker-{worker_id}] Running job {job.id} for run {job.run_id}")
        try:
            await asyncio.to_thread(self._drive_job, job)
            stats["completed"] += 1
        except Exception as e:
            logger.error(f"[worker-{worker_id}] Job {job.id} crashed: {e}")
            logger.error(traceback.format_exc())
            await asyncio.to_thread(self._recover, job, e, stats)

    def _drive_job(self, job: AutomationJob) -> None:
        asyncio.run(self.executor.drive(job.run_id, job))

    def _recover(self, job: AutomationJob, error: Exception, stats: Dict[str, int]) -> None:
        try:
            if self.executor.recover(job, error):
                stats["requeued"] += 1
            else:
                stats["failed"] += 1
        except Exception as e:
            # the claim lease will hand the job back once the store recovers
            logger.error(f"Could not record failure of job {job.id}: {e}")

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from models.job import AutomationJob
from storage.base_store import AutomationStore
from utils.retry import RetryManager
from utils.time_utils import utcnow

logger = logging.getLogger("automation_engine")


class JobScheduler:
    """
    Thin policy layer over the job table: what is due, who owns it, and what
    happens to it after a failure. The claim is the only lock in the system.
    """

    def __init__(
        self,
        store: AutomationStore,
        retry: Optional[RetryManager] = None,
        clock: Callable[[], datetime] = utcnow,
        batch_size: int = 50,
        claim_lease_seconds: int = 900,
    ):
        self.store = store
        self.retry = retry or RetryManager()
        self.clock = clock
        self.batch_size = batch_size
        self.claim_lease = timedelta(seconds=claim_lease_seconds)

    def schedule(self, run_id: str, node_id: str, execute_at: datetime, attempts: int = 0) -> AutomationJob:
        job = AutomationJob(run_id=run_id, node_id=node_id, execute_at=execute_at,
                            attempts=attempts, created_at=self.clock())
        self.store.insert_job(job)
        logger.debug(f"Scheduled job {job.id} for run {run_id} at {execute_at.isoformat()}")
        return job

    def due_jobs(self) -> List[AutomationJob]:
        return self.store.list_due_jobs(self.clock(), self.batch_size)

    def claim(self, job: AutomationJob) -> bool:
        claimed = self.store.claim_job(job.id, self.clock())
        if not claimed:
            logger.debug(f"Job {job.id} already claimed elsewhere")
        return claimed

    def complete(self, job: AutomationJob) -> None:
        self.store.complete_job(job.id, self.clock())

    def requeue(self, job: AutomationJob, error: str) -> Optional[datetime]:
        """
        Puts a claimed job back with attempts+1 and a backed-off execute_at.
        Returns the new execute_at, or None once attempts are exhausted.
        """
        attempts = job.attempts + 1
        if not self.retry.should_retry(attempts):
            return None

        execute_at = self.clock() + self.retry.backoff(attempts)
        self.store.requeue_job(job.id, execute_at, attempts, error)
        logger.warning(f"Job {job.id} requeued (attempt {attempts}/{self.retry.max_attempts}) "
                       f"for {execute_at.isoformat()}: {error}")
        return execute_at

    def fail(self, job: AutomationJob, error: str) -> None:
        self.store.fail_job(job.id, error, self.clock())
        logger.error(f"Job {job.id} failed permanently: {error}")

    def release_stale(self) -> int:
        return self.store.release_stale_claims(self.clock() - self.claim_lease)

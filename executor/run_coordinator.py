import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from executor.errors import AutomationError, RunNotFoundError
from models.execution_log import AutomationLog, LogLevel
from models.job import AutomationJob
from models.run import DEFAULT_MAX_RUNTIME, AutomationRun, RunStatus
from storage.base_store import AutomationStore
from utils.time_utils import utcnow

logger = logging.getLogger("automation_engine")


class RunCoordinator:
    """
    Owns the AutomationRun state machine:

        pending -> running -> (waiting <-> running)* -> completed | failed | cancelled

    Every transition is a compare-and-set against the (status, current node,
    step count) the caller last saw. A method returns the new run on success
    and None when the stored run moved on in the meantime (another worker,
    or a cancel); the caller must then stop touching the run.
    """

    def __init__(
        self,
        store: AutomationStore,
        clock: Callable[[], datetime] = utcnow,
        max_runtime: timedelta = DEFAULT_MAX_RUNTIME,
    ):
        self.store = store
        self.clock = clock
        self.max_runtime = max_runtime

    def _transition(
        self,
        run: AutomationRun,
        target: RunStatus,
        job: Optional[AutomationJob] = None,
        **changes: Any,
    ) -> Optional[AutomationRun]:
        if run.status != target and not run.can_transition(target):
            logger.warning(f"Run {run.id}: refusing transition {run.status.value} -> {target.value}")
            return None

        updated = run.model_copy(deep=True, update={"status": target, **changes})
        committed = self.store.commit_run(
            updated,
            expected_status=run.status,
            expected_node_id=run.current_node_id,
            expected_steps=run.steps_completed,
            job=job,
        )
        if not committed:
            logger.info(f"Run {run.id} changed in the store; dropping stale {target.value} update")
            return None
        return updated

    def log(
        self,
        run_id: str,
        message: str,
        level: LogLevel = LogLevel.INFO,
        node_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.store.append_log(AutomationLog(
            run_id=run_id,
            node_id=node_id,
            level=level,
            message=message,
            data=data or {},
            created_at=self.clock(),
        ))

    # --- lifecycle ---

    def start(self, run: AutomationRun, job_id: Optional[str] = None) -> Optional[AutomationRun]:
        now = self.clock()
        started = self._transition(run, RunStatus.RUNNING, started_at=now, deadline=now + self.max_runtime,
                                   active_job_id=job_id)
        if started:
            logger.info(f"Run {run.id} started (workflow {run.workflow_id}, contact {run.contact_id})")
            self.log(run.id, "Run started", node_id=run.current_node_id)
        return started

    def resume(self, run: AutomationRun, job_id: Optional[str] = None) -> Optional[AutomationRun]:
        """
        Waiting -> running under `job_id`. Also accepts a run that is already
        running: that is the same job picking up a drive that was cut short.
        """
        # the runtime budget covers active execution, not time spent parked on a job
        now = self.clock()
        resumed = self._transition(run, RunStatus.RUNNING, deadline=now + self.max_runtime, waiting_until=None,
                                   active_job_id=job_id or run.active_job_id)
        if resumed:
            message = "Run resumed" if run.status == RunStatus.WAITING else "Interrupted drive picked up again"
            self.log(run.id, message, level=LogLevel.DEBUG, node_id=run.current_node_id,
                     data={"job_id": resumed.active_job_id})
        return resumed

    def step(self, run: AutomationRun, next_node_id: str, context: Dict[str, Any]) -> Optional[AutomationRun]:
        return self._transition(
            run,
            RunStatus.RUNNING,
            current_node_id=next_node_id,
            context=context,
            steps_completed=run.steps_completed + 1,
        )

    def wait(
        self,
        run: AutomationRun,
        resume_node_id: str,
        execute_at: datetime,
        reason: str,
        context: Optional[Dict[str, Any]] = None,
        count_step: bool = True,
        attempts: int = 0,
    ) -> Optional[AutomationRun]:
        """Parks the run and persists the job that will wake it, in one write."""
        job = AutomationJob(
            run_id=run.id,
            node_id=resume_node_id,
            execute_at=execute_at,
            attempts=attempts,
            created_at=self.clock(),
        )
        waiting = self._transition(
            run,
            RunStatus.WAITING,
            job=job,
            current_node_id=resume_node_id,
            context=context if context is not None else run.context,
            steps_completed=run.steps_completed + (1 if count_step else 0),
            waiting_until=execute_at,
            active_job_id=job.id,
        )
        if waiting:
            logger.info(f"Run {run.id} waiting until {execute_at.isoformat()} ({reason})")
            self.log(run.id, f"Waiting until {execute_at.isoformat()}", node_id=resume_node_id,
                     data={"reason": reason, "job_id": job.id, "attempts": attempts})
        return waiting

    def complete(
        self,
        run: AutomationRun,
        context: Optional[Dict[str, Any]] = None,
        reason: str = "end_of_workflow",
        reenroll_after_days: Optional[int] = None,
    ) -> Optional[AutomationRun]:
        now = self.clock()
        completed = self._transition(
            run,
            RunStatus.COMPLETED,
            context=context if context is not None else run.context,
            steps_completed=run.steps_completed + 1,
            completed_at=now,
            waiting_until=None,
        )
        if not completed:
            return None

        logger.info(f"Run {run.id} completed ({reason}) after {completed.steps_completed} steps")
        self.log(run.id, "Run completed", node_id=run.current_node_id, data={"reason": reason})
        if run.contact_id:
            blocked_until = now + timedelta(days=reenroll_after_days) if reenroll_after_days else None
            self.store.complete_enrollment(run.contact_id, run.workflow_id, now, blocked_until=blocked_until)
        return completed

    def fail(self, run: AutomationRun, error: AutomationError) -> Optional[AutomationRun]:
        failed = self._transition(
            run,
            RunStatus.FAILED,
            failure_reason=error.reason,
            error_message=error.message,
            completed_at=self.clock(),
            waiting_until=None,
        )
        if not failed:
            return None

        logger.warning(f"Run {run.id} failed [{error.reason}]: {error.message}")
        self.log(run.id, error.message, level=LogLevel.ERROR if error.reason == "dispatch_failed" else LogLevel.WARN,
                 node_id=error.node_id or run.current_node_id, data={"reason": error.reason})
        self.store.cancel_jobs_for_run(run.id, self.clock())
        return failed

    def fail_by_id(self, run_id: str, error: AutomationError) -> Optional[AutomationRun]:
        run = self.store.get_run(run_id)
        if run is None or run.is_terminal():
            return None
        return self.fail(run, error)

    def cancel(self, run_id: str, reason: str) -> bool:
        run = self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")

        now = self.clock()
        if not self.store.cancel_run(run_id, reason, now):
            logger.info(f"Run {run_id} is already {run.status.value}; cancel ignored")
            return False

        dropped = self.store.cancel_jobs_for_run(run_id, now)
        logger.info(f"Run {run_id} cancelled: {reason} ({dropped} pending job(s) dropped)")
        self.log(run_id, f"Run cancelled: {reason}", data={"jobs_cancelled": dropped})
        return True

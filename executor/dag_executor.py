import copy
import logging
import traceback
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from dispatchers.base_dispatcher import ActionDispatcher
from executor.condition_evaluator import (
    ConditionEvaluator,
    GoalEvaluator,
    default_condition_evaluator,
    default_goal_evaluator,
)
from executor.dag_compiler import TransitionTable, WorkflowCache
from executor.errors import (
    ActionDispatchError,
    AutomationError,
    LoopPreventionError,
    NodeTraversalError,
    RunNotFoundError,
    RunTimeoutError,
    StoreUnavailableError,
    WorkflowCompileError,
)
from executor.guardrail_evaluator import evaluate_guardrails
from executor.run_coordinator import RunCoordinator
from executor.template_renderer import TemplateRenderer
from models.dispatch import DispatchResult
from models.execution_log import LogLevel
from models.job import AutomationJob
from models.run import AutomationRun, RunStatus
from models.workflow import TIME_SENSITIVE_ACTIONS, AutomationNode, NodeType
from scheduler.job_scheduler import JobScheduler
from storage.base_store import AutomationStore, ContactDirectory
from utils.rate_limiter import ContactRateLimiter
from utils.retry import RetryManager
from utils.time_utils import utcnow, wait_until

logger = logging.getLogger("automation_engine")


class DagExecutor:
    """
    Moves runs through their compiled workflow graph.

    `advance` executes exactly one node. It is idempotent per
    (run.id, current_node_id, steps_completed): the result is committed with
    a compare-and-set on those three values, so a second delivery of the same
    step loses the race and changes nothing.

    `drive` is the entry point for intake and workers. It starts or resumes
    the run and keeps advancing until the run parks on a job, terminates, or
    uses up its per-invocation step budget.
    """

    def __init__(
        self,
        store: AutomationStore,
        dispatcher: ActionDispatcher,
        coordinator: RunCoordinator,
        cache: WorkflowCache,
        scheduler: JobScheduler,
        retry: Optional[RetryManager] = None,
        contacts: Optional[ContactDirectory] = None,
        renderer: Optional[TemplateRenderer] = None,
        condition_evaluator: ConditionEvaluator = default_condition_evaluator,
        goal_evaluator: GoalEvaluator = default_goal_evaluator,
        clock: Callable[[], datetime] = utcnow,
        max_steps_per_drive: int = 25,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.coordinator = coordinator
        self.cache = cache
        self.scheduler = scheduler
        self.retry = retry or RetryManager()
        self.contacts = contacts
        self.renderer = renderer or TemplateRenderer()
        self.condition_evaluator = condition_evaluator
        self.goal_evaluator = goal_evaluator
        self.clock = clock
        self.max_steps_per_drive = max_steps_per_drive
        self.rate_limiter = ContactRateLimiter(store)

    async def drive(self, run_id: str, job: Optional[AutomationJob] = None) -> Optional[AutomationRun]:
        """
        Runs `run_id` as far as it can go. With a job, the run must belong to
        that job (see `_owned_by`); the job is marked completed afterwards,
        whatever the run's outcome. If this raises, the job stays claimed and
        the caller hands it to `recover`. Without a job, only a pending run is
        started.
        """
        result = await self._drive(run_id, job)
        if job is not None:
            self.scheduler.complete(job)
        return result

    def recover(self, job: AutomationJob, error: Exception) -> bool:
        """
        Deals with a claimed job whose drive raised. The job is requeued with
        backoff and later picks its run up where the drive stopped. Once its
        attempts are used up, the job and its run fail. True if requeued.
        """
        if self.scheduler.requeue(job, str(error)):
            return True
        self.scheduler.fail(job, str(error))
        self.coordinator.fail_by_id(job.run_id, ActionDispatchError(
            f"Job {job.id} kept failing: {error}", node_id=job.node_id,
        ))
        return False

    @staticmethod
    def _owned_by(run: AutomationRun, job: AutomationJob) -> bool:
        if run.active_job_id is not None:
            return run.active_job_id == job.id
        return run.status in (RunStatus.PENDING, RunStatus.WAITING) and run.current_node_id == job.node_id

    async def _drive(self, run_id: str, job: Optional[AutomationJob]) -> Optional[AutomationRun]:
        run = self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")

        if run.is_terminal():
            logger.info(f"Run {run_id} is already {run.status.value}; nothing to do")
            return run

        if job is not None:
            if not self._owned_by(run, job):
                logger.warning(f"Job {job.id} does not match run {run_id} "
                               f"({run.status.value} at {run.current_node_id}); discarding")
                return run
            if run.status == RunStatus.PENDING:
                active = self.coordinator.start(run, job.id)
            else:
                if run.status == RunStatus.RUNNING:
                    logger.warning(f"Run {run_id} was left running by an interrupted drive of job {job.id}; "
                                   f"continuing at {run.current_node_id}")
                active = self.coordinator.resume(run, job.id)
        elif run.status == RunStatus.PENDING:
            active = self.coordinator.start(run)
        else:
            logger.warning(f"Run {run_id} is {run.status.value}; it can only be resumed by its job")
            return run

        if active is None:
            return self.store.get_run(run_id)

        try:
            table = self.cache.get(active.workflow_id)
        except WorkflowCompileError as e:
            return self.coordinator.fail(active, e) or self.store.get_run(run_id)

        # retry attempts carry over only while re-executing the job's own node
        prior_attempts = job.attempts if job is not None and active.current_node_id == job.node_id else 0
        for _ in range(self.max_steps_per_drive):
            nxt = await self.advance(active, table, prior_attempts)
            if nxt is None:
                return self.store.get_run(run_id)
            if nxt.status != RunStatus.RUNNING:
                return nxt
            active, prior_attempts = nxt, 0

        logger.info(f"Run {run_id} used its step budget for this drive; yielding")
        return self.coordinator.wait(active, active.current_node_id, self.clock(), "drive_budget",
                                     count_step=False) or self.store.get_run(run_id)

    async def advance(self, run: AutomationRun, table: TransitionTable,
                      prior_attempts: int = 0) -> Optional[AutomationRun]:
        """Executes the run's current node. Returns the committed run, or None if the commit lost."""
        stored = self.store.get_run(run.id)
        if stored is None or stored.is_terminal():
            logger.info(f"Run {run.id} was {stored.status.value if stored else 'deleted'} mid-flight; stopping")
            return stored

        now = self.clock()
        if run.steps_completed >= run.max_steps:
            return self.coordinator.fail(run, LoopPreventionError(
                f"Run exceeded max_steps={run.max_steps}; the workflow probably loops",
                node_id=run.current_node_id,
            ))
        if run.deadline and now >= run.deadline:
            return self.coordinator.fail(run, RunTimeoutError(
                f"Run passed its deadline {run.deadline.isoformat()}",
                node_id=run.current_node_id,
            ))

        node = None
        try:
            node = table.node(run.current_node_id)
            context = copy.deepcopy(run.context)
            handler = {
                NodeType.TRIGGER: self._run_trigger,
                NodeType.ACTION: self._run_action,
                NodeType.CONDITION: self._run_condition,
                NodeType.WAIT: self._run_wait,
                NodeType.GOAL: self._run_goal,
            }[node.node_type]
            return await handler(run, node, table, context, now, prior_attempts)

        except StoreUnavailableError:
            raise
        except ActionDispatchError as e:
            return self._handle_dispatch_failure(run, e, prior_attempts)
        except AutomationError as e:
            return self.coordinator.fail(run, e)
        except Exception as e:
            logger.error(f"Unexpected error on run {run.id} node {run.current_node_id}: {e}")
            logger.error(traceback.format_exc())
            return self._handle_dispatch_failure(run, ActionDispatchError(
                f"Unexpected error: {e}",
                retryable=RetryManager.is_transient_error(e),
                node_id=node.id if node else run.current_node_id,
            ), prior_attempts)

    # --- transitions shared by every node type ---

    def _follow(self, run: AutomationRun, node: AutomationNode, table: TransitionTable,
                context: Dict[str, Any], key: Optional[str] = None) -> Optional[AutomationRun]:
        next_node_id = table.next_node(node.id, key)
        if next_node_id is None:
            return self.coordinator.complete(run, context, reenroll_after_days=table.workflow.reenroll_after_days)
        return self.coordinator.step(run, next_node_id, context)

    @staticmethod
    def _record(context: Dict[str, Any], node: AutomationNode, result: Dict[str, Any]) -> None:
        context.setdefault("steps", {})[node.id] = result

    # --- node handlers ---

    async def _run_trigger(self, run, node, table, context, now, attempts):
        return self._follow(run, node, table, context)

    async def _run_condition(self, run, node, table, context, now, attempts):
        key = self.condition_evaluator(node, context)
        next_node_id = table.next_node(node.id, key)
        if next_node_id is None:
            raise NodeTraversalError(
                f"Condition node {node.id} produced key {key!r} and has no matching or fallback edge",
                node_id=node.id,
            )
        self._record(context, node, {"branch": key})
        self.coordinator.log(run.id, f"Condition evaluated to {key!r}", level=LogLevel.DEBUG, node_id=node.id)
        return self.coordinator.step(run, next_node_id, context)

    async def _run_wait(self, run, node, table, context, now, attempts):
        next_node_id = table.next_node(node.id)
        if next_node_id is None:
            return self.coordinator.complete(run, context, reenroll_after_days=table.workflow.reenroll_after_days)
        execute_at = wait_until(node.config or {}, now)
        return self.coordinator.wait(run, next_node_id, execute_at, "wait_node", context=context)

    async def _run_goal(self, run, node, table, context, now, attempts):
        if self.contacts and run.contact_id:
            contact = self.contacts.get_contact(run.business_id, run.contact_id)
            if contact:
                context["contact"] = {**context.get("contact", {}), **contact.model_dump(mode="json")}

        met = bool(self.goal_evaluator(node, context))
        self._record(context, node, {"goal_met": met})
        if met:
            logger.info(f"Run {run.id} reached goal at node {node.id}")
            return self.coordinator.complete(run, context, reason="goal_reached",
                                             reenroll_after_days=table.workflow.reenroll_after_days)
        return self._follow(run, node, table, context)

    async def _run_action(self, run, node, table, context, now, attempts):
        time_sensitive = node.action_type in TIME_SENSITIVE_ACTIONS
        config = self.renderer.render_config(node.config or {}, context)
        settings = None
        if time_sensitive:
            settings = self.store.get_settings(run.business_id)
            sent_today = self.rate_limiter.messages_today(settings, run.contact_id, now)
            decision = evaluate_guardrails(settings, now, sent_today)
            if decision.allowed and not self.rate_limiter.reserve(settings, run.contact_id, now):
                # another send to this contact took the last slot after the count was read
                decision = evaluate_guardrails(settings, now, settings.rate_limit.max_per_contact_per_day)
            if not decision.allowed:
                logger.info(f"Run {run.id}: {node.action_type} deferred ({decision.reason}) "
                            f"until {decision.defer_until.isoformat()}")
                # same node again later; a deferral is not a step and keeps the retry count
                return self.coordinator.wait(run, node.id, decision.defer_until,
                                             f"guardrail:{decision.reason}", count_step=False, attempts=attempts)

        try:
            result = await self.dispatcher.execute(node.action_type, config, copy.deepcopy(context))
        except Exception as e:
            logger.error(f"Dispatcher raised for {node.action_type} on run {run.id}: {e}")
            result = DispatchResult.failed(str(e), retryable=RetryManager.is_transient_error(e))

        if not result.success:
            if time_sensitive:
                self.rate_limiter.release(settings, run.contact_id, now)
            raise ActionDispatchError(
                result.error or f"{node.action_type} failed",
                retryable=result.retryable,
                node_id=node.id,
            )

        context.update(result.context_updates)
        self._record(context, node, {"action_type": node.action_type, "result": result.context_updates})
        self.coordinator.log(run.id, f"Action {node.action_type} dispatched", node_id=node.id,
                             data={"context_updates": list(result.context_updates)})
        return self._follow(run, node, table, context)

    # --- failure policy ---

    def _handle_dispatch_failure(self, run: AutomationRun, error: ActionDispatchError,
                                 prior_attempts: int) -> Optional[AutomationRun]:
        attempts = prior_attempts + 1
        if not error.retryable:
            return self.coordinator.fail(run, error)

        if not self.retry.should_retry(attempts):
            error.reason = "retries_exhausted"
            error.message = f"Gave up after {attempts} attempts: {error.message}"
            return self.coordinator.fail(run, error)

        delay = self.retry.backoff(attempts)
        execute_at = self.clock() + delay
        logger.warning(f"Run {run.id} node {error.node_id}: retryable failure, attempt {attempts}/"
                       f"{self.retry.max_attempts}, retrying in {int(delay.total_seconds())}s: {error.message}")
        self.coordinator.log(
            run.id,
            f"Retry {attempts} scheduled in {int(delay.total_seconds())}s",
            level=LogLevel.WARN,
            node_id=error.node_id,
            data={"attempt": attempts, "backoff_seconds": delay.total_seconds(), "error": error.message},
        )
        return self.coordinator.wait(run, run.current_node_id, execute_at, "retry",
                                     count_step=False, attempts=attempts)

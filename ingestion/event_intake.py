import logging
import traceback
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from executor.dag_executor import DagExecutor
from executor.errors import DuplicateEvent
from ingestion.dedup_gate import DedupGate
from ingestion.workflow_matcher import WorkflowMatcher
from models.event import AutomationEvent, EventSource
from models.job import AutomationJob
from models.run import AutomationRun
from storage.base_store import AutomationStore
from utils.time_utils import utcnow

logger = logging.getLogger("automation_engine")


class IntakeResult(BaseModel):
    event_id: str
    duplicate: bool = False
    duplicate_of: Optional[str] = None
    run_ids: List[str] = Field(default_factory=list)


class EventIntake:
    """Event ingestion: dedup gate, then matcher, then drive each new run inline."""

    def __init__(
        self,
        store: AutomationStore,
        gate: DedupGate,
        matcher: WorkflowMatcher,
        executor: DagExecutor,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gate = gate
        self.matcher = matcher
        self.executor = executor
        self.clock = clock

    async def submit_event(
        self,
        business_id: str,
        intent: str,
        payload: Optional[Dict[str, Any]] = None,
        dedupe_key: Optional[str] = None,
        contact_id: Optional[str] = None,
        source: EventSource = EventSource.API,
        occurred_at: Optional[datetime] = None,
        drive: bool = True,
    ) -> IntakeResult:
        now = self.clock()
        event = AutomationEvent(
            business_id=business_id,
            intent=intent,
            payload=payload or {},
            dedupe_key=dedupe_key,
            contact_id=contact_id,
            source=source,
            occurred_at=occurred_at or now,
            created_at=now,
        )
        logger.info(f"Received event {event.id}: {intent} for business {business_id}")

        settings = self.store.get_settings(business_id)
        try:
            self.gate.admit(event, settings)
        except DuplicateEvent as e:
            return IntakeResult(event_id=event.id, duplicate=True, duplicate_of=e.duplicate_of)

        if not settings.automations_enabled:
            logger.info(f"Automations disabled for business {business_id}; event {event.id} not matched")
            self.store.mark_event_processed(event.id)
            return IntakeResult(event_id=event.id)

        enrolled = self.matcher.enroll(event)
        self.store.mark_event_processed(event.id)

        if drive:
            for run, job in enrolled:
                await self._drive_inline(run, job)

        return IntakeResult(event_id=event.id, run_ids=[run.id for run, _ in enrolled])

    async def _drive_inline(self, run: AutomationRun, job: AutomationJob) -> None:
        """Works the run's trigger job right away instead of waiting for the next poll."""
        if not self.executor.scheduler.claim(job):
            logger.info(f"Trigger job {job.id} of run {run.id} already taken by a worker")
            return
        try:
            await self.executor.drive(run.id, job)
        except Exception as e:
            # intake must not fail the event; the requeued job finishes the run later
            logger.error(f"Failed to drive run {run.id}: {e}")
            logger.error(traceback.format_exc())
            try:
                self.executor.recover(job, e)
            except Exception as store_error:
                # the claim lease hands the job back once the store recovers
                logger.error(f"Could not requeue job {job.id}: {store_error}")

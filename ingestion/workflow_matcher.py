import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from executor.dag_compiler import WorkflowCache
from executor.errors import EnrollmentBlocked, WorkflowCompileError
from models.enrollment import ContactState
from models.event import AutomationEvent
from models.job import AutomationJob
from models.run import DEFAULT_MAX_STEPS, AutomationRun
from models.workflow import Workflow
from storage.base_store import AutomationStore, ContactDirectory
from utils.idempotency import IdempotencyKey
from utils.time_utils import ensure_aware, utcnow

logger = logging.getLogger("automation_engine")


class WorkflowMatcher:
    def __init__(
        self,
        store: AutomationStore,
        cache: WorkflowCache,
        contacts: Optional[ContactDirectory] = None,
        clock: Callable[[], datetime] = utcnow,
        max_steps: int = DEFAULT_MAX_STEPS,
    ):
        self.store = store
        self.cache = cache
        self.contacts = contacts
        self.clock = clock
        self.max_steps = max_steps

    def candidates(self, event: AutomationEvent) -> List[Workflow]:
        """Active workflows of the business listening for the event's intent, by priority."""
        workflows = [
            w for w in self.store.list_active_workflows(event.business_id)
            if event.intent in w.trigger_intents
        ]
        return sorted(workflows, key=lambda w: (w.priority, w.created_at))

    def check_enrollment(self, workflow: Workflow, contact_id: Optional[str],
                         contact: Optional[ContactState], now: datetime) -> None:
        """Raises EnrollmentBlocked if suppression or cooldown keeps the contact out."""
        if contact is not None:
            hit = set(contact.tags) & set(workflow.suppression_tags)
            if hit:
                raise EnrollmentBlocked(f"Contact carries suppression tag(s) {sorted(hit)}")
            if contact.stage and contact.stage in workflow.suppression_stages:
                raise EnrollmentBlocked(f"Contact is in suppressed stage '{contact.stage}'")

        if not contact_id:
            return

        record = self.store.get_enrollment(contact_id, workflow.id)
        if record is None or record.enrollment_count == 0:
            return

        # both limits apply independently; either one blocks
        limit = workflow.max_enrollments_per_contact
        if limit is not None and record.enrollment_count >= limit:
            raise EnrollmentBlocked(f"Contact already enrolled {record.enrollment_count} time(s), limit {limit}")

        if workflow.reenroll_after_days is None:
            raise EnrollmentBlocked("Workflow does not allow re-enrollment")

        if record.last_enrolled_at is not None:
            elapsed = now - ensure_aware(record.last_enrolled_at)
            if elapsed < timedelta(days=workflow.reenroll_after_days):
                raise EnrollmentBlocked(f"Re-enrollment cooldown of {workflow.reenroll_after_days} day(s) not over")

        if record.blocked_until is not None and now < ensure_aware(record.blocked_until):
            raise EnrollmentBlocked(f"Contact blocked from this workflow until {record.blocked_until.isoformat()}")

    def _seed_context(self, event: AutomationEvent, workflow: Workflow, contact_id: Optional[str],
                      contact: Optional[ContactState], now: datetime) -> Dict[str, Any]:
        contact_data: Dict[str, Any] = {"id": contact_id}
        if contact is not None:
            contact_data.update(contact.model_dump(mode="json"))
        return {
            "intent": event.intent,
            "payload": dict(event.payload),
            "business": {"id": event.business_id, "industry": workflow.industry},
            "contact": contact_data,
            "event_id": event.id,
            "triggered_at": now.isoformat(),
        }

    def enroll(self, event: AutomationEvent) -> List[Tuple[AutomationRun, AutomationJob]]:
        """
        Creates one pending run per matching workflow the contact may enter,
        each stored together with an immediate job at its trigger node, so a
        worker picks the run up even if nobody drives it inline. A run that
        already exists for (workflow, contact, event) is skipped.
        """
        now = self.clock()
        contact_id = event.resolved_contact_id()
        contact = None
        if contact_id and self.contacts is not None:
            contact = self.contacts.get_contact(event.business_id, contact_id)

        enrolled: List[Tuple[AutomationRun, AutomationJob]] = []
        for workflow in self.candidates(event):
            try:
                self.check_enrollment(workflow, contact_id, contact, now)
                table = self.cache.get(workflow.id, min_version=workflow.version)
            except EnrollmentBlocked as e:
                logger.info(f"Contact {contact_id} not enrolled in workflow {workflow.id}: {e.message}")
                continue
            except WorkflowCompileError as e:
                logger.error(f"Skipping workflow {workflow.id}, it does not compile: {e.message}")
                continue

            run_id = str(uuid4())
            job = AutomationJob(run_id=run_id, node_id=table.trigger_node_id, execute_at=now, created_at=now)
            run = AutomationRun(
                id=run_id,
                workflow_id=workflow.id,
                business_id=event.business_id,
                event_id=event.id,
                contact_id=contact_id,
                current_node_id=table.trigger_node_id,
                context=self._seed_context(event, workflow, contact_id, contact, now),
                max_steps=self.max_steps,
                idempotency_key=IdempotencyKey.for_enrollment(workflow.id, contact_id or "anonymous", event.id),
                started_at=now,
                active_job_id=job.id,
            )
            if not self.store.insert_run_if_absent(run, job):
                logger.info(f"Run for {run.idempotency_key} already exists; skipping")
                continue

            if contact_id:
                self.store.record_enrollment(contact_id, workflow.id, now)
            logger.info(f"Enrolled contact {contact_id} in workflow {workflow.id} '{workflow.name}' (run {run.id})")
            enrolled.append((run, job))
        return enrolled

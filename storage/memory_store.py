import logging
import threading
from datetime import date, datetime
from typing import Dict, List, Optional, Tuple

from models.enrollment import ContactState, EnrollmentRecord
from models.event import AutomationEvent
from models.execution_log import AutomationLog
from models.job import AutomationJob, JobStatus
from models.run import AutomationRun, RunStatus
from models.settings import BusinessAutomationSettings
from models.workflow import Workflow, WorkflowDefinition
from storage.base_store import AutomationStore, ContactDirectory

logger = logging.getLogger("automation_engine")


class InMemoryStore(AutomationStore):
    """
    Thread-safe in-process store. Used for local runs and tests; it does not
    survive a restart, use OrchestratorStore for that. Every public method
    runs under one lock, which gives the same atomicity the SQL backend gets
    from conditional updates.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._events: Dict[str, AutomationEvent] = {}
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._settings: Dict[str, BusinessAutomationSettings] = {}
        self._enrollments: Dict[Tuple[str, str], EnrollmentRecord] = {}
        self._runs: Dict[str, AutomationRun] = {}
        self._run_keys: Dict[str, str] = {}
        self._jobs: Dict[str, AutomationJob] = {}
        self._logs: List[AutomationLog] = []
        self._message_counts: Dict[Tuple[str, str, date], int] = {}

    # --- events ---

    def record_event(self, event: AutomationEvent, window_start: datetime) -> Optional[AutomationEvent]:
        with self._lock:
            duplicate = None
            if event.dedupe_key:
                candidates = [
                    e for e in self._events.values()
                    if e.business_id == event.business_id
                    and e.dedupe_key == event.dedupe_key
                    and e.created_at >= window_start
                ]
                if candidates:
                    duplicate = min(candidates, key=lambda e: e.created_at)

            stored = event.model_copy(deep=True)
            if duplicate is not None:
                stored.processed = True
            self._events[stored.id] = stored
            return duplicate.model_copy(deep=True) if duplicate else None

    def get_event(self, event_id: str) -> Optional[AutomationEvent]:
        with self._lock:
            event = self._events.get(event_id)
            return event.model_copy(deep=True) if event else None

    def mark_event_processed(self, event_id: str) -> bool:
        with self._lock:
            event = self._events.get(event_id)
            if not event:
                return False
            event.processed = True
            return True

    # --- workflows & settings ---

    def save_workflow(self, definition: WorkflowDefinition) -> None:
        with self._lock:
            self._workflows[definition.workflow.id] = definition.model_copy(deep=True)

    def get_workflow_definition(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        with self._lock:
            definition = self._workflows.get(workflow_id)
            return definition.model_copy(deep=True) if definition else None

    def list_active_workflows(self, business_id: str) -> List[Workflow]:
        with self._lock:
            return [
                d.workflow.model_copy(deep=True)
                for d in self._workflows.values()
                if d.workflow.business_id == business_id and d.workflow.active
            ]

    def get_settings(self, business_id: str) -> BusinessAutomationSettings:
        with self._lock:
            settings = self._settings.get(business_id)
            if settings is None:
                return BusinessAutomationSettings(business_id=business_id)
            return settings.model_copy(deep=True)

    def save_settings(self, settings: BusinessAutomationSettings) -> None:
        with self._lock:
            self._settings[settings.business_id] = settings.model_copy(deep=True)

    # --- enrollments ---

    def get_enrollment(self, contact_id: str, workflow_id: str) -> Optional[EnrollmentRecord]:
        with self._lock:
            record = self._enrollments.get((contact_id, workflow_id))
            return record.model_copy() if record else None

    def record_enrollment(self, contact_id: str, workflow_id: str, at: datetime) -> EnrollmentRecord:
        with self._lock:
            record = self._enrollments.get((contact_id, workflow_id))
            if record is None:
                record = EnrollmentRecord(contact_id=contact_id, workflow_id=workflow_id, first_enrolled_at=at)
                self._enrollments[(contact_id, workflow_id)] = record
            record.enrollment_count += 1
            record.last_enrolled_at = at
            return record.model_copy()

    def complete_enrollment(self, contact_id: str, workflow_id: str, at: datetime,
                            blocked_until: Optional[datetime] = None) -> None:
        with self._lock:
            record = self._enrollments.get((contact_id, workflow_id))
            if record is None:
                return
            record.last_completed_at = at
            record.blocked_until = blocked_until

    # --- runs ---

    def insert_run_if_absent(self, run: AutomationRun, job: Optional[AutomationJob] = None) -> bool:
        with self._lock:
            if run.idempotency_key in self._run_keys:
                return False
            self._run_keys[run.idempotency_key] = run.id
            self._runs[run.id] = run.model_copy(deep=True)
            if job is not None:
                self._jobs[job.id] = job.model_copy(deep=True)
            return True

    def get_run(self, run_id: str) -> Optional[AutomationRun]:
        with self._lock:
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    def commit_run(
        self,
        run: AutomationRun,
        expected_status: RunStatus,
        expected_node_id: Optional[str],
        expected_steps: int,
        job: Optional[AutomationJob] = None,
    ) -> bool:
        with self._lock:
            current = self._runs.get(run.id)
            if current is None:
                return False
            if (
                current.status != expected_status
                or current.current_node_id != expected_node_id
                or current.steps_completed != expected_steps
            ):
                return False
            self._runs[run.id] = run.model_copy(deep=True)
            if job is not None:
                self._jobs[job.id] = job.model_copy(deep=True)
            return True

    def cancel_run(self, run_id: str, reason: str, at: datetime) -> bool:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.is_terminal():
                return False
            run.status = RunStatus.CANCELLED
            run.failure_reason = "cancelled"
            run.error_message = reason
            run.completed_at = at
            return True

    # --- jobs ---

    def insert_job(self, job: AutomationJob) -> None:
        with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)

    def get_job(self, job_id: str) -> Optional[AutomationJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def list_due_jobs(self, now: datetime, limit: int) -> List[AutomationJob]:
        with self._lock:
            due = [
                j for j in self._jobs.values()
                if j.status == JobStatus.PENDING and j.execute_at <= now
            ]
            due.sort(key=lambda j: j.execute_at)
            return [j.model_copy(deep=True) for j in due[:limit]]

    def claim_job(self, job_id: str, now: datetime) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PENDING or job.execute_at > now:
                return False
            job.status = JobStatus.CLAIMED
            job.claimed_at = now
            return True

    def complete_job(self, job_id: str, at: datetime) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job:
                job.status = JobStatus.COMPLETED
                job.processed_at = at

    def requeue_job(self, job_id: str, execute_at: datetime, attempts: int, error: Optional[str]) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job:
                job.status = JobStatus.PENDING
                job.execute_at = execute_at
                job.attempts = attempts
                job.last_error = error
                job.claimed_at = None

    def fail_job(self, job_id: str, error: str, at: datetime) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job:
                job.status = JobStatus.FAILED
                job.last_error = error
                job.processed_at = at

    def list_jobs_for_run(self, run_id: str) -> List[AutomationJob]:
        with self._lock:
            jobs = [j.model_copy(deep=True) for j in self._jobs.values() if j.run_id == run_id]
            return sorted(jobs, key=lambda j: j.created_at)

    def cancel_jobs_for_run(self, run_id: str, at: datetime) -> int:
        with self._lock:
            count = 0
            for job in self._jobs.values():
                if job.run_id == run_id and job.status == JobStatus.PENDING:
                    job.status = JobStatus.FAILED
                    job.last_error = "cancelled"
                    job.processed_at = at
                    count += 1
            return count

    def release_stale_claims(self, older_than: datetime) -> int:
        with self._lock:
            count = 0
            for job in self._jobs.values():
                if job.status == JobStatus.CLAIMED and job.claimed_at and job.claimed_at < older_than:
                    job.status = JobStatus.PENDING
                    job.claimed_at = None
                    count += 1
            if count:
                logger.warning(f"Released {count} stale job claim(s)")
            return count

    # --- audit trail ---

    def append_log(self, entry: AutomationLog) -> None:
        with self._lock:
            self._logs.append(entry.model_copy(deep=True))

    def list_logs(self, run_id: str) -> List[AutomationLog]:
        with self._lock:
            return [l.model_copy(deep=True) for l in self._logs if l.run_id == run_id]

    # --- counters ---

    def reserve_message_slot(self, business_id: str, contact_id: str, day: date, limit: int) -> bool:
        with self._lock:
            key = (business_id, contact_id, day)
            count = self._message_counts.get(key, 0)
            if limit > 0 and count >= limit:
                return False
            self._message_counts[key] = count + 1
            return True

    def release_message_slot(self, business_id: str, contact_id: str, day: date) -> None:
        with self._lock:
            key = (business_id, contact_id, day)
            if self._message_counts.get(key, 0) > 0:
                self._message_counts[key] -= 1

    def get_message_count(self, business_id: str, contact_id: str, day: date) -> int:
        with self._lock:
            return self._message_counts.get((business_id, contact_id, day), 0)


class InMemoryContactDirectory(ContactDirectory):
    def __init__(self, contacts: Optional[List[ContactState]] = None):
        self._lock = threading.Lock()
        self._contacts: Dict[str, ContactState] = {c.id: c for c in (contacts or [])}

    def upsert(self, contact: ContactState) -> None:
        with self._lock:
            self._contacts[contact.id] = contact.model_copy(deep=True)

    def get_contact(self, business_id: str, contact_id: str) -> Optional[ContactState]:
        with self._lock:
            contact = self._contacts.get(contact_id)
            if contact is None:
                return None
            if contact.business_id and contact.business_id != business_id:
                return None
            return contact.model_copy(deep=True)

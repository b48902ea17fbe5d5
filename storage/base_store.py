from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import List, Optional

from models.enrollment import ContactState, EnrollmentRecord
from models.event import AutomationEvent
from models.execution_log import AutomationLog
from models.job import AutomationJob
from models.run import AutomationRun, RunStatus
from models.settings import BusinessAutomationSettings
from models.workflow import Workflow, WorkflowDefinition


class AutomationStore(ABC):
    """
    Durable state of the engine. Every method documented as atomic must be a
    single conditional write in the backing store: that is the only
    concurrency control the engine relies on.
    """

    # --- events ---

    @abstractmethod
    def record_event(self, event: AutomationEvent, window_start: datetime) -> Optional[AutomationEvent]:
        """
        Atomically inserts `event`. If another event of the same business with
        the same dedupe_key was created at or after `window_start`, the new
        event is stored with processed=True and the earlier one is returned.
        """

    @abstractmethod
    def get_event(self, event_id: str) -> Optional[AutomationEvent]:
        pass

    @abstractmethod
    def mark_event_processed(self, event_id: str) -> bool:
        pass

    # --- workflows & settings (owned by authoring tooling) ---

    @abstractmethod
    def save_workflow(self, definition: WorkflowDefinition) -> None:
        pass

    @abstractmethod
    def get_workflow_definition(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        pass

    @abstractmethod
    def list_active_workflows(self, business_id: str) -> List[Workflow]:
        pass

    @abstractmethod
    def get_settings(self, business_id: str) -> BusinessAutomationSettings:
        """Returns defaults when the business has never saved settings."""

    @abstractmethod
    def save_settings(self, settings: BusinessAutomationSettings) -> None:
        pass

    # --- enrollments ---

    @abstractmethod
    def get_enrollment(self, contact_id: str, workflow_id: str) -> Optional[EnrollmentRecord]:
        pass

    @abstractmethod
    def record_enrollment(self, contact_id: str, workflow_id: str, at: datetime) -> EnrollmentRecord:
        """Upsert: first enrollment creates the record, later ones bump the count."""

    @abstractmethod
    def complete_enrollment(self, contact_id: str, workflow_id: str, at: datetime,
                            blocked_until: Optional[datetime] = None) -> None:
        pass

    # --- runs ---

    @abstractmethod
    def insert_run_if_absent(self, run: AutomationRun, job: Optional[AutomationJob] = None) -> bool:
        """
        Atomic insert on the unique idempotency key, together with `job` (the
        run's first wake-up). False means a run already exists and nothing
        was written.
        """

    @abstractmethod
    def get_run(self, run_id: str) -> Optional[AutomationRun]:
        pass

    @abstractmethod
    def commit_run(
        self,
        run: AutomationRun,
        expected_status: RunStatus,
        expected_node_id: Optional[str],
        expected_steps: int,
        job: Optional[AutomationJob] = None,
    ) -> bool:
        """
        Compare-and-set: replaces the stored run only if it still has the
        expected status, current node and step count, and inserts `job` in the
        same write. False means someone else advanced or cancelled the run.
        """

    @abstractmethod
    def cancel_run(self, run_id: str, reason: str, at: datetime) -> bool:
        """Sets status=cancelled only if the run is not already terminal."""

    # --- jobs ---

    @abstractmethod
    def insert_job(self, job: AutomationJob) -> None:
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[AutomationJob]:
        pass

    @abstractmethod
    def list_due_jobs(self, now: datetime, limit: int) -> List[AutomationJob]:
        pass

    @abstractmethod
    def claim_job(self, job_id: str, now: datetime) -> bool:
        """UPDATE ... SET status='claimed' WHERE status='pending' AND id=? AND execute_at<=now"""

    @abstractmethod
    def complete_job(self, job_id: str, at: datetime) -> None:
        pass

    @abstractmethod
    def requeue_job(self, job_id: str, execute_at: datetime, attempts: int, error: Optional[str]) -> None:
        pass

    @abstractmethod
    def fail_job(self, job_id: str, error: str, at: datetime) -> None:
        pass

    @abstractmethod
    def list_jobs_for_run(self, run_id: str) -> List[AutomationJob]:
        pass

    @abstractmethod
    def cancel_jobs_for_run(self, run_id: str, at: datetime) -> int:
        pass

    @abstractmethod
    def release_stale_claims(self, older_than: datetime) -> int:
        """Returns claimed jobs whose worker vanished back to pending."""

    # --- audit trail ---

    @abstractmethod
    def append_log(self, entry: AutomationLog) -> None:
        pass

    @abstractmethod
    def list_logs(self, run_id: str) -> List[AutomationLog]:
        pass

    # --- per-contact daily message counters ---

    @abstractmethod
    def reserve_message_slot(self, business_id: str, contact_id: str, day: date, limit: int) -> bool:
        """
        Atomic conditional increment: bumps the count only while it is below
        `limit` (limit <= 0 means unlimited). False means the contact already
        reached its limit for `day`.
        """

    @abstractmethod
    def release_message_slot(self, business_id: str, contact_id: str, day: date) -> None:
        """Gives back a reserved slot whose message was never delivered."""

    @abstractmethod
    def get_message_count(self, business_id: str, contact_id: str, day: date) -> int:
        pass


class ContactDirectory(ABC):
    """Read-only view of CRM contacts (suppression tags, stage, goals)."""

    @abstractmethod
    def get_contact(self, business_id: str, contact_id: str) -> Optional[ContactState]:
        pass

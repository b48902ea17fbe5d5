from datetime import date, datetime
from typing import Any, Dict, List, Optional
import logging

import requests

from api_clients.base_client import BaseClient
from executor.errors import StoreUnavailableError
from models.enrollment import EnrollmentRecord
from models.event import AutomationEvent
from models.execution_log import AutomationLog
from models.job import AutomationJob
from models.run import AutomationRun, RunStatus
from models.settings import BusinessAutomationSettings
from models.workflow import Workflow, WorkflowDefinition
from storage.base_store import AutomationStore

logger = logging.getLogger("automation_engine")


def _ts(value: datetime) -> str:
    return value.isoformat()


class OrchestratorStore(BaseClient, AutomationStore):
    """
    AutomationStore backed by the orchestrator REST backend. The backend owns
    the tables; every conditional write below maps to one
    `UPDATE ... WHERE ...` or `INSERT ... ON CONFLICT DO NOTHING` there, and
    reports whether a row was affected in a `success` flag.
    """

    PREFIX = "/orchestrator/automation"

    def _required(self, result: Optional[Any], what: str) -> Any:
        if result is None:
            raise StoreUnavailableError(f"Orchestrator backend unavailable during {what}")
        return result

    def _fetch(self, endpoint: str, what: str, params: Dict = None) -> Optional[Any]:
        """GET for reads the engine acts on: None only means 404, a transport error raises."""
        try:
            return self._get(endpoint, params=params, raise_errors=True)
        except requests.RequestException as e:
            raise StoreUnavailableError(f"Orchestrator backend unavailable during {what}: {e}") from e

    @staticmethod
    def _success(result: Optional[Dict[str, Any]]) -> bool:
        return bool(result.get("success", False)) if result else False

    # --- events ---

    def record_event(self, event: AutomationEvent, window_start: datetime) -> Optional[AutomationEvent]:
        resp = self._required(
            self._post(f"{self.PREFIX}/events", json={
                "event": event.model_dump(mode="json"),
                "window_start": _ts(window_start),
            }),
            "event ingestion",
        )
        duplicate = resp.get("duplicate_of")
        return AutomationEvent.model_validate(duplicate) if duplicate else None

    def get_event(self, event_id: str) -> Optional[AutomationEvent]:
        data = self._get(f"{self.PREFIX}/events/{event_id}")
        return AutomationEvent.model_validate(data) if data else None

    def mark_event_processed(self, event_id: str) -> bool:
        return self._success(self._put(f"{self.PREFIX}/events/{event_id}", json={"processed": True}))

    # --- workflows & settings ---

    def save_workflow(self, definition: WorkflowDefinition) -> None:
        self._required(
            self._put(f"{self.PREFIX}/workflows/{definition.workflow.id}", json=definition.model_dump(mode="json")),
            "workflow save",
        )

    def get_workflow_definition(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        data = self._fetch(f"{self.PREFIX}/workflows/{workflow_id}/definition", "workflow load")
        return WorkflowDefinition.model_validate(data) if data else None

    def list_active_workflows(self, business_id: str) -> List[Workflow]:
        data = self._fetch(f"{self.PREFIX}/workflows", "workflow listing",
                           params={"business_id": business_id, "active": "true"})
        return [Workflow.model_validate(w) for w in (data or [])]

    def get_settings(self, business_id: str) -> BusinessAutomationSettings:
        data = self._fetch(f"{self.PREFIX}/settings/{business_id}", "settings load")
        if not data:
            return BusinessAutomationSettings(business_id=business_id)
        return BusinessAutomationSettings.model_validate(data)

    def save_settings(self, settings: BusinessAutomationSettings) -> None:
        self._required(
            self._put(f"{self.PREFIX}/settings/{settings.business_id}", json=settings.model_dump(mode="json")),
            "settings save",
        )

    # --- enrollments ---

    def get_enrollment(self, contact_id: str, workflow_id: str) -> Optional[EnrollmentRecord]:
        data = self._fetch(f"{self.PREFIX}/enrollments/{workflow_id}/{contact_id}", "enrollment load")
        return EnrollmentRecord.model_validate(data) if data else None

    def record_enrollment(self, contact_id: str, workflow_id: str, at: datetime) -> EnrollmentRecord:
        data = self._required(
            self._post(f"{self.PREFIX}/enrollments/{workflow_id}/{contact_id}", json={"at": _ts(at)}),
            "enrollment upsert",
        )
        return EnrollmentRecord.model_validate(data)

    def complete_enrollment(self, contact_id: str, workflow_id: str, at: datetime,
                            blocked_until: Optional[datetime] = None) -> None:
        self._put(f"{self.PREFIX}/enrollments/{workflow_id}/{contact_id}", json={
            "last_completed_at": _ts(at),
            "blocked_until": _ts(blocked_until) if blocked_until else None,
        })

    # --- runs ---

    def insert_run_if_absent(self, run: AutomationRun, job: Optional[AutomationJob] = None) -> bool:
        resp = self._required(
            self._post(f"{self.PREFIX}/runs", json={
                "run": run.model_dump(mode="json"),
                "job": job.model_dump(mode="json") if job else None,
            }),
            "run insert",
        )
        return self._success(resp)

    def get_run(self, run_id: str) -> Optional[AutomationRun]:
        data = self._fetch(f"{self.PREFIX}/runs/{run_id}", "run load")
        return AutomationRun.model_validate(data) if data else None

    def commit_run(
        self,
        run: AutomationRun,
        expected_status: RunStatus,
        expected_node_id: Optional[str],
        expected_steps: int,
        job: Optional[AutomationJob] = None,
    ) -> bool:
        resp = self._required(
            self._post(f"{self.PREFIX}/runs/{run.id}/commit", json={
                "run": run.model_dump(mode="json"),
                "expected": {
                    "status": expected_status.value,
                    "current_node_id": expected_node_id,
                    "steps_completed": expected_steps,
                },
                "job": job.model_dump(mode="json") if job else None,
            }),
            "run commit",
        )
        return self._success(resp)

    def cancel_run(self, run_id: str, reason: str, at: datetime) -> bool:
        return self._success(self._post(f"{self.PREFIX}/runs/{run_id}/cancel", json={"reason": reason, "at": _ts(at)}))

    # --- jobs ---

    def insert_job(self, job: AutomationJob) -> None:
        self._required(self._post(f"{self.PREFIX}/jobs", json=job.model_dump(mode="json")), "job insert")

    def get_job(self, job_id: str) -> Optional[AutomationJob]:
        data = self._fetch(f"{self.PREFIX}/jobs/{job_id}", "job load")
        return AutomationJob.model_validate(data) if data else None

    def list_due_jobs(self, now: datetime, limit: int) -> List[AutomationJob]:
        data = self._get(f"{self.PREFIX}/jobs/due", params={"now": _ts(now), "limit": limit})
        return [AutomationJob.model_validate(j) for j in (data or [])]

    def claim_job(self, job_id: str, now: datetime) -> bool:
        return self._success(self._post(f"{self.PREFIX}/jobs/{job_id}/claim", json={"now": _ts(now)}))

    def complete_job(self, job_id: str, at: datetime) -> None:
        self._put(f"{self.PREFIX}/jobs/{job_id}", json={"status": "completed", "processed_at": _ts(at)})

    def requeue_job(self, job_id: str, execute_at: datetime, attempts: int, error: Optional[str]) -> None:
        self._put(f"{self.PREFIX}/jobs/{job_id}", json={
            "status": "pending",
            "execute_at": _ts(execute_at),
            "attempts": attempts,
            "last_error": error,
            "claimed_at": None,
        })

    def fail_job(self, job_id: str, error: str, at: datetime) -> None:
        self._put(f"{self.PREFIX}/jobs/{job_id}", json={"status": "failed", "last_error": error, "processed_at": _ts(at)})

    def list_jobs_for_run(self, run_id: str) -> List[AutomationJob]:
        data = self._get(f"{self.PREFIX}/runs/{run_id}/jobs")
        return [AutomationJob.model_validate(j) for j in (data or [])]

    def cancel_jobs_for_run(self, run_id: str, at: datetime) -> int:
        resp = self._post(f"{self.PREFIX}/runs/{run_id}/jobs/cancel", json={"at": _ts(at)})
        return int(resp.get("cancelled", 0)) if resp else 0

    def release_stale_claims(self, older_than: datetime) -> int:
        resp = self._post(f"{self.PREFIX}/jobs/release-stale", json={"older_than": _ts(older_than)})
        return int(resp.get("released", 0)) if resp else 0

    # --- audit trail ---

    def append_log(self, entry: AutomationLog) -> None:
        if self._post(f"{self.PREFIX}/logs", json=entry.model_dump(mode="json")) is None:
            logger.error(f"Could not persist run log for run {entry.run_id}: {entry.message}")

    def list_logs(self, run_id: str) -> List[AutomationLog]:
        data = self._get(f"{self.PREFIX}/runs/{run_id}/logs")
        return [AutomationLog.model_validate(l) for l in (data or [])]

    # --- counters ---

    def reserve_message_slot(self, business_id: str, contact_id: str, day: date, limit: int) -> bool:
        resp = self._required(
            self._post(f"{self.PREFIX}/message-counts/{business_id}/{contact_id}/{day.isoformat()}/reserve",
                       json={"limit": limit}),
            "rate counter reserve",
        )
        return self._success(resp)

    def release_message_slot(self, business_id: str, contact_id: str, day: date) -> None:
        if self._post(f"{self.PREFIX}/message-counts/{business_id}/{contact_id}/{day.isoformat()}/release") is None:
            logger.error(f"Could not release message slot for contact {contact_id} on {day.isoformat()}")

    def get_message_count(self, business_id: str, contact_id: str, day: date) -> int:
        data = self._fetch(f"{self.PREFIX}/message-counts/{business_id}/{contact_id}/{day.isoformat()}",
                           "rate counter load")
        return int(data.get("count", 0)) if data else 0

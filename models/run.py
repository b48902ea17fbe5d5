from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from enum import Enum
from datetime import datetime, timedelta
from uuid import uuid4

from utils.time_utils import utcnow

DEFAULT_MAX_STEPS = 100
DEFAULT_MAX_RUNTIME = timedelta(minutes=30)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}

# Forward-only lifecycle: Pending -> Running -> (Waiting <-> Running)* -> terminal
ALLOWED_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.RUNNING: {RunStatus.WAITING, RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.WAITING: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.COMPLETED: set(),
    RunStatus.FAILED: set(),
    RunStatus.CANCELLED: set(),
}


class AutomationRun(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    workflow_id: str
    business_id: str
    event_id: Optional[str] = None
    contact_id: Optional[str] = None
    status: RunStatus = RunStatus.PENDING
    current_node_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    steps_completed: int = 0
    max_steps: int = DEFAULT_MAX_STEPS
    idempotency_key: str
    started_at: datetime = Field(default_factory=utcnow)
    deadline: Optional[datetime] = None
    waiting_until: Optional[datetime] = None
    # the one job allowed to start, resume or pick up this run
    active_job_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    error_message: Optional[str] = None

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition(self, target: RunStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

from pydantic import BaseModel, Field
from typing import Optional
from enum import Enum
from datetime import datetime
from uuid import uuid4

from utils.time_utils import utcnow


class JobStatus(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED = "failed"


class AutomationJob(BaseModel):
    """Durable 'wake me up at execute_at to resume run_id at node_id'."""
    id: str = Field(default_factory=lambda: str(uuid4()))
    run_id: str
    node_id: str
    execute_at: datetime
    attempts: int = 0
    status: JobStatus = JobStatus.PENDING
    claimed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

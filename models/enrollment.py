from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime


class EnrollmentRecord(BaseModel):
    contact_id: str
    workflow_id: str
    enrollment_count: int = 0
    first_enrolled_at: Optional[datetime] = None
    last_enrolled_at: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None
    blocked_until: Optional[datetime] = None


class ContactState(BaseModel):
    """Snapshot of a CRM contact, owned by the CRM and only read here."""
    id: str
    business_id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    stage: Optional[str] = None
    goals_achieved: List[str] = Field(default_factory=list)
    attributes: Dict[str, Any] = Field(default_factory=dict)

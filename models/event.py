from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from enum import Enum
from datetime import datetime
from uuid import uuid4

from utils.time_utils import utcnow


class EventSource(str, Enum):
    TEMPLATE = "template"
    API = "api"
    WEBHOOK = "webhook"
    MANUAL = "manual"


class AutomationEvent(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    business_id: str
    intent: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    dedupe_key: Optional[str] = None
    contact_id: Optional[str] = None
    source: EventSource = EventSource.API
    processed: bool = False
    occurred_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)

    def resolved_contact_id(self) -> Optional[str]:
        """Contact may arrive as a top-level field or inside the payload."""
        if self.contact_id:
            return self.contact_id
        value = self.payload.get("contact_id") or self.payload.get("contactId")
        return str(value) if value else None

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from enum import Enum
from datetime import datetime
from uuid import uuid4

from utils.time_utils import utcnow


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class AutomationLog(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    run_id: str
    node_id: Optional[str] = None
    level: LogLevel = LogLevel.INFO
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any


class DispatchResult(BaseModel):
    success: bool
    retryable: bool = False
    context_updates: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def ok(cls, **context_updates: Any) -> "DispatchResult":
        return cls(success=True, context_updates=context_updates)

    @classmethod
    def failed(cls, error: str, retryable: bool = False) -> "DispatchResult":
        return cls(success=False, retryable=retryable, error=error)

from abc import ABC, abstractmethod
from typing import Dict, Any

from models.dispatch import DispatchResult


class ActionDispatcher(ABC):
    @abstractmethod
    async def execute(self,
                      action_type: str,
                      config: Dict[str, Any],
                      context: Dict[str, Any]) -> DispatchResult:
        pass

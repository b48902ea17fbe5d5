import logging
from typing import Dict, Optional

from dispatchers.base_dispatcher import ActionDispatcher
from models.dispatch import DispatchResult

logger = logging.getLogger("automation_engine")


class RoutingDispatcher(ActionDispatcher):
    """Sends each action type to the dispatcher registered for it."""

    def __init__(self, routes: Optional[Dict[str, ActionDispatcher]] = None):
        self.routes: Dict[str, ActionDispatcher] = {k.lower(): v for k, v in (routes or {}).items()}

    def register(self, action_type: str, dispatcher: ActionDispatcher) -> "RoutingDispatcher":
        self.routes[action_type.lower()] = dispatcher
        return self

    async def execute(self, action_type, config, context) -> DispatchResult:
        dispatcher = self.routes.get((action_type or "").lower())
        if dispatcher is None:
            logger.error(f"No dispatcher registered for action type '{action_type}'")
            return DispatchResult.failed(f"Unsupported action type: {action_type}")
        return await dispatcher.execute(action_type, config, context)

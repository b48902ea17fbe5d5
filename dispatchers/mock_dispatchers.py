from .base_dispatcher import ActionDispatcher
from models.dispatch import DispatchResult
from typing import Dict, Any
import asyncio
import logging

logger = logging.getLogger("automation_engine")


class LoggingDispatcher(ActionDispatcher):
    """Pretends to perform every action. Used for local runs without real transports."""

    def __init__(self, channel_name: str = "mock", latency: float = 0.0):
        self.channel_name = channel_name
        self.latency = latency

    async def execute(self, action_type, config, context) -> DispatchResult:
        contact = context.get("contact") or {}
        logger.info(f"[{self.channel_name}] {action_type}...")
        logger.info(f"   Contact: {contact.get('name')} <{contact.get('email') or contact.get('phone')}>")
        logger.info(f"   Config: {config}")
        if self.latency:
            # simulate network latency
            await asyncio.sleep(self.latency)
        return DispatchResult.ok(last_action=action_type)


class EmailDispatcher(LoggingDispatcher):
    def __init__(self, config: Dict[str, Any] = None):
        super().__init__("Email")
        self.config = config or {}


class SmsDispatcher(LoggingDispatcher):
    def __init__(self, config: Dict[str, Any] = None):
        super().__init__("SMS")
        self.config = config or {}


class CrmDispatcher(LoggingDispatcher):
    """create_task / move_pipeline_stage / create_lead against the CRM."""

    def __init__(self, config: Dict[str, Any] = None):
        super().__init__("CRM")
        self.config = config or {}

    async def execute(self, action_type, config, context) -> DispatchResult:
        result = await super().execute(action_type, config, context)
        if action_type == "move_pipeline_stage" and config.get("stage"):
            contact = dict(context.get("contact") or {})
            contact["stage"] = config["stage"]
            result.context_updates["contact"] = contact
        return result

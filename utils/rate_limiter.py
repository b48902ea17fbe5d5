import logging
from datetime import datetime

from executor.guardrail_evaluator import local_day
from models.settings import BusinessAutomationSettings
from storage.base_store import AutomationStore

logger = logging.getLogger("automation_engine")


class ContactRateLimiter:
    """
    Per-contact, per-business-day message counter. Counts live in the store
    so every worker sees the same numbers. A send reserves its slot before
    dispatching, with one conditional increment in the store, and gives it
    back if the dispatch fails.
    """

    def __init__(self, store: AutomationStore):
        self.store = store

    def messages_today(self, settings: BusinessAutomationSettings, contact_id: str, now: datetime) -> int:
        if not contact_id:
            return 0
        return self.store.get_message_count(settings.business_id, contact_id, local_day(settings, now))

    def reserve(self, settings: BusinessAutomationSettings, contact_id: str, now: datetime) -> bool:
        if not contact_id:
            return True
        reserved = self.store.reserve_message_slot(
            settings.business_id,
            contact_id,
            local_day(settings, now),
            settings.rate_limit.max_per_contact_per_day,
        )
        if not reserved:
            logger.debug(f"Contact {contact_id} is at its daily message limit")
        return reserved

    def release(self, settings: BusinessAutomationSettings, contact_id: str, now: datetime) -> None:
        if not contact_id:
            return
        self.store.release_message_slot(settings.business_id, contact_id, local_day(settings, now))

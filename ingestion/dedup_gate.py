import logging
from datetime import datetime, timedelta
from typing import Callable

from executor.errors import DuplicateEvent
from models.event import AutomationEvent
from models.settings import BusinessAutomationSettings
from storage.base_store import AutomationStore
from utils.idempotency import IdempotencyKey
from utils.time_utils import utcnow

logger = logging.getLogger("automation_engine")


class DedupGate:
    """
    First stop for every inbound event. Duplicate webhook deliveries inside
    the business's dedupe window are stored already processed and never
    reach the matcher.
    """

    def __init__(self, store: AutomationStore, clock: Callable[[], datetime] = utcnow,
                 default_window_minutes: int = 60):
        self.store = store
        self.clock = clock
        self.default_window_minutes = default_window_minutes

    def admit(self, event: AutomationEvent, settings: BusinessAutomationSettings) -> AutomationEvent:
        """Records the event. Raises DuplicateEvent if it repeats one inside the window."""
        if not event.dedupe_key:
            event.dedupe_key = IdempotencyKey.for_event(event.business_id, event.intent, event.payload)

        window = settings.dedupe_window_minutes or self.default_window_minutes
        window_start = self.clock() - timedelta(minutes=window)

        duplicate = self.store.record_event(event, window_start)
        if duplicate is not None:
            logger.info(f"Dropping duplicate event {event.id} ({event.intent}); "
                        f"first seen as {duplicate.id} within {window}m")
            raise DuplicateEvent(f"Duplicate of event {duplicate.id}", duplicate_of=duplicate.id)
        return event

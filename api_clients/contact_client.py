from typing import Optional
import logging

from api_clients.base_client import BaseClient
from models.enrollment import ContactState
from storage.base_store import ContactDirectory

logger = logging.getLogger("automation_engine")


class ContactClient(BaseClient, ContactDirectory):
    """Looks up contact state (tags, pipeline stage, goals) from the CRM backend."""

    def get_contact(self, business_id: str, contact_id: str) -> Optional[ContactState]:
        data = self._get(f"/crm/businesses/{business_id}/contacts/{contact_id}/automation-state")
        if not data:
            return None
        try:
            return ContactState.model_validate(data)
        except Exception as e:
            logger.error(f"Invalid contact payload for {contact_id}: {e}")
            return None

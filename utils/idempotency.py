import hashlib
import json
from typing import Any, Dict


def stable_hash(payload: Dict[str, Any]) -> str:
    """
    Deterministic hash of a JSON-like payload. Keys are sorted so that two
    deliveries of the same webhook body hash the same regardless of ordering.
    """
    raw = json.dumps(payload or {}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode()).hexdigest()


class IdempotencyKey:
    @staticmethod
    def for_event(business_id: str, intent: str, payload: Dict[str, Any]) -> str:
        """Dedupe key used when the caller did not supply one."""
        return f"{business_id}:{intent}:{stable_hash(payload)}"

    @staticmethod
    def for_enrollment(workflow_id: str, contact_id: str, event_id: str) -> str:
        """At most one run may exist per workflow + contact + event."""
        return f"{workflow_id}:{contact_id}:{event_id}"

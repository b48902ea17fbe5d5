import requests
from typing import Any, Dict, Optional
import os
import logging

logger = logging.getLogger("automation_engine")


class BaseClient:
    def __init__(self, base_url: Optional[str] = None, timeout: float = None, api_key: Optional[str] = None):
        self.base_url = (base_url or os.getenv("ORCHESTRATOR_URL", "http://localhost:8000/api")).rstrip("/")
        self.timeout = timeout or float(os.getenv("ORCHESTRATOR_TIMEOUT", "10"))
        self.session = requests.Session()
        api_key = api_key or os.getenv("ORCHESTRATOR_API_KEY")
        if api_key:
            self.session.headers.update({"X-API-Key": api_key})

    def _get(self, endpoint: str, params: Dict = None, raise_errors: bool = False) -> Optional[Any]:
        """GET returning parsed JSON, or None on 404. Other failures return None unless `raise_errors`."""
        try:
            resp = self.session.get(f"{self.base_url}{endpoint}", params=params, timeout=self.timeout)
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.json()
        except Exception as e:
            logger.error(f"GET {endpoint} failed: {e}")
            if raise_errors:
                raise
            return None

    def _post(self, endpoint: str, json: Dict = None) -> Optional[Any]:
        try:
            resp = self.session.post(f"{self.base_url}{endpoint}", json=json, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except Exception as e:
            logger.error(f"POST {endpoint} failed: {e}")
            if getattr(e, "response", None) is not None:
                logger.error(f"Response: {e.response.text}")
            return None

    def _put(self, endpoint: str, json: Dict = None) -> Optional[Any]:
        try:
            resp = self.session.put(f"{self.base_url}{endpoint}", json=json, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except Exception as e:
            logger.error(f"PUT {endpoint} failed: {e}")
            return None

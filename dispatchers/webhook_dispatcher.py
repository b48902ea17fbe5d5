import asyncio
import logging
from typing import Any, Dict, Optional

import requests

from dispatchers.base_dispatcher import ActionDispatcher
from models.dispatch import DispatchResult

logger = logging.getLogger("automation_engine")

RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


class WebhookDispatcher(ActionDispatcher):
    """
    `call_webhook` over HTTP. Config: url (required), method (POST),
    headers, body. Without a body the run context is posted.
    """

    def __init__(self, timeout: int = 10, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def _send(self, method: str, url: str, headers: Dict[str, str], body: Any) -> requests.Response:
        return self.session.request(method, url, json=body, headers=headers, timeout=self.timeout)

    async def execute(self, action_type, config, context) -> DispatchResult:
        url = config.get("url")
        if not url:
            return DispatchResult.failed("call_webhook requires 'url' in config")

        method = str(config.get("method", "POST")).upper()
        body = config.get("body", {"context": context})
        headers = config.get("headers") or {}

        try:
            resp = await asyncio.to_thread(self._send, method, url, headers, body)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            logger.warning(f"Webhook {method} {url} unreachable: {e}")
            return DispatchResult.failed(f"Webhook unreachable: {e}", retryable=True)
        except requests.exceptions.RequestException as e:
            logger.error(f"Webhook {method} {url} failed: {e}")
            return DispatchResult.failed(f"Webhook request failed: {e}")

        if resp.status_code >= 400:
            retryable = resp.status_code in RETRYABLE_STATUS
            logger.warning(f"Webhook {method} {url} returned {resp.status_code}")
            return DispatchResult.failed(f"Webhook returned HTTP {resp.status_code}", retryable=retryable)

        try:
            data = resp.json()
        except ValueError:
            data = None
        return DispatchResult.ok(webhook_status=resp.status_code, webhook_response=data)

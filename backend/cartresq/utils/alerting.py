# /cartresq/utils/alerting.py

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

# Repeated alerts for the same failure are folded into one per window
ALERT_COOLDOWN_SECONDS = 300


class AlertingService:
    """
    Posts critical events (failed jobs, a blocked mail account) to an operator
    webhook. Without a webhook the alert is only logged.
    """

    def __init__(self, webhook_url: Optional[str], environment: str = "production",
                 cooldown_seconds: float = ALERT_COOLDOWN_SECONDS):
        self.webhook_url = webhook_url
        self.environment = environment
        self.cooldown_seconds = cooldown_seconds
        self._last_sent: Dict[str, float] = {}
        self.client = httpx.AsyncClient(timeout=5.0) if webhook_url else None

    def _suppressed(self, key: str) -> bool:
        now = time.monotonic()
        last = self._last_sent.get(key)
        if last is not None and now - last < self.cooldown_seconds:
            return True
        self._last_sent[key] = now
        return False

    def _payload(self, error: str, context: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "severity": "critical",
            "service": "cartresq-scheduler",
            "environment": self.environment,
            "summary": error,
            "details": context,
            "raisedAt": datetime.now(timezone.utc).isoformat(),
        }

    async def send_critical_alert(self, error: str, context: Dict[str, Any]) -> bool:
        """Returns True when the webhook accepted the alert."""
        if self._suppressed(error):
            logger.debug(f"Alert '{error}' suppressed; already raised in the last {self.cooldown_seconds:.0f}s")
            return False
        if not self.client:
            logger.warning(f"CRITICAL (no alert webhook configured): {error}")
            return False

        try:
            response = await self.client.post(self.webhook_url, json=self._payload(error, context))
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.error(f"Alert webhook rejected '{error}': {e}")
            return False

    async def cleanup(self):
        if self.client:
            await self.client.aclose()
            self.client = None

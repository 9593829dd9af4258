# /chatflow/utils/alerting.py

import time
import httpx
import logging
from typing import Optional, Dict, Any, Tuple
from datetime import datetime, timezone

from chatflow.config.settings import settings

# Graph integrity failures mean a published flow no longer matches the
# sessions pinned to it. Every affected session raises the same alert, so
# repeats for one flow version and node are collapsed within a cooldown.

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300


class AlertingService:
    def __init__(self, webhook_url: Optional[str], cooldown_seconds: float = ALERT_COOLDOWN_SECONDS):
        self.webhook_url = webhook_url
        self.cooldown_seconds = cooldown_seconds
        self.client = httpx.AsyncClient(timeout=5.0) if webhook_url else None
        self._last_sent: Dict[Tuple, float] = {}

    def _fingerprint(self, error: str, context: Dict[str, Any]) -> Tuple:
        return (error, context.get("flow_id"), context.get("flow_version"), context.get("node_id"))

    async def send_critical_alert(self, error: str, context: Dict[str, Any]) -> bool:
        """Returns True when the alert was posted to the webhook."""
        logger.critical(f"{error} {context}")
        if not self.client:
            return False

        fingerprint = self._fingerprint(error, context)
        now = time.monotonic()
        last = self._last_sent.get(fingerprint)
        if last is not None and now - last < self.cooldown_seconds:
            return False

        payload = {
            "severity": "critical",
            "service": "chatflow-engine",
            "environment": settings.environment,
            "error": error,
            "context": context,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            response = await self.client.post(self.webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Alert webhook rejected or unreachable: {e}")
            return False
        self._last_sent[fingerprint] = now
        return True

    async def cleanup(self):
        if self.client:
            await self.client.aclose()


alerting_service = AlertingService(settings.alerting_webhook_url)

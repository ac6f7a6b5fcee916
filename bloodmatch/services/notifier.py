"""
Notification gateway client.

Posts {user_id, event, payload} to the notification gateway, which owns
email / SMS / push delivery. Best-effort: when no gateway is configured the
notification is only logged.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog

from bloodmatch.core.config import Settings, get_settings

logger = structlog.get_logger()


class HttpNotifier:

    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_settings()
        self._client = client

    async def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        url = self.settings.notification_gateway_url
        if not url:
            logger.info("notification_logged_only", user_id=user_id, notification_event=event)
            return

        body = {"user_id": user_id, "event": event, "payload": payload}
        if self._client is not None:
            resp = await self._client.post(url, json=body, timeout=self.settings.notification_timeout_seconds)
        else:
            async with httpx.AsyncClient(timeout=self.settings.notification_timeout_seconds) as client:
                resp = await client.post(url, json=body)
        resp.raise_for_status()
        logger.info("notification_sent", user_id=user_id, notification_event=event)

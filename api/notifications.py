import logging
import time
from typing import Any, Dict, Optional

import aiohttp

from api.metrics import metrics


logger = logging.getLogger(__name__)

SCOPE_STRATEGY_SUBSCRIBERS = 'strategy_subscribers'


class NotificationWebhook:
    """Fire-and-forget delivery of subscriber notifications to an external dispatcher."""

    def __init__(self, url: Optional[str] = None, timeout_s: float = 5.0):
        # Empty or placeholder URLs disable delivery.
        if url and 'your-webhook-url' not in str(url):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)

    async def send(
        self,
        title: str,
        body: str,
        scope: str = SCOPE_STRATEGY_SUBSCRIBERS,
        strategy_id: Optional[str] = None,
        item_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self.enabled:
            logger.info("[Notify] %s: %s (strategy=%s item=%s)", title, body, strategy_id, item_id)
            metrics.record_notification('logged')
            return

        payload = {
            'title': title,
            'body': body,
            'target_scope': scope,
            'strategy_id': strategy_id,
            'item_id': item_id,
            'data': data or {},
            'timestamp': time.time(),
        }

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                ) as response:
                    if response.status >= 300:
                        logger.error("[Notify] Webhook failed with status %s", response.status)
                        metrics.record_notification('failed')
                        return
            metrics.record_notification('sent')
        except Exception as e:
            logger.error("[Notify] Webhook error: %s", e)
            metrics.record_notification('failed')

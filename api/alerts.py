import asyncio
import logging
import time
from typing import Dict, Optional

import aiohttp


logger = logging.getLogger(__name__)


class AlertWebhook:
    """Posts JSON alerts to a webhook; log-only when no URL is configured."""

    def __init__(self, url: Optional[str] = None, timeout: float = 5.0):
        if url and 'your-webhook-url' not in str(url):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                         metadata: Optional[Dict] = None):
        if not self.enabled:
            logger.warning("[Alert] %s: %s - %s", severity.upper(), alert_type, message)
            return

        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': time.time(),
            'metadata': metadata or {},
        }
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.webhook_url, json=payload) as response:
                    if response.status >= 300:
                        logger.error("[Alert] Webhook failed with status %s", response.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("[Alert] Webhook error: %s", e)

    async def emergency_stop_alert(self, reason: str):
        await self.send_alert(
            'emergency_stop',
            f'Emergency stop triggered: {reason}',
            'critical',
            {'reason': reason},
        )

    async def liquidation_failed_alert(self, symbol: str, error: str):
        await self.send_alert(
            'liquidation_failed',
            f'Failed to close position for {symbol}: {error}',
            'critical',
            {'symbol': symbol, 'error': error},
        )

"""
Notification hand-off.

Rendering and delivery belong to the external notification subsystem; this
service only hands it (recipient, template id, usage stats).

Templates:
- usage_alert: usage crossed the alert threshold (75% by default)
- overage_notice: usage exceeded the included allowance
- period_summary: a billing period closed and usage was reset
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from consensus_ai.core.logging import get_logger

logger = get_logger(__name__)

USAGE_ALERT = "usage_alert"
OVERAGE_NOTICE = "overage_notice"
PERIOD_SUMMARY = "period_summary"


class Notifier(ABC):
    @abstractmethod
    async def notify(self, recipient: str, template_id: str, usage_stats: Dict[str, Any]) -> None:
        """Hand a notification to the delivery subsystem."""


class LoggingNotifier(Notifier):
    """Records notifications in the structured log only."""

    async def notify(self, recipient: str, template_id: str, usage_stats: Dict[str, Any]) -> None:
        logger.info(
            "notification_dispatched",
            recipient=recipient,
            template_id=template_id,
            usage_percentage=usage_stats.get("usagePercentage"),
            period_key=usage_stats.get("periodKey"),
        )


class WebhookNotifier(Notifier):
    """POSTs notifications as JSON to the notification subsystem."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def notify(self, recipient: str, template_id: str, usage_stats: Dict[str, Any]) -> None:
        payload = {
            "recipient": recipient,
            "templateId": template_id,
            "usageStats": usage_stats,
        }
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            response = await client.post(self.url, json=payload)
        response.raise_for_status()
        logger.info(
            "notification_dispatched",
            recipient=recipient,
            template_id=template_id,
            status_code=response.status_code,
        )


def build_notifier(webhook_url: Optional[str]) -> Notifier:
    if webhook_url:
        return WebhookNotifier(webhook_url)
    return LoggingNotifier()

"""
Operational alerts to Slack via Incoming Webhooks.
Used for failed deal syncs and Nuvemshop webhooks that exhaust their retries.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx
import structlog

from hudlab.config import settings

logger = structlog.get_logger()


class AlertService:
    """Rate-limited Slack alerts. No-op when Slack is not configured."""

    def __init__(self, webhook_url: Optional[str] = None, enabled: Optional[bool] = None):
        self.webhook_url = webhook_url if webhook_url is not None else settings.slack_webhook_url
        if enabled is None:
            enabled = str(settings.slack_alerts_enabled).lower() == "true"
        self.enabled = enabled

        # error key -> last time an alert went out
        self._last_sent: Dict[str, datetime] = {}
        self._rate_limit_window = timedelta(minutes=5)

    def _should_send(self, alert_key: str) -> bool:
        now = datetime.utcnow()
        last = self._last_sent.get(alert_key, datetime.min)
        if now - last >= self._rate_limit_window:
            self._last_sent[alert_key] = now
            return True

        logger.debug("Alert rate limited", alert_key=alert_key)
        return False

    def _format(self, alert_type: str, message: str, details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        lines = [
            "🚨 *HudLab Dashboard Alert*",
            f"• Type: `{alert_type}`",
            f"• Error: {message}",
            f"• Time: `{datetime.utcnow().isoformat()}`",
        ]
        if details:
            lines.append("")
            lines.extend(f"• {key}: `{value}`" for key, value in details.items())
        return {"text": "\n".join(lines), "mrkdwn": True}

    async def send_alert(
        self,
        alert_type: str,
        message: str,
        key: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Post an alert to Slack.

        Args:
            alert_type: e.g. 'deal_sync_failure', 'webhook_retries_exhausted'
            message: Human readable error
            key: Rate limit key suffix, so distinct resources alert independently
            details: Extra key/value lines

        Returns:
            True if the alert was delivered
        """
        if not self.enabled or not self.webhook_url:
            logger.debug("Slack alerts disabled, skipping", alert_type=alert_type)
            return False

        alert_key = f"{alert_type}:{key}" if key else alert_type
        if not self._should_send(alert_key):
            return False

        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(
                    self.webhook_url, json=self._format(alert_type, message, details)
                )
                response.raise_for_status()
            logger.info("Slack alert sent", alert_type=alert_type)
            return True
        except httpx.HTTPError as e:
            logger.error("Failed to send Slack alert", alert_type=alert_type, error=str(e))
            return False

    async def send_sync_failure_alert(self, error_message: str, sync_log_id: Optional[int] = None) -> bool:
        details = {"sync_log_id": sync_log_id} if sync_log_id else None
        return await self.send_alert("deal_sync_failure", error_message, details=details)

    async def send_webhook_exhausted_alert(
        self, log_id: str, event: str, error_message: Optional[str], retry_count: int
    ) -> bool:
        return await self.send_alert(
            "webhook_retries_exhausted",
            error_message or "Webhook failed",
            key=log_id,
            details={"log_id": log_id, "event": event, "retry_count": retry_count},
        )


_alert_service: Optional[AlertService] = None


def get_alert_service() -> AlertService:
    """Get or create global alert service instance."""
    global _alert_service
    if _alert_service is None:
        _alert_service = AlertService()
    return _alert_service

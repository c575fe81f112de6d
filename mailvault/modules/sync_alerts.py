"""
Sync Alert System
Notifies webhook and Slack channels when an account is taken out of rotation
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict

import requests

from ..utils.config import AlertConfig
from ..utils.sanitization import redact_email, sanitize_for_logging


@dataclass
class SyncAlert:
    """What the channels are told about a disabled account"""
    account_id: str
    email: str
    error_count: int
    error_message: str
    timestamp: str


class SyncAlertSystem:
    """
    Sends account-disabled alerts

    Delivery failures are logged and never propagate: an unreachable alert
    channel must not break the scheduler.
    """

    def __init__(self, config: AlertConfig):
        self.config = config
        self.logger = logging.getLogger("SyncAlertSystem")

    @property
    def enabled(self) -> bool:
        return bool(
            (self.config.webhook_enabled and self.config.webhook_url)
            or (self.config.slack_enabled and self.config.slack_webhook)
        )

    async def account_disabled(self, account_id: str, email: str, error_count: int, error_message: str):
        """Post the alert to every configured channel without blocking the event loop"""
        if not self.enabled:
            return
        alert = SyncAlert(
            account_id=account_id,
            email=redact_email(email),
            error_count=error_count,
            error_message=sanitize_for_logging(error_message or "", max_length=500),
            timestamp=datetime.now().isoformat(),
        )
        await asyncio.to_thread(self.send_alert, alert)

    def send_alert(self, alert: SyncAlert):
        if self.config.webhook_enabled and self.config.webhook_url:
            self._post("Webhook", self.config.webhook_url, asdict(alert))

        if self.config.slack_enabled and self.config.slack_webhook:
            self._post("Slack", self.config.slack_webhook, self._slack_payload(alert))

    def _post(self, channel: str, url: str, payload: Dict[str, Any]):
        try:
            response = requests.post(
                url,
                json=payload,
                headers={'Content-Type': 'application/json'},
                timeout=10
            )
            if response.status_code == 200:
                self.logger.info(f"{channel} alert sent successfully")
            else:
                self.logger.warning(f"{channel} alert failed: {response.status_code}")
        except requests.RequestException as e:
            # Exception text can embed the webhook URL, which is a secret
            self.logger.error(f"Failed to send {channel} alert: {type(e).__name__}")

    @staticmethod
    def _sanitize_for_slack(text: str) -> str:
        """Escape Slack control characters (&, <, >)"""
        text = sanitize_for_logging(text or "", max_length=500)
        return text.replace('&', '&amp;').replace('<', '&lt;').replace('>', '&gt;')

    def _slack_payload(self, alert: SyncAlert) -> Dict[str, Any]:
        return {
            "text": "Mail sync disabled for an account",
            "attachments": [{
                "color": "#ff0000",
                "title": f"Sync disabled: {self._sanitize_for_slack(alert.account_id)}",
                "fields": [
                    {"title": "Account", "value": self._sanitize_for_slack(alert.email), "short": True},
                    {"title": "Consecutive failures", "value": str(alert.error_count), "short": True},
                    {"title": "Last error", "value": self._sanitize_for_slack(alert.error_message), "short": False},
                ],
                "footer": "MailVault",
                "ts": int(datetime.now().timestamp()),
            }],
        }

"""
Operator alerting for the Issue Assembly Workers

Posts a JSON message to a chat webhook (Slack-compatible "text" payload)
when an issue's assembly workflow aborts. Alerting is best-effort: failures
are logged and never raised, so they cannot mask the workflow error.
"""

import logging
from datetime import datetime
from typing import Dict, Any, Optional

import pytz
import requests

from ..config.settings import ALERT_WEBHOOK_URL, ALERT_TIMEOUT_SECONDS, PUBLICATION_TIMEZONE

logger = logging.getLogger(__name__)


class AlertClient:
    """Best-effort operator notifications"""

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = ALERT_TIMEOUT_SECONDS):
        self.webhook_url = webhook_url if webhook_url is not None else ALERT_WEBHOOK_URL
        self.timeout = timeout
        self.timezone = pytz.timezone(PUBLICATION_TIMEZONE)

    def notify_workflow_failure(self, issue: Dict[str, Any], error: BaseException,
                                step: Optional[str] = None) -> bool:
        """
        Tell operators an issue failed assembly.

        Returns True when the webhook accepted the message. Never raises.
        """
        message = (
            f":rotating_light: Issue assembly failed\n"
            f"Issue: {issue.get('id')} ({issue.get('issue_date')})\n"
            f"Publication: {issue.get('publication_id')}\n"
            f"Step: {step or issue.get('workflow_state') or 'unknown'}\n"
            f"Error: {type(error).__name__}: {error}\n"
            f"At: {datetime.now(self.timezone).strftime('%Y-%m-%d %H:%M %Z')}"
        )
        return self.send(message)

    def send(self, text: str) -> bool:
        if not self.webhook_url:
            logger.warning(f"[Alert] No ALERT_WEBHOOK_URL configured, alert not sent: {text}")
            return False

        try:
            response = requests.post(self.webhook_url, json={'text': text}, timeout=self.timeout)
            response.raise_for_status()
            logger.info("[Alert] Operator alert sent")
            return True
        except Exception as e:
            logger.error(f"[Alert] Failed to send operator alert: {e}")
            return False

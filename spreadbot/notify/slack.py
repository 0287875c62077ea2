from __future__ import annotations

import logging
import os
from typing import Optional

import requests

logger = logging.getLogger(__name__)


class SlackNotifier:
    """Best-effort Slack webhook messages. Failures are logged, never raised."""

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 10.0) -> None:
        self.webhook_url = webhook_url if webhook_url is not None else os.getenv("SLACK_WEBHOOK")
        self.timeout = timeout
        self.session = requests.Session()

    def send(self, text: str) -> bool:
        if not self.webhook_url:
            logger.warning("SLACK_WEBHOOK is not set; skipping notification")
            return False
        try:
            response = self.session.post(self.webhook_url, json={"text": text}, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Failed to send Slack notification: %s", exc)
            return False
        if response.status_code != 200:
            logger.warning("Slack webhook returned %s: %s", response.status_code, response.text[:200])
            return False
        return True

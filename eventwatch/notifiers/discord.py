"""
Discord webhook notifier.
"""

import time
from datetime import datetime
from typing import Any, Optional

import requests

from eventwatch.rules.types import Severity
from .base import Notifier, NotificationResult, retry_after_seconds


class DiscordNotifier(Notifier):
    """Posts messages to a user's Discord webhook. Text only."""

    name = "discord"

    COLOR_MEDIUM = 0xFFA500  # Orange
    COLOR_HIGH = 0xFF0000  # Red
    COLOR_PLAIN = 0x3498DB  # Blue

    def __init__(self, mention_on_high: bool = True, timeout: float = 10):
        self.mention_on_high = mention_on_high
        self.timeout = timeout

    def send(
        self, destination: str, text: str, severity: Optional[Severity] = None
    ) -> NotificationResult:
        """Send message to the webhook at ``destination``."""
        if not destination:
            return NotificationResult(success=False, channel=self.name, error="No webhook URL")

        try:
            payload = self._create_payload(text, severity)
            response = self._send_webhook(destination, payload)

            if response.ok:
                return NotificationResult(success=True, channel=self.name)
            else:
                return NotificationResult(
                    success=False,
                    channel=self.name,
                    error=f"HTTP {response.status_code}: {response.text}",
                )

        except requests.exceptions.ConnectionError as e:
            return NotificationResult(
                success=False,
                channel=self.name,
                error=f"Connection error: {str(e)}",
            )
        except Exception as e:
            return NotificationResult(
                success=False,
                channel=self.name,
                error=str(e),
            )

    def _send_webhook(self, url: str, payload: dict[str, Any]) -> requests.Response:
        """Send webhook with rate limit handling."""
        response = requests.post(url, json=payload, timeout=self.timeout)

        if response.status_code == 429:
            time.sleep(retry_after_seconds(response))
            response = requests.post(url, json=payload, timeout=self.timeout)

        return response

    def _create_payload(self, text: str, severity: Optional[Severity]) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "embeds": [
                {
                    "description": text,
                    "color": self._get_color(severity),
                    "timestamp": datetime.now().isoformat(),
                }
            ],
        }

        if self.mention_on_high and severity == Severity.HIGH:
            payload["content"] = "@here"

        return payload

    def _get_color(self, severity: Optional[Severity]) -> int:
        if severity == Severity.HIGH:
            return self.COLOR_HIGH
        elif severity == Severity.MEDIUM:
            return self.COLOR_MEDIUM
        return self.COLOR_PLAIN

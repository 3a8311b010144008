"""
Telegram bot notifier. Voice capable.
"""

import logging
import time
from typing import Any, Optional

import requests

from eventwatch.rules.types import Severity
from .base import Notifier, NotificationResult, retry_after_seconds

logger = logging.getLogger(__name__)


class TelegramNotifier(Notifier):
    """Sends messages and voice notes through the Telegram Bot API."""

    name = "telegram"
    supports_audio = True

    def __init__(
        self,
        bot_token: str,
        api_url: str = "https://api.telegram.org",
        timeout: float = 10,
    ):
        self.bot_token = bot_token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def _method_url(self, method: str) -> str:
        return f"{self.api_url}/bot{self.bot_token}/{method}"

    def send(
        self, destination: str, text: str, severity: Optional[Severity] = None
    ) -> NotificationResult:
        """Send a text message to chat ``destination``."""
        return self._call(
            "sendMessage",
            destination,
            data={"chat_id": destination, "text": text},
        )

    def send_audio(
        self, destination: str, audio: bytes, caption: Optional[str] = None
    ) -> NotificationResult:
        """Send an OGG/Opus voice note."""
        data: dict[str, Any] = {"chat_id": destination}
        if caption:
            data["caption"] = caption
        return self._call(
            "sendVoice",
            destination,
            data=data,
            files={"voice": ("segment.ogg", audio, "audio/ogg")},
        )

    def _call(
        self,
        method: str,
        destination: str,
        data: dict[str, Any],
        files: Optional[dict[str, Any]] = None,
    ) -> NotificationResult:
        if not self.bot_token:
            return NotificationResult(success=False, channel=self.name, error="Bot token not configured")
        if not destination:
            return NotificationResult(success=False, channel=self.name, error="No chat id")

        try:
            response = self._post(method, data, files)
            if response.ok:
                return NotificationResult(success=True, channel=self.name)
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
            return NotificationResult(success=False, channel=self.name, error=str(e))

    def _post(
        self, method: str, data: dict[str, Any], files: Optional[dict[str, Any]]
    ) -> requests.Response:
        """POST with one retry on rate limiting."""
        url = self._method_url(method)
        if files:
            response = requests.post(url, data=data, files=files, timeout=self.timeout)
        else:
            response = requests.post(url, json=data, timeout=self.timeout)

        if response.status_code == 429:
            retry_after = retry_after_seconds(response)
            logger.debug(f"Telegram rate limited, retrying in {retry_after}s")
            time.sleep(retry_after)
            if files:
                response = requests.post(url, data=data, files=files, timeout=self.timeout)
            else:
                response = requests.post(url, json=data, timeout=self.timeout)

        return response

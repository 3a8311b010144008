"""
Base notifier classes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Optional

import requests

from eventwatch.config import AppConfig
from eventwatch.rules.types import Severity


@dataclass
class NotificationResult:
    """Result of a notification attempt."""

    success: bool
    channel: str
    error: Optional[str] = None


def retry_after_seconds(
    response: requests.Response, default: float = 1.0, limit: float = 30.0
) -> float:
    """
    How long a rate-limited response asks us to wait.

    The JSON body wins over the header: Telegram sends
    ``parameters.retry_after`` and Discord a top-level ``retry_after``.
    The Retry-After header may be seconds or an HTTP date. Anything
    unreadable gives ``default``; the result is capped at ``limit``.
    """
    delay = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        parameters = body.get("parameters")
        if isinstance(parameters, dict):
            delay = parameters.get("retry_after")
        if delay is None:
            delay = body.get("retry_after")
    if not isinstance(delay, (int, float)) or isinstance(delay, bool):
        delay = _parse_retry_header(response.headers.get("Retry-After"))
    if delay is None:
        delay = default
    return min(max(float(delay), 0.0), limit)


def _parse_retry_header(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return (when - datetime.now(timezone.utc)).total_seconds()


class ChannelKind(str, Enum):
    """How a channel receives a delivery plan."""

    CHAT = "chat"  # one message per teaser/segment, paced
    INBOX = "inbox"  # one stored record, immediate


class Notifier(ABC):
    """Abstract base class for channel adapters."""

    name: str = "unknown"
    kind: ChannelKind = ChannelKind.CHAT
    supports_audio: bool = False

    @abstractmethod
    def send(
        self, destination: str, text: str, severity: Optional[Severity] = None
    ) -> NotificationResult:
        """
        Send a text message.

        Args:
            destination: Channel-specific address (chat id, webhook URL, user id)
            text: Message text
            severity: Severity of the event being reported, if any

        Returns:
            NotificationResult indicating success or failure
        """
        pass

    def send_audio(
        self, destination: str, audio: bytes, caption: Optional[str] = None
    ) -> NotificationResult:
        """Send a voice note. Channels without audio support refuse."""
        return NotificationResult(
            success=False,
            channel=self.name,
            error="Audio not supported",
        )


class NotifierFactory:
    """Factory for creating notifier instances."""

    @staticmethod
    def create(channel_type: str, config: AppConfig, db=None) -> Notifier:
        """
        Create a notifier from configuration.

        Args:
            channel_type: "telegram", "discord" or "in_app"
            config: Application configuration
            db: Database, required for the in-app inbox

        Raises:
            ValueError: If channel type is unknown
        """
        if channel_type == "telegram":
            from .telegram import TelegramNotifier

            return TelegramNotifier(
                bot_token=config.channels.telegram.bot_token,
                api_url=config.channels.telegram.api_url,
            )

        elif channel_type == "discord":
            from .discord import DiscordNotifier

            return DiscordNotifier(mention_on_high=config.channels.discord.mention_on_high)

        elif channel_type == "in_app":
            from .in_app import InAppNotifier

            if db is None:
                raise ValueError("In-app notifier needs a database")
            return InAppNotifier(db)

        else:
            raise ValueError(f"Unknown notifier type: {channel_type}")

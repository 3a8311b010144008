"""
In-app inbox channel backed by the local database.
"""

import sqlite3
from typing import Optional

from eventwatch.database.connection import Database
from eventwatch.database.models import InAppNotification
from eventwatch.database.repository import InAppNotificationRepository
from eventwatch.rules.types import Severity
from .base import ChannelKind, Notifier, NotificationResult


class InAppNotifier(Notifier):
    """Stores each delivery as one inbox record."""

    name = "in_app"
    kind = ChannelKind.INBOX

    def __init__(self, db: Database):
        self.repo = InAppNotificationRepository(db)

    def send(
        self, destination: str, text: str, severity: Optional[Severity] = None
    ) -> NotificationResult:
        return self.store(destination, text)

    def store(
        self,
        destination: str,
        message: str,
        segments: Optional[list[str]] = None,
        audio_urls: Optional[list[str]] = None,
    ) -> NotificationResult:
        """
        Persist message, segments and audio links together.

        Args:
            destination: User id
        """
        try:
            self.repo.create(
                InAppNotification(
                    user_id=int(destination),
                    message=message,
                    segments=list(segments or []),
                    audio_urls=list(audio_urls or []),
                )
            )
        except (sqlite3.Error, ValueError) as e:
            return NotificationResult(success=False, channel=self.name, error=str(e))

        return NotificationResult(success=True, channel=self.name)

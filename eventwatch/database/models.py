"""
Data models for EventWatch persistence.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class User:
    """User with channel destinations."""

    id: Optional[int] = None
    email: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    discord_webhook_url: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Holding:
    """A tracked instrument in a user's portfolio."""

    user_id: int
    symbol: str
    shares: float = 0.0
    average_cost: Optional[float] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class NotificationSettings:
    """Per-user channel switches and delivery mode."""

    user_id: int
    enabled: bool = True
    telegram: bool = False
    discord: bool = False
    in_app: bool = True
    mode: str = "text"  # "text" or "voice"

    @property
    def voice_enabled(self) -> bool:
        return self.mode == "voice"


@dataclass
class SentNotificationRecord:
    """Deduplication ledger entry."""

    user_id: int
    symbol: str
    event_kind: str
    sent_at: datetime
    expires_at: datetime
    id: Optional[int] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now


@dataclass
class InAppNotification:
    """Inbox message stored for the app."""

    user_id: int
    message: str
    segments: list[str] = field(default_factory=list)
    audio_urls: list[str] = field(default_factory=list)
    read: bool = False
    id: Optional[int] = None
    created_at: Optional[datetime] = None

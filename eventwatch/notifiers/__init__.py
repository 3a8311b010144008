from .base import ChannelKind, NotificationResult, Notifier, NotifierFactory

__all__ = ["ChannelKind", "NotificationResult", "Notifier", "NotifierFactory"]

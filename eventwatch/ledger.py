"""
Deduplication ledger: at most one notification per key per suppression window.
"""

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Callable, Optional

from eventwatch.database.connection import Database
from eventwatch.database.repository import SentNotificationRepository

logger = logging.getLogger(__name__)


class DeduplicationLedger:
    """
    Tracks which (user, symbol, event kind) keys were notified recently.

    Reads fail open and writes are skipped on store errors: a possible
    duplicate is preferred over silently suppressing future alerts.
    """

    def __init__(
        self,
        db: Database,
        window_hours: float = 24,
        now_fn: Callable[[], datetime] = datetime.now,
    ):
        self.repo = SentNotificationRepository(db)
        self.window = timedelta(hours=window_hours)
        self.now_fn = now_fn

    def was_sent_today(self, user_id: int, symbol: str, event_kind: str) -> bool:
        """True if an unexpired record exists for the key."""
        try:
            return self.repo.exists_unexpired(user_id, symbol, event_kind, self.now_fn())
        except sqlite3.Error as e:
            logger.warning(
                f"Ledger read failed for user {user_id} {symbol}/{event_kind}, "
                f"treating as not sent: {e}"
            )
            return False

    def record(self, user_id: int, symbol: str, event_kind: str) -> bool:
        """
        Record a sent notification expiring one window from now.

        Returns:
            True if a new record was written, False if an unexpired one
            already existed or the write failed
        """
        now = self.now_fn()
        try:
            written = self.repo.claim(user_id, symbol, event_kind, now, now + self.window)
        except sqlite3.Error as e:
            logger.warning(f"Ledger write failed for user {user_id} {symbol}/{event_kind}: {e}")
            return False

        if written:
            logger.debug(f"Recorded {symbol}/{event_kind} for user {user_id}")
        return written

    def claim(self, user_id: int, symbol: str, event_kind: str) -> Optional[datetime]:
        """
        Reserve a key before sending.

        Returns:
            The claim time if this caller owns the key, None if an unexpired
            record already exists. A store error counts as owned so the
            alert still goes out.
        """
        now = self.now_fn()
        try:
            written = self.repo.claim(user_id, symbol, event_kind, now, now + self.window)
        except sqlite3.Error as e:
            logger.warning(
                f"Ledger claim failed for user {user_id} {symbol}/{event_kind}, "
                f"sending unrecorded: {e}"
            )
            return now

        return now if written else None

    def release(
        self, user_id: int, symbol: str, event_kind: str, claimed_at: datetime
    ) -> bool:
        """Give back a claim whose delivery failed on every channel."""
        try:
            released = self.repo.release(user_id, symbol, event_kind, claimed_at)
        except sqlite3.Error as e:
            logger.warning(f"Ledger release failed for user {user_id} {symbol}/{event_kind}: {e}")
            return False

        if released:
            logger.debug(f"Released {symbol}/{event_kind} for user {user_id}")
        return released

    def sweep_expired(self) -> int:
        """Delete expired records. Returns the number removed."""
        try:
            removed = self.repo.delete_expired(self.now_fn())
        except sqlite3.Error as e:
            logger.warning(f"Ledger sweep failed: {e}")
            return 0

        if removed:
            logger.info(f"Swept {removed} expired ledger records")
        return removed

    def clear_user(self, user_id: int) -> int:
        """Forget every record for a user."""
        return self.repo.delete_for_user(user_id)

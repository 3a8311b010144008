"""
Repository classes for CRUD operations.
"""

import json
from datetime import datetime
from typing import Optional

from .connection import Database
from .models import (
    User,
    Holding,
    NotificationSettings,
    SentNotificationRecord,
    InAppNotification,
)


def _ts(value: datetime) -> str:
    """Serialize timestamps with a fixed width so they compare as text."""
    return value.isoformat(timespec="microseconds")


class UserRepository:
    """CRUD operations for users."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, user: User) -> User:
        """Create a new user."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                """
                INSERT INTO users (email, telegram_chat_id, discord_webhook_url)
                VALUES (?, ?, ?)
                """,
                (user.email, user.telegram_chat_id, user.discord_webhook_url),
            )
            self.db.connection.commit()
        user.id = cursor.lastrowid
        return user

    def get_by_id(self, user_id: int) -> Optional[User]:
        """Get user by ID."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def update(self, user: User) -> None:
        """Update user details."""
        with self.db.lock:
            self.db.connection.execute(
                """
                UPDATE users
                SET email = ?, telegram_chat_id = ?, discord_webhook_url = ?
                WHERE id = ?
                """,
                (user.email, user.telegram_chat_id, user.discord_webhook_url, user.id),
            )
            self.db.connection.commit()

    def delete(self, user_id: int) -> None:
        """Delete user."""
        with self.db.lock:
            self.db.connection.execute("DELETE FROM users WHERE id = ?", (user_id,))
            self.db.connection.commit()

    def list_all(self) -> list[User]:
        """List all users."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute("SELECT * FROM users ORDER BY id")
            rows = cursor.fetchall()
        return [self._row_to_user(row) for row in rows]

    def list_with_holdings(self) -> list[User]:
        """List users that track at least one holding."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                """
                SELECT u.* FROM users u
                WHERE EXISTS (SELECT 1 FROM holdings h WHERE h.user_id = u.id)
                ORDER BY u.id
                """
            )
            rows = cursor.fetchall()
        return [self._row_to_user(row) for row in rows]

    def _row_to_user(self, row) -> User:
        """Convert database row to User."""
        return User(
            id=row["id"],
            email=row["email"],
            telegram_chat_id=row["telegram_chat_id"],
            discord_webhook_url=row["discord_webhook_url"],
            created_at=row["created_at"],
        )


class HoldingRepository:
    """CRUD operations for holdings."""

    def __init__(self, db: Database):
        self.db = db

    def add(self, holding: Holding) -> Holding:
        """Add a symbol to a user's holdings."""
        holding.symbol = holding.symbol.upper()
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                """
                INSERT INTO holdings (user_id, symbol, shares, average_cost)
                VALUES (?, ?, ?, ?)
                """,
                (holding.user_id, holding.symbol, holding.shares, holding.average_cost),
            )
            self.db.connection.commit()
        holding.id = cursor.lastrowid
        return holding

    def remove(self, user_id: int, symbol: str) -> None:
        """Remove a symbol from a user's holdings."""
        with self.db.lock:
            self.db.connection.execute(
                "DELETE FROM holdings WHERE user_id = ? AND symbol = ?",
                (user_id, symbol.upper()),
            )
            self.db.connection.commit()

    def get_user_holdings(self, user_id: int) -> list[Holding]:
        """Get all holdings for a user."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                "SELECT * FROM holdings WHERE user_id = ? ORDER BY symbol",
                (user_id,),
            )
            rows = cursor.fetchall()
        return [
            Holding(
                id=row["id"],
                user_id=row["user_id"],
                symbol=row["symbol"],
                shares=row["shares"],
                average_cost=row["average_cost"],
                created_at=row["created_at"],
            )
            for row in rows
        ]


class NotificationSettingsRepository:
    """Read and write per-user notification settings."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, user_id: int) -> NotificationSettings:
        """Get settings for a user, falling back to defaults."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                "SELECT * FROM notification_settings WHERE user_id = ?", (user_id,)
            )
            row = cursor.fetchone()
        if row is None:
            return NotificationSettings(user_id=user_id)
        return NotificationSettings(
            user_id=row["user_id"],
            enabled=bool(row["enabled"]),
            telegram=bool(row["telegram"]),
            discord=bool(row["discord"]),
            in_app=bool(row["in_app"]),
            mode=row["mode"],
        )

    def save(self, settings: NotificationSettings) -> None:
        """Insert or replace settings."""
        with self.db.lock:
            self.db.connection.execute(
                """
                INSERT INTO notification_settings
                (user_id, enabled, telegram, discord, in_app, mode)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    enabled = excluded.enabled,
                    telegram = excluded.telegram,
                    discord = excluded.discord,
                    in_app = excluded.in_app,
                    mode = excluded.mode
                """,
                (
                    settings.user_id,
                    1 if settings.enabled else 0,
                    1 if settings.telegram else 0,
                    1 if settings.discord else 0,
                    1 if settings.in_app else 0,
                    settings.mode,
                ),
            )
            self.db.connection.commit()


class SentNotificationRepository:
    """Storage for the deduplication ledger."""

    def __init__(self, db: Database):
        self.db = db

    def exists_unexpired(
        self, user_id: int, symbol: str, event_kind: str, now: datetime
    ) -> bool:
        """Check for a record of this key that has not expired yet."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                """
                SELECT 1 FROM sent_notifications
                WHERE user_id = ?
                  AND symbol = ?
                  AND event_kind = ?
                  AND expires_at >= ?
                LIMIT 1
                """,
                (user_id, symbol, event_kind, _ts(now)),
            )
            return cursor.fetchone() is not None

    def claim(
        self,
        user_id: int,
        symbol: str,
        event_kind: str,
        sent_at: datetime,
        expires_at: datetime,
    ) -> bool:
        """
        Insert a ledger record unless an unexpired one already exists.

        The check and the write happen in one statement, so concurrent
        callers for the same key cannot both succeed.

        Returns:
            True if this call wrote the record
        """
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                """
                INSERT INTO sent_notifications
                (user_id, symbol, event_kind, sent_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id, symbol, event_kind) DO UPDATE SET
                    sent_at = excluded.sent_at,
                    expires_at = excluded.expires_at
                WHERE sent_notifications.expires_at < excluded.sent_at
                """,
                (user_id, symbol, event_kind, _ts(sent_at), _ts(expires_at)),
            )
            self.db.connection.commit()
            return cursor.rowcount > 0

    def release(
        self, user_id: int, symbol: str, event_kind: str, sent_at: datetime
    ) -> bool:
        """Delete the record written by the claim made at ``sent_at``."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                """
                DELETE FROM sent_notifications
                WHERE user_id = ?
                  AND symbol = ?
                  AND event_kind = ?
                  AND sent_at = ?
                """,
                (user_id, symbol, event_kind, _ts(sent_at)),
            )
            self.db.connection.commit()
            return cursor.rowcount > 0

    def delete_expired(self, now: datetime) -> int:
        """Delete records whose expiry has passed."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                "DELETE FROM sent_notifications WHERE expires_at < ?", (_ts(now),)
            )
            self.db.connection.commit()
            return cursor.rowcount

    def delete_for_user(self, user_id: int) -> int:
        """Delete every record for a user."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                "DELETE FROM sent_notifications WHERE user_id = ?", (user_id,)
            )
            self.db.connection.commit()
            return cursor.rowcount

    def list_for_user(self, user_id: int) -> list[SentNotificationRecord]:
        """List ledger records for a user, newest first."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                """
                SELECT * FROM sent_notifications
                WHERE user_id = ?
                ORDER BY sent_at DESC
                """,
                (user_id,),
            )
            rows = cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    def _row_to_record(self, row) -> SentNotificationRecord:
        """Convert database row to SentNotificationRecord."""
        return SentNotificationRecord(
            id=row["id"],
            user_id=row["user_id"],
            symbol=row["symbol"],
            event_kind=row["event_kind"],
            sent_at=datetime.fromisoformat(row["sent_at"]),
            expires_at=datetime.fromisoformat(row["expires_at"]),
        )


class InAppNotificationRepository:
    """CRUD operations for the in-app inbox."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, notification: InAppNotification) -> InAppNotification:
        """Store a new inbox message."""
        if notification.created_at is None:
            notification.created_at = datetime.now()
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                """
                INSERT INTO in_app_notifications
                (user_id, message, segments, audio_urls, read, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    notification.user_id,
                    notification.message,
                    json.dumps(notification.segments),
                    json.dumps(notification.audio_urls),
                    1 if notification.read else 0,
                    _ts(notification.created_at),
                ),
            )
            self.db.connection.commit()
        notification.id = cursor.lastrowid
        return notification

    def list_for_user(
        self, user_id: int, limit: int = 100, unread_only: bool = False
    ) -> list[InAppNotification]:
        """List a user's inbox, newest first."""
        query = "SELECT * FROM in_app_notifications WHERE user_id = ?"
        if unread_only:
            query += " AND read = 0"
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(query, (user_id, limit))
            rows = cursor.fetchall()
        return [self._row_to_notification(row) for row in rows]

    def mark_read(self, notification_ids: list[int]) -> None:
        """Mark specific messages as read."""
        if not notification_ids:
            return
        placeholders = ", ".join("?" for _ in notification_ids)
        with self.db.lock:
            self.db.connection.execute(
                f"UPDATE in_app_notifications SET read = 1 WHERE id IN ({placeholders})",
                notification_ids,
            )
            self.db.connection.commit()

    def mark_all_read(self, user_id: int) -> None:
        """Mark every message of a user as read."""
        with self.db.lock:
            self.db.connection.execute(
                "UPDATE in_app_notifications SET read = 1 WHERE user_id = ? AND read = 0",
                (user_id,),
            )
            self.db.connection.commit()

    def _row_to_notification(self, row) -> InAppNotification:
        """Convert database row to InAppNotification."""
        return InAppNotification(
            id=row["id"],
            user_id=row["user_id"],
            message=row["message"],
            segments=json.loads(row["segments"]),
            audio_urls=json.loads(row["audio_urls"]),
            read=bool(row["read"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

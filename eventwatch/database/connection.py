"""
SQLite database connection and schema management.
"""

import sqlite3
import threading
from pathlib import Path
from typing import Optional


class Database:
    """SQLite database connection manager.

    One connection is shared by the scheduler's worker threads; ``lock``
    serializes statement execution on it.
    """

    def __init__(self, db_path: str):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory DB.
        """
        self.db_path = db_path
        self.lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None
        self._connect()

    def _connect(self) -> None:
        """Establish database connection."""
        if self.db_path != ":memory:":
            # Ensure parent directory exists
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        # Enable foreign keys
        self._connection.execute("PRAGMA foreign_keys = ON")

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the database connection."""
        if self._connection is None:
            raise sqlite3.ProgrammingError("Database connection is closed")
        return self._connection

    def initialize(self) -> None:
        """Create database schema if it doesn't exist."""
        with self.lock:
            cursor = self.connection.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT,
                    telegram_chat_id TEXT,
                    discord_webhook_url TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS holdings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    symbol TEXT NOT NULL,
                    shares REAL NOT NULL DEFAULT 0,
                    average_cost REAL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
                    UNIQUE (user_id, symbol)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS notification_settings (
                    user_id INTEGER PRIMARY KEY,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    telegram INTEGER NOT NULL DEFAULT 0,
                    discord INTEGER NOT NULL DEFAULT 0,
                    in_app INTEGER NOT NULL DEFAULT 1,
                    mode TEXT NOT NULL DEFAULT 'text',
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                )
            """)

            # At most one row per key; expired rows are replaced in place
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS sent_notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    symbol TEXT NOT NULL,
                    event_kind TEXT NOT NULL,
                    sent_at TIMESTAMP NOT NULL,
                    expires_at TIMESTAMP NOT NULL,
                    UNIQUE (user_id, symbol, event_kind)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS in_app_notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    message TEXT NOT NULL,
                    segments TEXT NOT NULL DEFAULT '[]',
                    audio_urls TEXT NOT NULL DEFAULT '[]',
                    read INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_holdings_user ON holdings(user_id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_sent_notifications_expires
                ON sent_notifications(expires_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_in_app_user_created
                ON in_app_notifications(user_id, created_at)
            """)

            self.connection.commit()

    def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None

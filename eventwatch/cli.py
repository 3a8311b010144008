"""
CLI commands for EventWatch.
"""

import argparse
import logging
import os
import sqlite3
from typing import Optional

from dotenv import load_dotenv

from eventwatch.config import AppConfig, load_config
from eventwatch.database.connection import Database
from eventwatch.database.models import Holding, NotificationSettings, User
from eventwatch.database.repository import (
    HoldingRepository,
    InAppNotificationRepository,
    NotificationSettingsRepository,
    UserRepository,
)
from eventwatch.ledger import DeduplicationLedger


def add_user(
    db: Database,
    email: Optional[str] = None,
    telegram_chat_id: Optional[str] = None,
    discord_webhook: Optional[str] = None,
) -> User:
    """Add a new user."""
    repo = UserRepository(db)
    user = User(
        email=email,
        telegram_chat_id=telegram_chat_id,
        discord_webhook_url=discord_webhook,
    )
    return repo.create(user)


def add_holdings(db: Database, user_id: int, symbols: list[str]) -> list[str]:
    """Add symbols to a user's holdings. Returns the symbols stored."""
    repo = HoldingRepository(db)
    added = []
    for symbol in symbols:
        symbol = symbol.strip().upper()
        if not symbol:
            continue
        try:
            repo.add(Holding(user_id=user_id, symbol=symbol))
            added.append(symbol)
        except sqlite3.IntegrityError:
            # Already held
            pass
    return added


def update_settings(
    db: Database,
    user_id: int,
    enabled: Optional[bool] = None,
    telegram: Optional[bool] = None,
    discord: Optional[bool] = None,
    in_app: Optional[bool] = None,
    mode: Optional[str] = None,
) -> NotificationSettings:
    """Change only the given notification settings."""
    repo = NotificationSettingsRepository(db)
    settings = repo.get(user_id)
    for name, value in (
        ("enabled", enabled),
        ("telegram", telegram),
        ("discord", discord),
        ("in_app", in_app),
        ("mode", mode),
    ):
        if value is not None:
            setattr(settings, name, value)
    repo.save(settings)
    return settings


def _on_off(value: str) -> bool:
    if value.lower() in ("on", "true", "yes", "1"):
        return True
    if value.lower() in ("off", "false", "no", "0"):
        return False
    raise argparse.ArgumentTypeError(f"Expected on/off, got {value!r}")


def _load_config(path: str) -> AppConfig:
    if os.path.exists(path):
        return load_config(path)
    return AppConfig()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="EventWatch CLI")
    parser.add_argument("--config", default="config.yaml", help="Path to config file")
    parser.add_argument("--db", help="Database path (overrides config)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # User commands
    user_parser = subparsers.add_parser("user", help="User management")
    user_subparsers = user_parser.add_subparsers(dest="action")

    add_user_parser = user_subparsers.add_parser("add", help="Add user")
    add_user_parser.add_argument("--email", help="User email")
    add_user_parser.add_argument("--telegram", help="Telegram chat id")
    add_user_parser.add_argument("--discord", help="Discord webhook URL")

    user_subparsers.add_parser("list", help="List users")

    # Holdings commands
    holdings_parser = subparsers.add_parser("holdings", help="Holdings management")
    holdings_subparsers = holdings_parser.add_subparsers(dest="action")

    add_holdings_parser = holdings_subparsers.add_parser("add", help="Add holdings")
    add_holdings_parser.add_argument("--user", type=int, required=True, help="User ID")
    add_holdings_parser.add_argument("--symbols", required=True, help="Comma-separated symbols")

    remove_holdings_parser = holdings_subparsers.add_parser("remove", help="Remove a holding")
    remove_holdings_parser.add_argument("--user", type=int, required=True, help="User ID")
    remove_holdings_parser.add_argument("--symbol", required=True, help="Symbol")

    show_holdings_parser = holdings_subparsers.add_parser("show", help="Show holdings")
    show_holdings_parser.add_argument("--user", type=int, required=True, help="User ID")

    # Settings commands
    settings_parser = subparsers.add_parser("settings", help="Notification settings")
    settings_subparsers = settings_parser.add_subparsers(dest="action")

    set_parser = settings_subparsers.add_parser("set", help="Change settings")
    set_parser.add_argument("--user", type=int, required=True, help="User ID")
    set_parser.add_argument("--enabled", type=_on_off, help="on/off")
    set_parser.add_argument("--telegram", type=_on_off, help="on/off")
    set_parser.add_argument("--discord", type=_on_off, help="on/off")
    set_parser.add_argument("--in-app", dest="in_app", type=_on_off, help="on/off")
    set_parser.add_argument("--mode", choices=["text", "voice"])

    show_settings_parser = settings_subparsers.add_parser("show", help="Show settings")
    show_settings_parser.add_argument("--user", type=int, required=True, help="User ID")

    # Inbox commands
    inbox_parser = subparsers.add_parser("inbox", help="In-app inbox")
    inbox_subparsers = inbox_parser.add_subparsers(dest="action")

    show_inbox_parser = inbox_subparsers.add_parser("show", help="Show inbox")
    show_inbox_parser.add_argument("--user", type=int, required=True, help="User ID")
    show_inbox_parser.add_argument("--unread", action="store_true", help="Only unread")
    show_inbox_parser.add_argument("--mark-read", action="store_true", help="Mark shown as read")

    # Ledger commands
    ledger_parser = subparsers.add_parser("ledger", help="Deduplication ledger")
    ledger_subparsers = ledger_parser.add_subparsers(dest="action")
    ledger_subparsers.add_parser("sweep", help="Delete expired records")
    clear_parser = ledger_subparsers.add_parser("clear", help="Forget a user's records")
    clear_parser.add_argument("--user", type=int, required=True, help="User ID")

    # Pipeline commands
    check_parser = subparsers.add_parser("check-now", help="Check one user right away")
    check_parser.add_argument("--user", type=int, required=True, help="User ID")

    subparsers.add_parser("run", help="Run one check for all users")
    subparsers.add_parser("serve", help="Run the poll scheduler")

    return parser


def main(argv: Optional[list[str]] = None):
    """CLI entry point."""
    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    config = _load_config(args.config)
    if args.db:
        config.database.path = args.db

    logging.basicConfig(
        level=logging.DEBUG if args.debug else config.advanced.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Initialize database
    db = Database(config.database.path)
    db.initialize()

    try:
        _dispatch(args, parser, config, db)
    finally:
        db.close()


def _dispatch(args, parser, config: AppConfig, db: Database) -> None:
    if args.command == "user":
        if args.action == "add":
            user = add_user(
                db,
                email=args.email,
                telegram_chat_id=args.telegram,
                discord_webhook=args.discord,
            )
            print(f"Created user with ID: {user.id}")
        elif args.action == "list":
            for user in UserRepository(db).list_all():
                print(
                    f"ID: {user.id}, Email: {user.email}, "
                    f"Telegram: {user.telegram_chat_id or '-'}, "
                    f"Discord: {'yes' if user.discord_webhook_url else 'no'}"
                )

    elif args.command == "holdings":
        if args.action == "add":
            added = add_holdings(db, args.user, args.symbols.split(","))
            print(f"Added: {added}")
        elif args.action == "remove":
            HoldingRepository(db).remove(args.user, args.symbol)
            print(f"Removed {args.symbol.upper()}")
        elif args.action == "show":
            for holding in HoldingRepository(db).get_user_holdings(args.user):
                print(f"{holding.symbol}: {holding.shares:g} shares")

    elif args.command == "settings":
        if args.action == "set":
            settings = update_settings(
                db,
                args.user,
                enabled=args.enabled,
                telegram=args.telegram,
                discord=args.discord,
                in_app=args.in_app,
                mode=args.mode,
            )
            print(f"Saved: {settings}")
        elif args.action == "show":
            print(NotificationSettingsRepository(db).get(args.user))

    elif args.command == "inbox":
        if args.action == "show":
            repo = InAppNotificationRepository(db)
            messages = repo.list_for_user(args.user, unread_only=args.unread)
            for message in messages:
                marker = " " if message.read else "*"
                print(f"{marker} [{message.created_at:%Y-%m-%d %H:%M}] {message.message}")
                for segment in message.segments:
                    print(f"    {segment}")
                for url in message.audio_urls:
                    print(f"    audio: {url}")
            if args.mark_read:
                repo.mark_read([m.id for m in messages])

    elif args.command == "ledger":
        ledger = DeduplicationLedger(db, window_hours=config.advanced.suppression_window_hours)
        if args.action == "sweep":
            print(f"Removed {ledger.sweep_expired()} expired records")
        elif args.action == "clear":
            print(f"Removed {ledger.clear_user(args.user)} records for user {args.user}")

    elif args.command in ("check-now", "run", "serve"):
        from eventwatch.main import build_app, serve

        app = build_app(config, db)
        if args.command == "check-now":
            result = app.process_user(args.user, manual=True)
            print(
                f"Sent: {result.sent_count}, skipped: {result.skipped_count}, "
                f"moving: {', '.join(result.moving_symbols) or 'none'}"
            )
            if result.reassured:
                print("Markets are calm; sent a reassurance message")
        elif args.command == "run":
            results = app.run_check()
            print(f"Checked {len(results)} users")
        else:
            serve(app, config)

    else:
        parser.print_help()


if __name__ == "__main__":
    main()

"""
Main application entry point.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from dotenv import load_dotenv

from eventwatch.aggregator import EventAggregator, GreetingTracker
from eventwatch.compose.composer import ComposeContext, MessageComposer
from eventwatch.compose.nlg import NLGClient
from eventwatch.config import AppConfig
from eventwatch.data.context import ContextFetcher
from eventwatch.data.fetcher import StockDataFetcher
from eventwatch.data.news import Headline, NewsFetcher
from eventwatch.data.ratelimit import RateLimiter
from eventwatch.data.social import SocialFetcher
from eventwatch.database.connection import Database
from eventwatch.database.models import NotificationSettings, User
from eventwatch.database.repository import (
    HoldingRepository,
    NotificationSettingsRepository,
    UserRepository,
)
from eventwatch.dispatcher import ChannelTarget, DeliveryDispatcher
from eventwatch.ledger import DeduplicationLedger
from eventwatch.notifiers.base import Notifier, NotifierFactory
from eventwatch.notifiers.speech import AudioStore, SpeechSynthesizer
from eventwatch.rules.engine import AbnormalityClassifier
from eventwatch.rules.volatility import VolatilityEstimator

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """Outcome of one pipeline run for a user."""

    user_id: int
    sent_count: int = 0
    skipped_count: int = 0
    moving_symbols: list[str] = field(default_factory=list)
    reassured: bool = False


class EventWatchApp:
    """Runs the detection and delivery pipeline for users."""

    def __init__(
        self,
        db: Database,
        context_fetcher: ContextFetcher,
        classifier: AbnormalityClassifier,
        ledger: DeduplicationLedger,
        aggregator: EventAggregator,
        composer: MessageComposer,
        dispatcher: DeliveryDispatcher,
        notifiers: dict[str, Notifier],
        news: Optional[NewsFetcher] = None,
        now_fn: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize EventWatch app.

        Args:
            db: Database instance
            context_fetcher: Quote, volatility, news and social facade
            classifier: Abnormality classifier
            ledger: Deduplication ledger
            aggregator: Batches and greeting decisions
            composer: Message composer
            dispatcher: Delivery dispatcher
            notifiers: Channel adapters keyed by channel name
            news: News provider used for market-wide headlines
            now_fn: Clock
        """
        self.db = db
        self.context_fetcher = context_fetcher
        self.classifier = classifier
        self.ledger = ledger
        self.aggregator = aggregator
        self.composer = composer
        self.dispatcher = dispatcher
        self.notifiers = notifiers
        self.news = news
        self.now_fn = now_fn

        self.user_repo = UserRepository(db)
        self.holding_repo = HoldingRepository(db)
        self.settings_repo = NotificationSettingsRepository(db)

        self._user_locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def greetings(self) -> GreetingTracker:
        return self.aggregator.greetings

    def _lock_for(self, user_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._user_locks.setdefault(user_id, threading.Lock())

    def channels_for(self, user: User, settings: NotificationSettings) -> list[ChannelTarget]:
        """Enabled channels that have somewhere to deliver."""
        targets = []
        telegram = self.notifiers.get("telegram")
        if settings.telegram and user.telegram_chat_id and telegram is not None:
            targets.append(ChannelTarget(telegram, user.telegram_chat_id))
        discord = self.notifiers.get("discord")
        if settings.discord and user.discord_webhook_url and discord is not None:
            targets.append(ChannelTarget(discord, user.discord_webhook_url))
        in_app = self.notifiers.get("in_app")
        if settings.in_app and in_app is not None:
            targets.append(ChannelTarget(in_app, str(user.id)))
        return targets

    def eligible_user_ids(self) -> list[int]:
        """Users with notifications on, a usable channel and a holding."""
        eligible = []
        for user in self.user_repo.list_with_holdings():
            settings = self.settings_repo.get(user.id)
            if settings.enabled and self.channels_for(user, settings):
                eligible.append(user.id)
        return eligible

    def run_check(self) -> list[ProcessResult]:
        """Sweep the ledger, then run the pipeline for every eligible user."""
        self.ledger.sweep_expired()

        results = []
        for user_id in self.eligible_user_ids():
            try:
                results.append(self.process_user(user_id))
            except Exception as e:
                logger.error(f"Error processing user {user_id}: {e}", exc_info=True)

        sent = sum(r.sent_count for r in results)
        logger.info(f"Check finished: {len(results)} users, {sent} symbols notified")
        return results

    def process_user(self, user_id: int, manual: bool = False) -> ProcessResult:
        """
        Detect, compose and deliver for one user.

        Args:
            user_id: User to process
            manual: User-initiated check. Skips the enabled-setting gate and
                sends a reassurance message when nothing is moving.

        Returns:
            ProcessResult with sent, skipped and moving symbols
        """
        with self._lock_for(user_id):
            return self._process_user(user_id, manual)

    def _process_user(self, user_id: int, manual: bool) -> ProcessResult:
        result = ProcessResult(user_id=user_id)

        user = self.user_repo.get_by_id(user_id)
        if not user:
            logger.warning(f"User {user_id} not found")
            return result

        settings = self.settings_repo.get(user_id)
        if not settings.enabled and not manual:
            return result

        channels = self.channels_for(user, settings)
        if not channels:
            logger.debug(f"User {user_id} has no deliverable channel")
            return result

        symbols = sorted({h.symbol for h in self.holding_repo.get_user_holdings(user_id)})
        if not symbols:
            return result

        contexts = self.context_fetcher.fetch(symbols)
        events = []
        for symbol in symbols:
            ctx = contexts.get(symbol)
            if ctx is None:
                logger.info(f"No quote for {symbol}, skipping this poll")
                continue
            try:
                event = self.classifier.classify(
                    symbol, ctx.observation, ctx.volatility, news=ctx.news, social=ctx.social
                )
            except Exception as e:
                logger.error(f"Error classifying {symbol} for user {user_id}: {e}", exc_info=True)
                continue
            if event is not None:
                events.append(event)
        result.moving_symbols = [event.symbol for event in events]

        if not events:
            if manual:
                result.reassured = self._reassure(user_id, channels)
            return result

        batch = self.aggregator.aggregate(user_id, events)
        claims = self.dispatcher.claim(user_id, batch.events)
        if len(claims) < len(batch.events):
            batch = self.aggregator.regroup(
                batch, [event for event in batch.events if event.symbol in claims]
            )
        result.skipped_count = len(batch.skipped)

        if batch.quiet:
            return result

        compose_context = ComposeContext(
            market_headlines=self._market_headlines(),
            dense=batch.dense,
        )
        delivered: set[str] = set()
        try:
            for unit in batch.units:
                plan = self.composer.compose(unit, compose_context)
                dispatch = self.dispatcher.dispatch(
                    user_id,
                    plan,
                    channels,
                    events=unit.events,
                    voice=settings.voice_enabled,
                )
                if dispatch.any_success:
                    delivered.update(unit.symbols)
                    self.greetings.mark_messaged(user_id, self.now_fn())
        finally:
            undelivered = [event for event in batch.events if event.symbol not in delivered]
            self.dispatcher.release(user_id, undelivered, claims)

        result.sent_count = len(delivered)
        logger.info(
            f"User {user_id}: {result.sent_count} sent, {result.skipped_count} skipped, "
            f"moving {result.moving_symbols}"
        )
        return result

    def _reassure(self, user_id: int, channels: list[ChannelTarget]) -> bool:
        greet = self.greetings.should_greet(
            user_id, self.now_fn(), self.aggregator.greeting_window
        )
        plan = self.composer.compose_calm(greet=greet)
        dispatch = self.dispatcher.dispatch(user_id, plan, channels)
        if dispatch.any_success:
            self.greetings.mark_messaged(user_id, self.now_fn())
        return dispatch.any_success

    def _market_headlines(self) -> list[Headline]:
        if self.news is None:
            return []
        try:
            return self.news.get_market_headlines()
        except Exception as e:
            logger.warning(f"Market headlines unavailable: {e}")
            return []


def build_app(config: AppConfig, db: Optional[Database] = None) -> EventWatchApp:
    """Wire the application from configuration."""
    if db is None:
        db = Database(config.database.path)
        db.initialize()

    providers = config.providers
    detection = config.detection
    advanced = config.advanced

    quotes = StockDataFetcher(
        rate_limiter=RateLimiter(providers.requests_per_second, providers.burst)
    )
    news = NewsFetcher(
        api_key=providers.finnhub_api_key,
        api_url=providers.finnhub_api_url,
        timeout=providers.timeout_seconds,
        rate_limiter=RateLimiter(providers.requests_per_second, providers.burst),
        recent_hours=detection.news_recent_hours,
        baseline_days=detection.news_baseline_days,
    )
    social = SocialFetcher(
        client_id=providers.reddit_client_id,
        client_secret=providers.reddit_client_secret,
        user_agent=providers.reddit_user_agent,
        timeout=providers.timeout_seconds,
        rate_limiter=RateLimiter(providers.requests_per_second, providers.burst),
    )
    volatility = VolatilityEstimator(
        quotes,
        window=detection.volatility_window,
        default=detection.default_volatility,
        floor=detection.volatility_floor,
    )
    context_fetcher = ContextFetcher(
        quotes,
        volatility,
        news=news,
        social=social,
        timeout=providers.timeout_seconds + 5,
    )

    ledger = DeduplicationLedger(db, window_hours=advanced.suppression_window_hours)
    aggregator = EventAggregator(
        ledger,
        greeting_window_hours=advanced.greeting_window_hours,
        max_detailed_events=advanced.max_detailed_events,
    )
    composer = MessageComposer(
        NLGClient(
            api_key=config.nlg.api_key,
            base_url=config.nlg.base_url,
            model=config.nlg.model,
            temperature=config.nlg.temperature,
            timeout=config.nlg.timeout_seconds,
        )
    )
    dispatcher = DeliveryDispatcher(
        ledger,
        synthesizer=SpeechSynthesizer(
            api_key=config.speech.api_key,
            base_url=config.speech.base_url,
            model=config.speech.model,
            voice=config.speech.voice,
            timeout=config.speech.timeout_seconds,
        ),
        audio_store=AudioStore(config.speech.storage_dir, config.speech.public_base_url),
        min_pacing_seconds=advanced.min_pacing_seconds,
        max_pacing_seconds=advanced.max_pacing_seconds,
        pacing_seconds_per_char=advanced.pacing_seconds_per_char,
    )
    notifiers = {
        name: NotifierFactory.create(name, config, db)
        for name in ("telegram", "discord", "in_app")
    }

    return EventWatchApp(
        db=db,
        context_fetcher=context_fetcher,
        classifier=AbnormalityClassifier(),
        ledger=ledger,
        aggregator=aggregator,
        composer=composer,
        dispatcher=dispatcher,
        notifiers=notifiers,
        news=news,
    )


def serve(app: EventWatchApp, config: AppConfig) -> None:
    """Run the poll scheduler until interrupted."""
    from eventwatch.scheduler import PollScheduler

    scheduler = PollScheduler(
        app,
        interval_minutes=config.schedule.interval_minutes,
        initial_delay_seconds=config.schedule.initial_delay_seconds,
        max_workers=config.schedule.max_workers,
    )
    scheduler.register_shutdown_handlers()
    scheduler.start()
    scheduler.wait()


def main():
    """Service entry point."""
    import argparse

    from eventwatch.config import load_config

    load_dotenv()

    parser = argparse.ArgumentParser(description="EventWatch portfolio event notifier")
    parser.add_argument("--config", default="config.yaml", help="Path to config file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument("--once", action="store_true", help="Run a single check and exit")

    args = parser.parse_args()

    config = load_config(args.config)

    # Setup logging
    log_level = logging.DEBUG if args.debug else getattr(
        logging, config.advanced.log_level.upper(), logging.INFO
    )
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = build_app(config)
    try:
        if args.once:
            app.run_check()
        else:
            serve(app, config)
    finally:
        app.db.close()


if __name__ == "__main__":
    main()

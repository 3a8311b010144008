"""
Groups a user's events for one poll into deliverable message units.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from eventwatch.ledger import DeduplicationLedger
from eventwatch.rules.types import AbnormalEvent

logger = logging.getLogger(__name__)


class UnitKind(str, Enum):
    """Role of a message within a batch."""

    SINGLE = "single"
    SUMMARY = "summary"
    DETAIL = "detail"


@dataclass
class MessageUnit:
    """One message to compose and deliver, in batch order."""

    kind: UnitKind
    events: list[AbnormalEvent]
    greet: bool = False

    @property
    def symbols(self) -> list[str]:
        return [event.symbol for event in self.events]


@dataclass
class GroupedBatch:
    """Events for one user in one poll, after deduplication."""

    user_id: int
    events: list[AbnormalEvent] = field(default_factory=list)
    units: list[MessageUnit] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    # Too many events for per-symbol detail; the summary points to the app
    dense: bool = False

    @property
    def quiet(self) -> bool:
        return not self.events


class GreetingTracker:
    """
    Remembers when each user last got a message.

    In-memory only; a restart just means one extra greeting.
    """

    def __init__(self):
        self._last_message: dict[int, datetime] = {}
        self._lock = threading.Lock()

    def last_message_at(self, user_id: int) -> Optional[datetime]:
        with self._lock:
            return self._last_message.get(user_id)

    def should_greet(self, user_id: int, now: datetime, window: timedelta) -> bool:
        last = self.last_message_at(user_id)
        return last is None or now - last > window

    def mark_messaged(self, user_id: int, when: datetime) -> None:
        with self._lock:
            self._last_message[user_id] = when


class EventAggregator:
    """Filters already-notified events and plans the message units."""

    def __init__(
        self,
        ledger: DeduplicationLedger,
        greetings: Optional[GreetingTracker] = None,
        greeting_window_hours: float = 4,
        max_detailed_events: int = 4,
        now_fn: Callable[[], datetime] = datetime.now,
    ):
        self.ledger = ledger
        self.greetings = greetings or GreetingTracker()
        self.greeting_window = timedelta(hours=greeting_window_hours)
        self.max_detailed_events = max_detailed_events
        self.now_fn = now_fn

    def aggregate(self, user_id: int, events: list[AbnormalEvent]) -> GroupedBatch:
        """
        Build the batch for one user.

        Zero fresh events gives a quiet batch. One event is sent on its own.
        Two or more get a combined summary first, which alone may greet; more
        than ``max_detailed_events`` collapse into the summary only.
        """
        batch = GroupedBatch(user_id=user_id)
        for event in events:
            if self.ledger.was_sent_today(user_id, event.symbol, event.dedup_kind):
                logger.info(f"Skipping {event.symbol} for user {user_id}: already notified")
                batch.skipped.append(event.symbol)
                continue
            event.user_id = user_id
            batch.events.append(event)

        return self._plan(batch)

    def regroup(self, batch: GroupedBatch, events: list[AbnormalEvent]) -> GroupedBatch:
        """
        Re-plan a batch keeping only ``events``.

        Dropped events count as skipped, as when another run claimed them
        between the ledger check and the send.
        """
        kept = {event.symbol for event in events}
        regrouped = GroupedBatch(
            user_id=batch.user_id,
            events=list(events),
            skipped=batch.skipped + [e.symbol for e in batch.events if e.symbol not in kept],
        )
        return self._plan(regrouped)

    def _plan(self, batch: GroupedBatch) -> GroupedBatch:
        if batch.quiet:
            return batch

        user_id = batch.user_id
        greet = self.greetings.should_greet(user_id, self.now_fn(), self.greeting_window)

        if len(batch.events) == 1:
            batch.units.append(MessageUnit(UnitKind.SINGLE, list(batch.events), greet=greet))
            return batch

        batch.units.append(MessageUnit(UnitKind.SUMMARY, list(batch.events), greet=greet))
        batch.dense = len(batch.events) > self.max_detailed_events
        if not batch.dense:
            batch.units.extend(
                MessageUnit(UnitKind.DETAIL, [event], greet=False) for event in batch.events
            )
        return batch

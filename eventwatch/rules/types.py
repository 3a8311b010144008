"""
Event types produced by the abnormality classifier.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

# Dedup unit for merged per-symbol events
COMBINED_EVENT_KIND = "abnormal_event"


class EventKind(str, Enum):
    """Rule families that can make a symbol abnormal."""

    PRICE_SPIKE = "price_spike"
    INTRADAY_MOVE = "intraday_move"
    GAP_OPEN = "gap_open"
    NEWS_SURGE = "news_surge"
    SENTIMENT_SHIFT = "sentiment_shift"


class Severity(Enum):
    """Event severity, ordered."""

    MEDIUM = 1
    HIGH = 2

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass
class AbnormalEvent:
    """One symbol's merged abnormal condition for a single poll."""

    symbol: str
    kinds: list[EventKind]
    severity: Severity
    reasons: list[str]
    facts: dict[str, Any] = field(default_factory=dict)
    user_id: Optional[int] = None
    detected_at: datetime = field(default_factory=datetime.now)

    @property
    def kind(self) -> EventKind:
        """First rule family that fired."""
        return self.kinds[0]

    @property
    def dedup_kind(self) -> str:
        return COMBINED_EVENT_KIND

    @property
    def day_change_pct(self) -> float:
        return float(self.facts.get("day_change_pct", 0.0))

    @property
    def direction(self) -> str:
        return "up" if self.day_change_pct >= 0 else "down"

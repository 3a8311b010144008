"""
Abnormality classifier.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from eventwatch.data.fetcher import ObservationSnapshot
from eventwatch.data.news import NewsContext
from eventwatch.data.social import SocialContext
from .types import AbnormalEvent, EventKind, Severity

# Re-export for convenience
__all__ = ["AbnormalityClassifier", "AbnormalEvent", "EventKind", "Severity"]


@dataclass
class Signals:
    """Inputs every detection rule reads."""

    observation: ObservationSnapshot
    volatility: float
    news: NewsContext

    @property
    def volatility_multiple(self) -> float:
        return abs(self.observation.day_change_pct) / self.volatility

    @property
    def news_multiple(self) -> float:
        return self.news.count_recent / max(self.news.avg_per_window, 0.5)


@dataclass
class DetectionRule:
    """A named condition and the tier it carries when it fires."""

    name: str
    kind: EventKind
    severity: Severity
    condition: Callable[[Signals], bool]


class AbnormalityClassifier:
    """Decides whether a symbol's current state is worth a notification."""

    def __init__(
        self,
        volatility_multiple: float = 2.0,
        intraday_threshold: float = 5.0,
        gap_threshold: float = 4.0,
        news_surge_multiple: float = 2.0,
        min_recent_news: int = 2,
        sentiment_flip_points: float = 30.0,
        escalation_move: float = 5.0,
        escalation_news_multiple: float = 4.0,
    ):
        self.min_recent_news = min_recent_news
        self.rules = [
            DetectionRule(
                name="price_vs_volatility",
                kind=EventKind.PRICE_SPIKE,
                severity=Severity.MEDIUM,
                condition=lambda s: (
                    abs(s.observation.day_change_pct) >= volatility_multiple * s.volatility
                    and s.news.count_recent > 0
                ),
            ),
            DetectionRule(
                name="sharp_intraday",
                kind=EventKind.INTRADAY_MOVE,
                severity=Severity.HIGH,
                condition=lambda s: abs(s.observation.intraday_change_pct) >= intraday_threshold,
            ),
            DetectionRule(
                name="gap_open",
                kind=EventKind.GAP_OPEN,
                severity=Severity.HIGH,
                condition=lambda s: abs(s.observation.gap_pct) >= gap_threshold,
            ),
            DetectionRule(
                name="news_surge",
                kind=EventKind.NEWS_SURGE,
                severity=Severity.MEDIUM,
                condition=lambda s: (
                    s.news.count_recent >= news_surge_multiple * s.news.avg_per_window
                    and s.news.count_recent >= min_recent_news
                ),
            ),
            DetectionRule(
                name="sentiment_flip",
                kind=EventKind.SENTIMENT_SHIFT,
                severity=Severity.MEDIUM,
                condition=lambda s: (
                    abs(s.news.sentiment_delta) >= sentiment_flip_points
                    and s.news.count_recent >= min_recent_news
                ),
            ),
            DetectionRule(
                name="escalation_price",
                kind=EventKind.PRICE_SPIKE,
                severity=Severity.HIGH,
                condition=lambda s: abs(s.observation.day_change_pct) >= escalation_move,
            ),
            # The minimum count keeps a zero baseline from escalating on silence
            DetectionRule(
                name="escalation_news",
                kind=EventKind.NEWS_SURGE,
                severity=Severity.HIGH,
                condition=lambda s: (
                    s.news.count_recent >= escalation_news_multiple * s.news.avg_per_window
                    and s.news.count_recent >= min_recent_news
                ),
            ),
        ]

    def classify(
        self,
        symbol: str,
        observation: ObservationSnapshot,
        baseline: float,
        news: Optional[NewsContext] = None,
        social: Optional[SocialContext] = None,
    ) -> Optional[AbnormalEvent]:
        """
        Evaluate every rule for one symbol.

        Args:
            symbol: Ticker being evaluated
            observation: Current quote
            baseline: Trailing volatility in percent (> 0)
            news: Recent news context; missing means no news
            social: Social context, carried into the facts only

        Returns:
            A single merged event, or None if no rule fired
        """
        news = news or NewsContext.empty()
        social = social or SocialContext.empty()
        signals = Signals(observation=observation, volatility=baseline, news=news)

        fired = [rule for rule in self.rules if rule.condition(signals)]
        if not fired:
            return None

        kinds = list(dict.fromkeys(rule.kind for rule in fired))
        severity = max((rule.severity for rule in fired), key=lambda s: s.value)
        reasons = [rule.name for rule in fired]

        return AbnormalEvent(
            symbol=symbol,
            kinds=kinds,
            severity=severity,
            reasons=reasons,
            facts=self._facts(signals, social, reasons),
        )

    def _facts(
        self, signals: Signals, social: SocialContext, reasons: list[str]
    ) -> dict:
        observation = signals.observation
        news = signals.news
        top_post = social.top_post
        return {
            "price": round(observation.price, 2),
            "day_change_pct": round(observation.day_change_pct, 2),
            "intraday_change_pct": round(observation.intraday_change_pct, 2),
            "gap_pct": round(observation.gap_pct, 2),
            "volatility_pct": round(signals.volatility, 2),
            "volatility_multiple": round(signals.volatility_multiple, 1),
            "news_count_recent": news.count_recent,
            "news_avg_per_window": round(news.avg_per_window, 2),
            "news_multiple": round(signals.news_multiple, 1),
            "sentiment_delta": round(news.sentiment_delta, 1),
            "headlines": [
                {
                    "headline": h.headline,
                    "source": h.source,
                    "key_event": h.is_key_event,
                }
                for h in news.headlines
            ],
            "social": {
                "mentions": social.mention_count,
                "sentiment": round(social.sentiment, 1),
                "label": social.label,
                "top_post": top_post.title if top_post else None,
            },
            "reasons": reasons,
        }

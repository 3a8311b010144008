"""
Company and market news from Finnhub.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

import requests

from .ratelimit import RateLimiter

logger = logging.getLogger(__name__)

KEY_EVENT_KEYWORDS = [
    "earnings",
    "merger",
    "lawsuit",
    "ceo",
    "sec",
    "product launch",
    "acquisition",
]

# Whole words only, so "sec" does not fire on "second" or "sector"
_KEY_EVENT_RE = re.compile(
    r"\b(" + "|".join(re.escape(k) for k in KEY_EVENT_KEYWORDS) + r")s?\b", re.IGNORECASE
)

WINDOWS_PER_DAY = 4  # six-hour windows


@dataclass
class Headline:
    """A single news item."""

    headline: str
    source: str = "Unknown"
    published_at: Optional[datetime] = None
    sentiment: float = 0.0
    summary: str = ""

    @property
    def is_key_event(self) -> bool:
        return bool(_KEY_EVENT_RE.search(self.headline))


@dataclass
class NewsContext:
    """Recent news volume and tone for one symbol.

    Sentiment values are scaled to roughly [-100, 100].
    """

    count_recent: int = 0
    avg_per_window: float = 0.0
    headlines: list[Headline] = field(default_factory=list)
    sentiment_current: float = 0.0
    sentiment_previous: float = 0.0

    @classmethod
    def empty(cls) -> "NewsContext":
        return cls()

    @property
    def sentiment_delta(self) -> float:
        return self.sentiment_current - self.sentiment_previous

    @property
    def sources(self) -> list[str]:
        return list(dict.fromkeys(h.source for h in self.headlines))


class NewsFetcher:
    """Fetches company news and general market headlines."""

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://finnhub.io/api/v1",
        timeout: float = 10.0,
        rate_limiter: Optional[RateLimiter] = None,
        recent_hours: int = 6,
        baseline_days: int = 7,
    ):
        self.api_key = api_key
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.rate_limiter = rate_limiter
        self.recent_hours = recent_hours
        self.baseline_days = baseline_days

    def _get(self, path: str, params: dict[str, Any]) -> Any:
        """GET a Finnhub endpoint; None on any failure."""
        if not self.api_key:
            return None
        if self.rate_limiter is not None:
            self.rate_limiter.acquire()

        query = dict(params)
        query["token"] = self.api_key
        try:
            response = requests.get(
                f"{self.api_url}{path}", params=query, timeout=self.timeout
            )
            if response.status_code in {401, 403, 404, 429}:
                logger.warning(f"Finnhub {path} returned HTTP {response.status_code}")
                return None
            response.raise_for_status()
            return response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"Finnhub {path} request failed: {e}")
            return None

    def get_context(self, symbol: str, now: Optional[datetime] = None) -> NewsContext:
        """
        Summarize news volume and sentiment for a symbol.

        Compares the last ``recent_hours`` against the average per window
        over ``baseline_days``. Never raises; an unavailable provider
        yields an empty context.
        """
        now = now or datetime.now()
        since = now - timedelta(days=self.baseline_days)
        items = self._get(
            "/company-news",
            {
                "symbol": symbol,
                "from": since.strftime("%Y-%m-%d"),
                "to": now.strftime("%Y-%m-%d"),
            },
        )
        if not isinstance(items, list):
            return NewsContext.empty()

        recent_cutoff = (now - timedelta(hours=self.recent_hours)).timestamp()
        baseline_cutoff = since.timestamp()

        recent = []
        older = []
        for item in items:
            if not isinstance(item, dict) or not item.get("headline"):
                continue
            published = item.get("datetime") or 0
            if published >= recent_cutoff:
                recent.append(item)
            elif published >= baseline_cutoff:
                older.append(item)

        windows = self.baseline_days * WINDOWS_PER_DAY
        avg_per_window = (len(recent) + len(older)) / windows if windows else 0.0

        return NewsContext(
            count_recent=len(recent),
            avg_per_window=avg_per_window,
            headlines=[self._to_headline(item) for item in recent[:3]],
            sentiment_current=self._mean_sentiment(recent) * 100,
            sentiment_previous=self._mean_sentiment(older) * 100,
        )

    def get_market_headlines(self, limit: int = 2) -> list[Headline]:
        """Fetch the latest general market headlines."""
        items = self._get("/news", {"category": "general"})
        if not isinstance(items, list):
            return []
        return [
            self._to_headline(item)
            for item in items
            if isinstance(item, dict) and item.get("headline")
        ][:limit]

    def _to_headline(self, item: dict[str, Any]) -> Headline:
        published = item.get("datetime")
        return Headline(
            headline=str(item.get("headline", "")).strip(),
            source=item.get("source") or "Unknown",
            published_at=datetime.fromtimestamp(published) if published else None,
            sentiment=float(item.get("sentiment") or 0.0),
            summary=item.get("summary") or "",
        )

    @staticmethod
    def _mean_sentiment(items: list[dict[str, Any]]) -> float:
        if not items:
            return 0.0
        return sum(float(item.get("sentiment") or 0.0) for item in items) / len(items)

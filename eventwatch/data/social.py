"""
Social mentions from Reddit.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import requests

from .ratelimit import RateLimiter

logger = logging.getLogger(__name__)

BULLISH_WORDS = ("moon", "buy", "calls", "rocket", "squeeze", "bullish")
BEARISH_WORDS = ("puts", "short", "crash", "bearish", "dump")


@dataclass
class SocialPost:
    """A single social mention."""

    title: str
    score: int = 0
    url: str = ""

    @property
    def tone(self) -> int:
        """+1 bullish, -1 bearish, 0 neutral."""
        title = self.title.lower()
        bullish = any(word in title for word in BULLISH_WORDS)
        bearish = any(word in title for word in BEARISH_WORDS)
        if bullish and not bearish:
            return 1
        if bearish and not bullish:
            return -1
        return 0


@dataclass
class SocialContext:
    """Recent mentions and aggregate tone, score in [-100, 100]."""

    mention_count: int = 0
    sentiment: float = 0.0
    posts: list[SocialPost] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "SocialContext":
        return cls()

    @property
    def label(self) -> str:
        if self.sentiment >= 20:
            return "bullish"
        if self.sentiment <= -20:
            return "bearish"
        return "neutral"

    @property
    def top_post(self) -> Optional[SocialPost]:
        if not self.posts:
            return None
        return max(self.posts, key=lambda post: post.score)


class SocialFetcher:
    """Searches r/wallstreetbets for a symbol."""

    TOKEN_URL = "https://www.reddit.com/api/v1/access_token"

    def __init__(
        self,
        client_id: str = "",
        client_secret: str = "",
        user_agent: str = "EventWatch/1.0",
        subreddit: str = "wallstreetbets",
        min_score: int = 50,
        timeout: float = 10.0,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.user_agent = user_agent
        self.subreddit = subreddit
        self.min_score = min_score
        self.timeout = timeout
        self.rate_limiter = rate_limiter
        self._token: Optional[tuple[str, float]] = None

    def _access_token(self) -> str:
        if not self.client_id or not self.client_secret:
            return ""
        if self._token and self._token[1] > time.time() + 30:
            return self._token[0]

        response = requests.post(
            self.TOKEN_URL,
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"User-Agent": self.user_agent},
            timeout=self.timeout,
        )
        response.raise_for_status()
        payload = response.json()
        token = str(payload.get("access_token") or "")
        if token:
            expires_in = int(payload.get("expires_in") or 3600)
            self._token = (token, time.time() + max(60, expires_in))
        return token

    def _search(self, symbol: str) -> list[dict[str, Any]]:
        params = {"q": symbol, "restrict_sr": 1, "sort": "new", "t": "day", "limit": 25}
        headers = {"User-Agent": self.user_agent}

        token = self._access_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
            url = f"https://oauth.reddit.com/r/{self.subreddit}/search"
        else:
            url = f"https://www.reddit.com/r/{self.subreddit}/search.json"

        response = requests.get(url, params=params, headers=headers, timeout=self.timeout)
        response.raise_for_status()
        payload = response.json()
        children = payload.get("data", {}).get("children", []) if isinstance(payload, dict) else []
        return [child.get("data", {}) for child in children if isinstance(child, dict)]

    def get_context(self, symbol: str) -> SocialContext:
        """Summarize recent mentions. Never raises."""
        if self.rate_limiter is not None:
            self.rate_limiter.acquire()
        try:
            raw_posts = self._search(symbol)
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"Reddit search for {symbol} failed: {e}")
            return SocialContext.empty()

        posts = [
            SocialPost(
                title=str(post.get("title", "")),
                score=int(post.get("score") or 0),
                url=f"https://reddit.com{post.get('permalink', '')}",
            )
            for post in raw_posts
            if post.get("title")
        ]
        notable = [post for post in posts if post.score >= self.min_score]
        tones = [post.tone for post in posts]
        sentiment = (sum(tones) / len(tones)) * 100 if tones else 0.0

        return SocialContext(
            mention_count=len(posts),
            sentiment=sentiment,
            posts=notable[:3],
        )

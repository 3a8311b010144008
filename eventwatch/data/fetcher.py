"""
Yahoo Finance quote fetcher.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import yfinance as yf

from .ratelimit import RateLimiter

logger = logging.getLogger(__name__)


def _pct(new: float, old: float) -> float:
    if not old:
        return 0.0
    return ((new - old) / old) * 100


@dataclass
class ObservationSnapshot:
    """Point-in-time quote for one symbol."""

    symbol: str
    price: float
    day_change_pct: float
    intraday_change_pct: float
    gap_pct: float
    volume: int = 0
    timestamp: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_quote(
        cls,
        symbol: str,
        price: float,
        previous_close: float,
        open_price: Optional[float],
        volume: int = 0,
    ) -> "ObservationSnapshot":
        """Derive the percentage moves from raw quote fields."""
        open_price = open_price or previous_close
        return cls(
            symbol=symbol,
            price=price,
            day_change_pct=_pct(price, previous_close),
            intraday_change_pct=_pct(price, open_price),
            gap_pct=_pct(open_price, previous_close),
            volume=volume,
        )


class StockDataFetcher:
    """Fetches quotes and daily closes from Yahoo Finance."""

    def __init__(self, rate_limiter: Optional[RateLimiter] = None):
        self.rate_limiter = rate_limiter

    def _throttle(self) -> None:
        if self.rate_limiter is not None:
            self.rate_limiter.acquire()

    def get_observation(self, ticker: str) -> ObservationSnapshot:
        """
        Fetch the current quote.

        Args:
            ticker: Stock symbol (e.g., "AAPL")

        Returns:
            ObservationSnapshot for the symbol

        Raises:
            ValueError: If symbol is invalid or data unavailable
        """
        self._throttle()
        info = yf.Ticker(ticker).info

        if not info or "regularMarketPrice" not in info and "previousClose" not in info:
            raise ValueError(f"Invalid symbol or no data available: {ticker}")

        # Use regularMarketPrice if available, otherwise fall back to previousClose
        price = info.get("regularMarketPrice")
        if price is None:
            price = info.get("previousClose")
        if price is None:
            raise ValueError(f"Invalid symbol or no data available: {ticker}")

        previous_close = info.get("previousClose") or price
        return ObservationSnapshot.from_quote(
            symbol=ticker,
            price=price,
            previous_close=previous_close,
            open_price=info.get("open"),
            volume=info.get("volume") or 0,
        )

    def get_daily_closes(self, ticker: str, count: int = 20) -> list[float]:
        """
        Fetch the most recent daily closes, oldest first.

        Args:
            ticker: Stock symbol
            count: Maximum number of closes to return

        Returns:
            Up to ``count`` closing prices (may be empty)
        """
        self._throttle()
        hist = yf.Ticker(ticker).history(period="2mo", interval="1d")
        if hist.empty:
            return []
        closes = hist["Close"].dropna().astype(float).tolist()
        return closes[-count:]

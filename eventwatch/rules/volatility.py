"""
Trailing volatility baseline.
"""

import logging
import math
from dataclasses import dataclass

import pandas as pd

from eventwatch.data.fetcher import StockDataFetcher

logger = logging.getLogger(__name__)

DEFAULT_VOLATILITY = 2.0


@dataclass
class VolatilityBaseline:
    """Sample std-dev of daily percentage returns for one symbol."""

    symbol: str
    trailing_std_pct: float


def returns_std_pct(closes: list[float]) -> float:
    """Sample standard deviation of day-over-day percentage returns.

    Returns NaN when fewer than two returns are available.
    """
    returns = pd.Series(closes, dtype="float64").pct_change(fill_method=None) * 100
    returns = returns.replace([math.inf, -math.inf], math.nan).dropna()
    return float(returns.std(ddof=1))


class VolatilityEstimator:
    """Computes the "normal" daily swing used to scale price rules."""

    def __init__(
        self,
        fetcher: StockDataFetcher,
        window: int = 20,
        default: float = DEFAULT_VOLATILITY,
        floor: float = 0.5,
    ):
        self.fetcher = fetcher
        self.window = window
        self.default = default
        self.floor = floor

    def estimate(self, symbol: str) -> float:
        """
        Estimate trailing volatility in percent.

        Never raises and never returns a value <= 0: missing history or a
        provider failure yields the default, a computed value is clamped
        to ``floor``.
        """
        try:
            closes = self.fetcher.get_daily_closes(symbol, count=self.window)
        except Exception as e:
            logger.warning(f"Volatility history unavailable for {symbol}: {e}")
            return self.default

        return self.from_closes(closes)

    def from_closes(self, closes: list[float]) -> float:
        if len(closes) < 2:
            return self.default

        std = returns_std_pct(closes)
        if not math.isfinite(std) or std <= 0:
            return self.default
        return max(std, self.floor)

    def baseline(self, symbol: str) -> VolatilityBaseline:
        return VolatilityBaseline(symbol=symbol, trailing_std_pct=self.estimate(symbol))

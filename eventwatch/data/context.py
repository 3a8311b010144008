"""
Quote & context fetching for a set of symbols.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .fetcher import ObservationSnapshot, StockDataFetcher
from .news import NewsContext, NewsFetcher
from .social import SocialContext, SocialFetcher

logger = logging.getLogger(__name__)


@dataclass
class SymbolContext:
    """Everything the classifier needs for one symbol."""

    symbol: str
    observation: ObservationSnapshot
    volatility: float
    news: NewsContext = field(default_factory=NewsContext.empty)
    social: SocialContext = field(default_factory=SocialContext.empty)


class ContextFetcher:
    """
    Gathers quote, volatility, news and social data per symbol.

    Symbols are fetched concurrently. Each call is bounded by ``timeout``;
    a slow or failing provider is treated as missing data and the matching
    fallback (default volatility, empty news/social) is used instead.
    """

    def __init__(
        self,
        quotes: StockDataFetcher,
        volatility_estimator,
        news: Optional[NewsFetcher] = None,
        social: Optional[SocialFetcher] = None,
        timeout: float = 15.0,
        max_workers: int = 8,
    ):
        self.quotes = quotes
        self.volatility_estimator = volatility_estimator
        self.news = news
        self.social = social
        self.timeout = timeout
        self.max_workers = max_workers

    def fetch(self, symbols: list[str]) -> dict[str, SymbolContext]:
        """
        Fetch context for every symbol.

        Returns:
            Mapping of symbol to context; symbols without a quote are omitted
        """
        if not symbols:
            return {}

        tasks: dict[tuple[str, str], Callable[[], Any]] = {}
        for symbol in symbols:
            tasks[(symbol, "quote")] = lambda s=symbol: self.quotes.get_observation(s)
            tasks[(symbol, "volatility")] = lambda s=symbol: self.volatility_estimator.estimate(s)
            if self.news is not None:
                tasks[(symbol, "news")] = lambda s=symbol: self.news.get_context(s)
            if self.social is not None:
                tasks[(symbol, "social")] = lambda s=symbol: self.social.get_context(s)

        executor = ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(tasks)),
            thread_name_prefix="context-fetch",
        )
        try:
            futures = {executor.submit(fn): key for key, fn in tasks.items()}
            done, not_done = wait(futures, timeout=self.timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        results: dict[tuple[str, str], Any] = {}
        for future in done:
            key = futures[future]
            try:
                results[key] = future.result()
            except Exception as e:
                logger.warning(f"{key[1]} fetch failed for {key[0]}: {e}")
        for future in not_done:
            key = futures[future]
            logger.warning(f"{key[1]} fetch timed out for {key[0]} after {self.timeout}s")

        contexts = {}
        for symbol in symbols:
            observation = results.get((symbol, "quote"))
            if observation is None:
                continue
            contexts[symbol] = SymbolContext(
                symbol=symbol,
                observation=observation,
                volatility=results.get(
                    (symbol, "volatility"), self.volatility_estimator.default
                ),
                news=results.get((symbol, "news")) or NewsContext.empty(),
                social=results.get((symbol, "social")) or SocialContext.empty(),
            )
        return contexts

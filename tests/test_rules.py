"""
Rule tests.
Tests for the volatility baseline and the abnormality classifier.
"""

from unittest.mock import Mock

import pytest

from eventwatch.data.social import SocialContext, SocialPost
from eventwatch.rules.engine import AbnormalityClassifier
from eventwatch.rules.types import COMBINED_EVENT_KIND, EventKind, Severity
from eventwatch.rules.volatility import VolatilityEstimator, returns_std_pct


class TestVolatilityEstimator:
    """Test trailing volatility estimation."""

    @pytest.fixture
    def fetcher(self):
        return Mock()

    def test_sample_std_of_returns(self, fetcher):
        """Should use the sample standard deviation of daily % returns."""
        closes = [100.0, 102.0, 100.98, 103.0]
        fetcher.get_daily_closes.return_value = closes

        estimate = VolatilityEstimator(fetcher, floor=0.1).estimate("AAPL")

        assert estimate == pytest.approx(returns_std_pct(closes))
        assert estimate > 1.0
        fetcher.get_daily_closes.assert_called_once_with("AAPL", count=20)

    @pytest.mark.parametrize("closes", [[], [101.5]])
    def test_short_history_uses_default(self, fetcher, closes):
        """Zero or one data point should give the default, never <= 0."""
        fetcher.get_daily_closes.return_value = closes

        assert VolatilityEstimator(fetcher, default=2.0).estimate("NEW") == 2.0

    def test_two_points_uses_default(self, fetcher):
        """A single return has no sample deviation."""
        fetcher.get_daily_closes.return_value = [100.0, 103.0]

        assert VolatilityEstimator(fetcher, default=2.0).estimate("NEW") == 2.0

    def test_flat_prices_use_default(self, fetcher):
        fetcher.get_daily_closes.return_value = [50.0] * 20

        assert VolatilityEstimator(fetcher, default=2.0).estimate("FLAT") == 2.0

    def test_tiny_volatility_is_floored(self, fetcher):
        fetcher.get_daily_closes.return_value = [100.0, 100.01, 100.0, 100.01, 100.0]

        assert VolatilityEstimator(fetcher, floor=0.5).estimate("CALM") == 0.5

    def test_provider_error_uses_default(self, fetcher):
        fetcher.get_daily_closes.side_effect = ValueError("no data")

        assert VolatilityEstimator(fetcher, default=2.0).estimate("AAPL") == 2.0

    def test_zero_close_does_not_break(self, fetcher):
        fetcher.get_daily_closes.return_value = [0.0, 10.0, 10.5, 10.2]

        estimate = VolatilityEstimator(fetcher).estimate("ODD")
        assert estimate > 0

    def test_baseline(self, fetcher):
        fetcher.get_daily_closes.return_value = []

        baseline = VolatilityEstimator(fetcher).baseline("AAPL")
        assert baseline.symbol == "AAPL"
        assert baseline.trailing_std_pct == 2.0


class TestAbnormalityClassifier:
    """Test rule evaluation and merging."""

    @pytest.fixture
    def classifier(self):
        return AbnormalityClassifier()

    def test_quiet_symbol(self, classifier, make_observation, make_news):
        """Small moves with no news should not produce an event."""
        event = classifier.classify("AAPL", make_observation(day=0.8), 2.0, make_news(count=0))

        assert event is None

    def test_missing_news_is_zero_counts(self, classifier, make_observation):
        assert classifier.classify("AAPL", make_observation(day=3.0), 1.0, news=None) is None

    def test_price_vs_volatility_needs_news(self, classifier, make_observation, make_news):
        """A big relative move alone is not enough without a catalyst."""
        observation = make_observation(day=4.5)

        assert classifier.classify("AAPL", observation, 2.0, make_news(count=0)) is None

        event = classifier.classify("AAPL", observation, 2.0, make_news(count=1, avg=1.0))
        assert event is not None
        assert event.reasons == ["price_vs_volatility"]
        assert event.severity == Severity.MEDIUM
        assert event.kind == EventKind.PRICE_SPIKE

    def test_sharp_intraday_is_high(self, classifier, make_observation):
        event = classifier.classify("TSLA", make_observation(day=3.0, intraday=-5.5), 2.0)

        assert "sharp_intraday" in event.reasons
        assert event.severity == Severity.HIGH

    def test_gap_open_is_high(self, classifier, make_observation):
        event = classifier.classify("TSLA", make_observation(day=0.5, intraday=0.0, gap=4.2), 2.0)

        assert event.reasons == ["gap_open"]
        assert event.severity == Severity.HIGH
        assert event.kinds == [EventKind.GAP_OPEN]

    def test_news_surge(self, classifier, make_observation, make_news):
        event = classifier.classify("AAPL", make_observation(day=0.2), 2.0, make_news(count=3, avg=1.2))

        assert event.reasons == ["news_surge"]
        assert event.severity == Severity.MEDIUM

    def test_news_surge_needs_minimum_count(self, classifier, make_observation, make_news):
        """One article against a quiet baseline is not a surge."""
        event = classifier.classify("AAPL", make_observation(day=0.2), 2.0, make_news(count=1, avg=0.1))

        assert event is None

    def test_sentiment_flip(self, classifier, make_observation, make_news):
        news = make_news(count=2, avg=1.5, current=-25.0, previous=10.0)

        event = classifier.classify("AAPL", make_observation(day=0.2), 2.0, news)

        assert event.reasons == ["sentiment_flip"]
        assert event.facts["sentiment_delta"] == -35.0
        assert event.kinds == [EventKind.SENTIMENT_SHIFT]

    def test_heavy_news_escalates(self, classifier, make_observation, make_news):
        event = classifier.classify("AAPL", make_observation(day=0.2), 2.0, make_news(count=5, avg=1.0))

        assert event.reasons == ["news_surge", "escalation_news"]
        assert event.severity == Severity.HIGH

    @pytest.mark.parametrize(
        "observation_kwargs, news_kwargs",
        [
            ({"day": 5.0}, {"count": 0}),
            ({"day": -7.5}, {"count": 2, "avg": 0.5, "current": 40.0}),
            ({"day": 6.0, "gap": 1.0}, {"count": 3, "avg": 2.0}),
            ({"day": 0.5}, {"count": 8, "avg": 2.0, "current": -50.0}),
        ],
    )
    def test_escalation_always_high(
        self, classifier, make_observation, make_news, observation_kwargs, news_kwargs
    ):
        """Any escalation condition yields High regardless of Medium rules."""
        event = classifier.classify(
            "AAPL", make_observation(**observation_kwargs), 2.0, make_news(**news_kwargs)
        )

        assert event is not None
        assert event.severity == Severity.HIGH

    def test_three_rules_one_event(self, classifier, make_observation, make_news):
        """Three rules firing together should merge into one event."""
        event = classifier.classify(
            "NVDA",
            make_observation(symbol="NVDA", day=6.0, intraday=1.0, gap=4.5),
            2.0,
            make_news(count=1, avg=0.5),
        )

        assert event.symbol == "NVDA"
        assert event.reasons == ["price_vs_volatility", "gap_open", "escalation_price"]
        assert event.facts["reasons"] == event.reasons
        assert event.kinds == [EventKind.PRICE_SPIKE, EventKind.GAP_OPEN]
        assert event.dedup_kind == COMBINED_EVENT_KIND

    def test_price_spike_with_news(self, classifier, make_observation, make_news):
        """6% move on a 2% baseline with three stories is one High event."""
        event = classifier.classify(
            "X", make_observation(symbol="X", day=6.0, price=53.0), 2.0, make_news(count=3, avg=2.0)
        )

        assert event.severity == Severity.HIGH
        assert "price_vs_volatility" in event.reasons
        assert "escalation_price" in event.reasons
        assert event.facts["volatility_multiple"] == 3.0
        assert event.facts["news_count_recent"] == 3
        assert event.facts["headlines"][0]["source"] == "Reuters"
        assert event.direction == "up"

    def test_social_context_in_facts(self, classifier, make_observation, make_news):
        social = SocialContext(
            mention_count=12,
            sentiment=45.0,
            posts=[SocialPost(title="X to the moon", score=800)],
        )

        event = classifier.classify(
            "X", make_observation(day=-5.0), 2.0, make_news(count=1), social=social
        )

        assert event.direction == "down"
        assert event.facts["social"] == {
            "mentions": 12,
            "sentiment": 45.0,
            "label": "bullish",
            "top_post": "X to the moon",
        }

"""
Tests for the strategy engine: trend-following, mean-reversion and the regime blend
"""

import json
from decimal import Decimal

import numpy as np
import pytest

from Errors import InsufficientData, UnknownStrategy
from StrategyEngine import (BlendHeuristics, IndicatorReading, MarketRegime, MeanReversionStrategy,
                            PredictionResult, RegimeBlendStrategy, RegimeReading, ReversionHeuristics,
                            SignalDirection, StrategyEngine, TrendFollowingStrategy, TrendHeuristics,
                            blend_predictions, detect_market_regime, strategy_engine)


@pytest.fixture(scope='module')
def trend_strategy():
    return TrendFollowingStrategy()


@pytest.fixture(scope='module')
def reversion_strategy():
    return MeanReversionStrategy()


@pytest.fixture(scope='module')
def blend_strategy(trend_strategy, reversion_strategy):
    return RegimeBlendStrategy(trend_strategy, reversion_strategy)


def make_prediction(direction, confidence, target='110', stop='95', price='100', strategy_id='x'):
    return PredictionResult(
        symbol='TESTUSDT',
        timeframe='1h',
        timestamp=1704067200000,
        current_price=Decimal(price),
        direction=direction,
        confidence=confidence,
        target_price=Decimal(target),
        stop_loss=Decimal(stop),
        indicators=(IndicatorReading('RSI', 55.0, '#b2b5be'), IndicatorReading('Percent B', 0.4, '#b2b5be')),
        historical_accuracy=0.7,
        strategy_id=strategy_id,
    )


TRENDING = RegimeReading(MarketRegime.TRENDING, adx=35.0, width=0.08)
RANGING = RegimeReading(MarketRegime.RANGING, adx=15.0, width=0.03)
MIXED = RegimeReading(MarketRegime.MIXED, adx=22.0, width=0.07)


class TestTrendFollowing:

    def test_flat_market_is_neutral(self, trend_strategy, flat_market):
        prediction = trend_strategy.execute(flat_market)
        assert prediction.direction is SignalDirection.NEUTRAL
        assert prediction.confidence == pytest.approx(0.5)
        assert prediction.indicator('ATR').value == pytest.approx(0.0)

    def test_rising_market_is_long(self, trend_strategy, rising_market):
        prediction = trend_strategy.execute(rising_market)
        assert prediction.direction is SignalDirection.LONG
        assert prediction.confidence > 0.7
        assert prediction.target_price > prediction.current_price
        assert prediction.stop_loss < prediction.current_price

    def test_falling_market_is_short(self, trend_strategy, falling_market):
        prediction = trend_strategy.execute(falling_market)
        assert prediction.direction is SignalDirection.SHORT
        assert prediction.confidence > 0.7
        assert prediction.target_price < prediction.current_price
        assert prediction.stop_loss > prediction.current_price

    def test_short_history_raises(self, trend_strategy, market_factory):
        with pytest.raises(InsufficientData) as excinfo:
            trend_strategy.execute(market_factory(np.linspace(100, 110, 10)))
        assert excinfo.value.required == 210
        assert excinfo.value.available == 10
        assert "need >= 210 candles for EMA200 + MACD warmup" in str(excinfo.value)

    def test_minimum_history_is_accepted(self, trend_strategy, market_factory):
        closes = 100 * 1.001 ** np.arange(trend_strategy.min_candles)
        prediction = trend_strategy.execute(market_factory(closes))
        assert 0.0 <= prediction.confidence <= 0.95

    def test_votes_abstain_on_flat_market(self, trend_strategy, flat_market):
        snapshot = trend_strategy.compute_indicators(flat_market)
        votes = trend_strategy.tally_votes(snapshot, flat_market)
        assert set(votes) == set(TrendFollowingStrategy.SIGNAL_WEIGHTS)
        assert all(vote == 0 for vote in votes.values())

    def test_strong_sentiment_votes(self, trend_strategy, flat_market):
        snapshot = trend_strategy.compute_indicators(flat_market)
        votes = trend_strategy.tally_votes(snapshot, flat_market.with_sentiment(-0.8))
        assert votes['sentiment'] == -1

    def test_prediction_metadata(self, trend_strategy, rising_market):
        prediction = trend_strategy.execute(rising_market)
        assert prediction.strategy_id == 'trend-following'
        assert prediction.symbol == 'TESTUSDT'
        assert prediction.timestamp == rising_market.last_timestamp
        names = [reading.name for reading in prediction.indicators]
        assert names[:2] == ['MACD', 'RSI']
        assert 'Market Sentiment' in names

    def test_prices_are_rounded_to_magnitude(self, trend_strategy, rising_market):
        prediction = trend_strategy.execute(rising_market)
        # price around 345 keeps 8 significant digits
        assert prediction.target_price.as_tuple().exponent == -5
        assert prediction.current_price.as_tuple().exponent == -5

    @pytest.mark.heuristic
    def test_confidence_without_bonuses_is_base(self, market_factory, rising_market):
        plain = TrendFollowingStrategy(TrendHeuristics(score_weight=0.0, histogram_bonus_cap=0.0,
                                                       rsi_band_bonus=0.0, adx_bonus=0.0))
        prediction = plain.execute(rising_market)
        assert prediction.direction is SignalDirection.LONG
        assert prediction.confidence == pytest.approx(0.5)

    @pytest.mark.heuristic
    def test_accuracy_tracks_confidence(self, trend_strategy, rising_market, flat_market):
        long_prediction = trend_strategy.execute(rising_market)
        assert long_prediction.historical_accuracy == pytest.approx(
            0.76 + (long_prediction.confidence - 0.5) / 5, abs=1e-4)
        assert trend_strategy.execute(flat_market).historical_accuracy == 0.76


class TestMeanReversion:

    def test_flat_market_is_neutral(self, reversion_strategy, flat_market):
        prediction = reversion_strategy.execute(flat_market)
        assert prediction.direction is SignalDirection.NEUTRAL
        assert prediction.indicator('Percent B').value == 0.5

    def test_short_history_raises(self, reversion_strategy, market_factory):
        with pytest.raises(InsufficientData) as excinfo:
            reversion_strategy.execute(market_factory(np.linspace(100, 90, 10)))
        assert excinfo.value.required == reversion_strategy.min_candles == 34

    def test_target_is_middle_band(self, reversion_strategy, oscillating_market):
        # bar 17 of the last cycle: close 95.5 after the 95 plateau
        history = oscillating_market.head(len(oscillating_market) - 2)
        prediction = reversion_strategy.execute(history)
        assert float(prediction.target_price) == pytest.approx(100.0, abs=1e-4)
        assert prediction.indicator('BB Middle').value == pytest.approx(100.0)

    def test_long_after_oversold_turn(self, reversion_strategy, oscillating_market):
        history = oscillating_market.head(len(oscillating_market) - 2)
        assert history.current_price == 95.5
        prediction = reversion_strategy.execute(history)
        assert prediction.direction is SignalDirection.LONG
        assert prediction.confidence > 0.65
        assert prediction.stop_loss < Decimal('94.75')

    def test_short_after_overbought_turn(self, reversion_strategy, oscillating_market):
        # bar 7 of the last cycle: close 104.5 after the 105 plateau
        history = oscillating_market.head(len(oscillating_market) - 12)
        assert history.current_price == 104.5
        prediction = reversion_strategy.execute(history)
        assert prediction.direction is SignalDirection.SHORT
        assert prediction.confidence > 0.65
        assert prediction.stop_loss > Decimal('105.25')

    @pytest.mark.heuristic
    def test_narrow_bands_boost_neutral_confidence(self, reversion_strategy, flat_market):
        assert reversion_strategy.execute(flat_market).confidence == pytest.approx(0.55)

    @pytest.mark.heuristic
    def test_base_confidence_is_tunable(self, oscillating_market):
        history = oscillating_market.head(len(oscillating_market) - 2)
        default = MeanReversionStrategy().execute(history)
        cautious = MeanReversionStrategy(ReversionHeuristics(base_confidence=0.55)).execute(history)
        assert cautious.confidence == pytest.approx(default.confidence - 0.1 * 0.9)


class TestRegimeDetection:

    def test_trending(self, rising_market):
        reading = detect_market_regime(rising_market)
        assert reading.regime is MarketRegime.TRENDING
        assert reading.adx > 25

    def test_ranging(self, flat_market):
        reading = detect_market_regime(flat_market)
        assert reading.regime is MarketRegime.RANGING
        assert reading.width == pytest.approx(0.0, abs=1e-12)

    def test_wide_bands_are_not_ranging(self, oscillating_market):
        reading = detect_market_regime(oscillating_market)
        assert reading.width > 0.05
        assert reading.regime is not MarketRegime.RANGING


class TestBlendPredictions:

    def test_agreement_is_weighted_with_bonus(self):
        trend = make_prediction(SignalDirection.LONG, 0.8, target='110', stop='95')
        reversion = make_prediction(SignalDirection.LONG, 0.7, target='105', stop='97')
        blended = blend_predictions(trend, reversion, TRENDING)
        assert blended.direction is SignalDirection.LONG
        assert blended.confidence == pytest.approx((0.8 * 0.8 + 0.2 * 0.7) * 1.1)
        assert blended.target_price == Decimal('109')
        assert blended.stop_loss == Decimal('95.4')
        assert blended.strategy_id == 'ml-enhanced'

    def test_both_neutral_has_no_bonus(self):
        trend = make_prediction(SignalDirection.NEUTRAL, 0.5)
        reversion = make_prediction(SignalDirection.NEUTRAL, 0.55)
        blended = blend_predictions(trend, reversion, MIXED)
        assert blended.direction is SignalDirection.NEUTRAL
        assert blended.confidence == pytest.approx(0.525)

    def test_disagreement_follows_trend_when_trending(self):
        trend = make_prediction(SignalDirection.LONG, 0.8)
        reversion = make_prediction(SignalDirection.SHORT, 0.7, target='95', stop='105')
        blended = blend_predictions(trend, reversion, TRENDING)
        assert blended.direction is SignalDirection.LONG
        assert blended.confidence == pytest.approx(0.8 * 0.95)
        assert blended.target_price == trend.target_price

    def test_disagreement_follows_reversion_when_ranging(self):
        trend = make_prediction(SignalDirection.LONG, 0.8)
        reversion = make_prediction(SignalDirection.SHORT, 0.7, target='95', stop='105')
        blended = blend_predictions(trend, reversion, RANGING)
        assert blended.direction is SignalDirection.SHORT
        assert blended.confidence == pytest.approx(0.7 * 0.95)
        assert blended.stop_loss == Decimal('105')

    def test_disagreement_in_mixed_regime_keeps_more_confident(self):
        trend = make_prediction(SignalDirection.NEUTRAL, 0.5)
        reversion = make_prediction(SignalDirection.SHORT, 0.75, target='95', stop='105')
        blended = blend_predictions(trend, reversion, MIXED)
        assert blended.direction is SignalDirection.SHORT
        assert blended.confidence == pytest.approx(0.75 * 0.9)

    def test_mixed_regime_tie_goes_to_reversion(self):
        trend = make_prediction(SignalDirection.LONG, 0.7)
        reversion = make_prediction(SignalDirection.SHORT, 0.7, target='95', stop='105')
        blended = blend_predictions(trend, reversion, MIXED)
        assert blended.direction is SignalDirection.SHORT
        assert blended.confidence == pytest.approx(0.7 * 0.9)
        assert blended.target_price == Decimal('95')

    def test_supportive_sentiment_boosts(self):
        trend = make_prediction(SignalDirection.LONG, 0.7)
        reversion = make_prediction(SignalDirection.LONG, 0.7)
        plain = blend_predictions(trend, reversion, MIXED)
        boosted = blend_predictions(trend, reversion, MIXED, sentiment=0.8)
        against = blend_predictions(trend, reversion, MIXED, sentiment=-0.8)
        assert boosted.confidence == pytest.approx(plain.confidence * 1.05)
        assert against.confidence == pytest.approx(plain.confidence)

    def test_confidence_is_clamped(self):
        trend = make_prediction(SignalDirection.LONG, 0.95)
        reversion = make_prediction(SignalDirection.LONG, 0.95)
        assert blend_predictions(trend, reversion, TRENDING, sentiment=1.0).confidence == 0.95

    def test_indicator_union_with_regime_diagnostics(self):
        trend = make_prediction(SignalDirection.LONG, 0.8)
        reversion = make_prediction(SignalDirection.LONG, 0.7)
        names = [r.name for r in blend_predictions(trend, reversion, RANGING).indicators]
        assert names[:4] == ['Market Regime', 'Trend Strength', 'Volatility', 'Sentiment']
        assert names.count('RSI') == 1
        assert 'Percent B' in names

    @pytest.mark.heuristic
    def test_custom_weights(self):
        trend = make_prediction(SignalDirection.LONG, 0.9)
        reversion = make_prediction(SignalDirection.LONG, 0.5)
        heuristics = BlendHeuristics(trending_weights=(1.0, 0.0), agreement_bonus=1.0)
        assert blend_predictions(trend, reversion, TRENDING, heuristics).confidence == pytest.approx(0.9)


class TestRegimeBlendStrategy:

    def test_rising_market_is_long(self, blend_strategy, rising_market):
        prediction = blend_strategy.execute(rising_market)
        assert prediction.direction is SignalDirection.LONG
        assert prediction.strategy_id == 'ml-enhanced'
        assert prediction.indicator('Market Regime').value == 1.0

    def test_min_candles_covers_both_strategies(self, blend_strategy):
        assert blend_strategy.min_candles == 210

    def test_short_history_raises(self, blend_strategy, market_factory):
        with pytest.raises(InsufficientData):
            blend_strategy.execute(market_factory(np.linspace(100, 110, 50)))


class TestStrategyProperties:
    """Properties every strategy must hold for any valid candles"""

    @pytest.mark.parametrize('strategy_id', ['trend-following', 'mean-reversion', 'ml-enhanced'])
    def test_confidence_bounds(self, strategy_id, random_walk_market):
        prediction = strategy_engine.predict(strategy_id, random_walk_market)
        assert 0.0 <= prediction.confidence <= 0.95

    @pytest.mark.parametrize('strategy_id', ['trend-following', 'mean-reversion', 'ml-enhanced'])
    def test_deterministic(self, strategy_id, random_walk_market):
        first = strategy_engine.predict(strategy_id, random_walk_market)
        second = strategy_engine.predict(strategy_id, random_walk_market)
        assert first.to_json() == second.to_json()

    def test_sentiment_stays_in_range(self, random_walk_market):
        assert -1.0 <= random_walk_market.market_sentiment <= 1.0

    @pytest.mark.parametrize('strategy_id', ['trend-following', 'mean-reversion', 'ml-enhanced'])
    def test_very_large_prices(self, strategy_id, random_walk_market, market_factory):
        frame = random_walk_market.frame
        scale = 1e30
        scaled = market_factory((frame['close'] * scale).to_numpy(),
                                opens=(frame['open'] * scale).to_numpy(),
                                highs=(frame['high'] * scale).to_numpy(),
                                lows=(frame['low'] * scale).to_numpy(),
                                volumes=frame['volume'].to_numpy())
        prediction = strategy_engine.predict(strategy_id, scaled)

        assert 0.0 <= prediction.confidence <= 0.95
        assert prediction.target_price.is_finite() and prediction.target_price > 0
        assert prediction.stop_loss.is_finite() and prediction.stop_loss > 0


class TestStrategyEngine:

    def test_available_strategies(self):
        ids = [info['id'] for info in strategy_engine.available_strategies()]
        assert ids == ['trend-following', 'mean-reversion', 'ml-enhanced']
        for info in strategy_engine.available_strategies():
            assert info['name'] and info['timeframes'] and info['version']

    def test_unknown_strategy(self):
        with pytest.raises(UnknownStrategy) as excinfo:
            strategy_engine.get_strategy('momentum')
        assert 'trend-following' in str(excinfo.value)
        assert excinfo.value.strategy_id == 'momentum'

    def test_custom_registry(self, trend_strategy):
        engine = StrategyEngine([trend_strategy])
        assert engine.get_strategy('trend-following') is trend_strategy
        with pytest.raises(UnknownStrategy):
            engine.get_strategy('mean-reversion')

    def test_prediction_json(self, rising_market):
        payload = json.loads(strategy_engine.predict('trend-following', rising_market).to_json())
        assert payload['direction'] == 'long'
        assert payload['strategyId'] == 'trend-following'
        assert {'currentPrice', 'targetPrice', 'stopLoss', 'historicalAccuracy', 'indicators'} <= set(payload)

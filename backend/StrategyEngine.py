"""
StrategyEngine Module for the Candle Signal Engine
Turns candle history into long/short/neutral predictions with confidence, target and stop
Includes trend-following, mean-reversion and a regime-weighted blend of the two
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from config import config
from Errors import DegenerateIndicator, InsufficientData, UnknownStrategy
from Indicators import (IndicatorSnapshot, calculate_adx, calculate_atr, calculate_bollinger_bands,
                        calculate_ema, calculate_macd, calculate_obv, calculate_percent_b, calculate_roc,
                        calculate_rsi, calculate_stoch_rsi, calculate_volume_ratio, check_trend_pattern,
                        find_support_resistance)
from MarketData import MarketData, round_price, to_decimal
from Schemas import IndicatorSchema, PredictionSchema

BULLISH_COLOR = '#26a69a'
BEARISH_COLOR = '#ef5350'
NEUTRAL_COLOR = '#b2b5be'
ACCENT_COLOR = '#f0b90b'

# Relative tolerance below which two values count as equal when voting
VOTE_TOLERANCE = 1e-9


class SignalDirection(Enum):
    """Enumeration for prediction directions"""
    LONG = "long"
    SHORT = "short"
    NEUTRAL = "neutral"

    @property
    def sign(self) -> int:
        return {SignalDirection.LONG: 1, SignalDirection.SHORT: -1}.get(self, 0)


class MarketRegime(Enum):
    TRENDING = "trending"
    RANGING = "ranging"
    MIXED = "mixed"


@dataclass(frozen=True)
class IndicatorReading:
    """Indicator value shown alongside a prediction"""
    name: str
    value: float
    color: str


@dataclass(frozen=True)
class PredictionResult:
    """
    Data class representing a strategy prediction
    Monetary fields are Decimals already rounded by the price policy;
    target and stop of a neutral prediction are advisory only
    """
    symbol: str
    timeframe: str
    timestamp: int
    current_price: Decimal
    direction: SignalDirection
    confidence: float
    target_price: Decimal
    stop_loss: Decimal
    indicators: Tuple[IndicatorReading, ...]
    historical_accuracy: Optional[float] = None
    strategy_id: Optional[str] = None

    def indicator(self, name: str) -> Optional[IndicatorReading]:
        for reading in self.indicators:
            if reading.name == name:
                return reading
        return None

    def to_schema(self) -> PredictionSchema:
        return PredictionSchema(
            symbol=self.symbol,
            timeframe=self.timeframe,
            timestamp=self.timestamp,
            current_price=float(self.current_price),
            direction=self.direction.value,
            confidence=self.confidence,
            target_price=float(self.target_price),
            stop_loss=float(self.stop_loss),
            indicators=[
                IndicatorSchema(name=r.name, value=_finite_or_none(r.value), color=r.color)
                for r in self.indicators
            ],
            historical_accuracy=self.historical_accuracy,
            strategy_id=self.strategy_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return self.to_schema().model_dump(by_alias=True)

    def to_json(self, indent: Optional[int] = None) -> str:
        return self.to_schema().model_dump_json(by_alias=True, indent=indent)


@dataclass(frozen=True)
class TrendHeuristics:
    """Tunable thresholds and confidence bonuses of the trend-following strategy"""
    long_threshold: float = 0.60
    short_threshold: float = 0.35
    base_confidence: float = 0.5
    score_weight: float = 0.4
    histogram_bonus_cap: float = 0.1
    histogram_scale: float = 0.015
    rsi_band_bonus: float = 0.05
    adx_trend_level: float = 25.0
    adx_bonus_level: float = 30.0
    adx_bonus: float = 0.05
    volume_vote_level: float = 1.1
    sentiment_vote_level: float = 0.3
    sentiment_weight: float = 0.1
    volatility_limit: float = 0.03
    volatility_penalty: float = 0.9
    target_base_multiplier: float = 1.5
    target_volatility_weight: float = 10.0
    stop_multiplier: float = 1.0
    neutral_target_multiplier: float = 1.0
    neutral_stop_multiplier: float = 0.5
    base_accuracy: float = 0.76
    accuracy_divisor: float = 5.0


@dataclass(frozen=True)
class ReversionHeuristics:
    """Tunable thresholds and confidence bonuses of the mean-reversion strategy"""
    percent_b_oversold: float = 0.15
    percent_b_overbought: float = 0.85
    stoch_oversold: float = 20.0
    stoch_overbought: float = 80.0
    roc_floor: float = 0.5
    base_confidence: float = 0.65
    neutral_confidence: float = 0.5
    percent_b_weight: float = 2.0
    percent_b_bonus_cap: float = 0.15
    rsi_bonus_cap: float = 0.1
    stoch_bonus_cap: float = 0.1
    volume_level: float = 1.2
    volume_bonus: float = 0.05
    level_proximity_pct: float = 1.0
    level_bonus: float = 0.1
    sentiment_weight: float = 0.05
    follow_through_bonus: float = 0.05
    narrow_width: float = 0.05
    narrow_boost: float = 1.1
    wide_width: float = 0.06
    wide_penalty: float = 0.9
    stop_atr_multiplier: float = 1.5
    level_buffer: float = 0.01
    neutral_stop_ratio: float = 1.02
    base_accuracy: float = 0.72
    accuracy_divisor: float = 10.0


@dataclass(frozen=True)
class BlendHeuristics:
    """Regime thresholds and blend weights of the composite strategy"""
    trending_adx: float = 25.0
    ranging_adx: float = 20.0
    ranging_width: float = 0.05
    trending_weights: Tuple[float, float] = (0.8, 0.2)
    ranging_weights: Tuple[float, float] = (0.2, 0.8)
    mixed_weights: Tuple[float, float] = (0.5, 0.5)
    agreement_bonus: float = 1.1
    regime_disagreement_penalty: float = 0.95
    mixed_disagreement_penalty: float = 0.9
    sentiment_level: float = 0.5
    sentiment_boost: float = 1.05
    base_accuracy: float = max(TrendHeuristics.base_accuracy, ReversionHeuristics.base_accuracy)
    accuracy_divisor: float = 8.0

    def weights_for(self, regime: MarketRegime) -> Tuple[float, float]:
        """(trend weight, reversion weight) for a regime"""
        if regime is MarketRegime.TRENDING:
            return self.trending_weights
        if regime is MarketRegime.RANGING:
            return self.ranging_weights
        return self.mixed_weights


@dataclass(frozen=True)
class RegimeReading:
    regime: MarketRegime
    adx: float
    width: float


def _finite_or_none(value: float) -> Optional[float]:
    return float(value) if value is not None and math.isfinite(value) else None


def _clamp_confidence(value: float) -> float:
    return min(max(value, 0.0), config.MAX_CONFIDENCE)


def _compare(value: float, reference: float, scale: float) -> int:
    """+1 if value is above reference, -1 if below, 0 within tolerance or when undefined"""
    if not (math.isfinite(value) and math.isfinite(reference)):
        return 0
    margin = VOTE_TOLERANCE * abs(scale)
    if value > reference + margin:
        return 1
    if value < reference - margin:
        return -1
    return 0


def _rsi_color(rsi: float) -> str:
    if rsi > config.RSI_OVERBOUGHT:
        return BEARISH_COLOR
    if rsi < config.RSI_OVERSOLD:
        return BULLISH_COLOR
    return NEUTRAL_COLOR


def _sentiment_color(sentiment: float) -> str:
    if sentiment > 0:
        return BULLISH_COLOR
    if sentiment < 0:
        return BEARISH_COLOR
    return NEUTRAL_COLOR


def _accuracy(direction: SignalDirection, confidence: float, base: float, divisor: float) -> float:
    if direction is SignalDirection.NEUTRAL:
        return base
    return round(base + (confidence - 0.5) / divisor, 4)


class TradingStrategy(ABC):
    """
    Base class for strategies: a pure mapping from candle history to a prediction
    """
    id: str = ''
    name: str = ''
    description: str = ''
    timeframes: Tuple[str, ...] = ()
    indicators: Tuple[str, ...] = ()
    version: str = '2.0'

    @property
    @abstractmethod
    def min_candles(self) -> int:
        """Shortest candle history execute() accepts"""

    @abstractmethod
    def execute(self, market_data: MarketData) -> PredictionResult:
        """
        Produce a prediction for the last candle of market_data

        Raises:
            InsufficientData: if market_data is shorter than min_candles
        """

    def describe(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'timeframes': list(self.timeframes),
            'indicators': list(self.indicators),
            'version': self.version,
        }

    def _require_history(self, market_data: MarketData, window: str) -> None:
        if len(market_data) < self.min_candles:
            raise InsufficientData(self.min_candles, len(market_data), window)

    def _build_result(self,
                      market_data: MarketData,
                      direction: SignalDirection,
                      confidence: float,
                      target: Decimal,
                      stop: Decimal,
                      readings: Iterable[IndicatorReading],
                      accuracy: Optional[float]) -> PredictionResult:
        price = market_data.current_price
        return PredictionResult(
            symbol=market_data.symbol,
            timeframe=market_data.timeframe,
            timestamp=market_data.last_timestamp,
            current_price=round_price(price),
            direction=direction,
            confidence=confidence,
            target_price=round_price(target, reference=price),
            stop_loss=round_price(stop, reference=price),
            indicators=tuple(readings),
            historical_accuracy=accuracy,
            strategy_id=self.id,
        )


class TrendFollowingStrategy(TradingStrategy):
    """
    Trend-following strategy voting over EMAs, MACD, RSI, directional movement,
    volume and external sentiment
    """
    id = 'trend-following'
    name = 'Enhanced Trend Following Strategy'
    description = 'Uses MACD, RSI, EMAs, ADX, market sentiment and volume analysis to follow established trends'
    timeframes = ('15m', '30m', '1h', '4h', '1d')
    indicators = ('MACD', 'RSI', 'EMA', 'ADX', 'ATR', 'OBV', 'Volume', 'Market Sentiment')

    # Vote weight of each signal; long/short thresholds apply to the net share of this total
    SIGNAL_WEIGHTS = {
        'pattern': 2,
        'ema20': 1,
        'ema50': 1,
        'ema100': 1,
        'ema200': 2,
        'momentum': 1,
        'ema20_slope': 1,
        'histogram': 1,
        'macd_cross': 1,
        'rsi_band': 1,
        'directional': 1,
        'adx': 1,
        'volume': 1,
        'obv': 1,
        'sentiment': 1,
    }

    def __init__(self, heuristics: Optional[TrendHeuristics] = None):
        self.heuristics = heuristics or TrendHeuristics()
        self.trend_period = config.TREND_EMA_PERIOD
        logger.info(f"{self.name} initialized (min candles {self.min_candles})")

    @property
    def min_candles(self) -> int:
        return config.trend_min_candles()

    def compute_indicators(self, market_data: MarketData) -> IndicatorSnapshot:
        frame = market_data.frame
        close = frame['close'].reset_index(drop=True)
        high = frame['high'].reset_index(drop=True)
        low = frame['low'].reset_index(drop=True)
        volume = frame['volume'].reset_index(drop=True)

        snapshot = IndicatorSnapshot()
        snapshot.add('close', close)
        for period in (20, 50, 100):
            snapshot.add(f'ema{period}', calculate_ema(close, period))
        snapshot.add('ema200', calculate_ema(close, self.trend_period))

        macd = calculate_macd(close)
        snapshot.add('macd', macd['macd'])
        snapshot.add('macd_signal', macd['signal'])
        snapshot.add('histogram', macd['histogram'])

        snapshot.add('rsi', calculate_rsi(close))

        adx = calculate_adx(high, low, close)
        snapshot.add('adx', adx['adx'])
        snapshot.add('plus_di', adx['plus_di'])
        snapshot.add('minus_di', adx['minus_di'])

        snapshot.add('obv', calculate_obv(close, volume))
        snapshot.add('volume_ratio', calculate_volume_ratio(volume))
        return snapshot

    def tally_votes(self, snapshot: IndicatorSnapshot, market_data: MarketData) -> Dict[str, int]:
        """
        Weighted vote of every signal: +weight bullish, -weight bearish, 0 abstains
        """
        h = self.heuristics
        price = market_data.current_price
        frame = market_data.frame
        closes = snapshot.history('close')
        w = self.SIGNAL_WEIGHTS

        signals: Dict[str, int] = {}

        pattern = check_trend_pattern(frame['high'], frame['low'])
        signals['pattern'] = {'uptrend': 1, 'downtrend': -1}.get(pattern, 0)

        for name in ('ema20', 'ema50', 'ema100', 'ema200'):
            signals[name] = _compare(price, snapshot.latest(name), price)

        signals['momentum'] = _compare(price, float(closes.iloc[-4]), price)
        signals['ema20_slope'] = snapshot.slope('ema20', tolerance=VOTE_TOLERANCE, scale=price)

        signals['histogram'] = _compare(snapshot.latest('histogram'), 0.0, price)
        signals['macd_cross'] = _compare(snapshot.latest('macd'), snapshot.latest('macd_signal'), price)

        rsi = snapshot.latest('rsi')
        if 50 < rsi < config.RSI_OVERBOUGHT:
            signals['rsi_band'] = 1
        elif config.RSI_OVERSOLD < rsi < 50:
            signals['rsi_band'] = -1
        else:
            signals['rsi_band'] = 0

        plus_di, minus_di = snapshot.latest('plus_di'), snapshot.latest('minus_di')
        signals['directional'] = _compare(plus_di, minus_di, 100.0)
        signals['adx'] = signals['directional'] if snapshot.latest('adx') > h.adx_trend_level else 0

        signals['volume'] = signals['momentum'] if snapshot.latest('volume_ratio') > h.volume_vote_level else 0

        signals['obv'] = snapshot.slope('obv', tolerance=VOTE_TOLERANCE)

        sentiment = market_data.market_sentiment
        if sentiment > h.sentiment_vote_level:
            signals['sentiment'] = 1
        elif sentiment < -h.sentiment_vote_level:
            signals['sentiment'] = -1
        else:
            signals['sentiment'] = 0

        return {name: vote * w[name] for name, vote in signals.items()}

    def execute(self, market_data: MarketData) -> PredictionResult:
        self._require_history(market_data, f"EMA{self.trend_period} + MACD warmup")
        h = self.heuristics

        snapshot = self.compute_indicators(market_data)
        votes = self.tally_votes(snapshot, market_data)
        max_score = sum(self.SIGNAL_WEIGHTS.values())
        net_score = sum(votes.values())
        bullish_fraction = (net_score + max_score) / (2 * max_score)

        if bullish_fraction >= h.long_threshold:
            direction = SignalDirection.LONG
        elif bullish_fraction <= h.short_threshold:
            direction = SignalDirection.SHORT
        else:
            direction = SignalDirection.NEUTRAL

        price = market_data.current_price
        frame = market_data.frame
        atr = calculate_atr(frame['high'], frame['low'], frame['close'])
        volatility = float(atr) / price
        histogram = snapshot.latest('histogram')
        rsi = snapshot.latest('rsi')
        adx = snapshot.latest('adx')
        sentiment = market_data.market_sentiment

        confidence = h.base_confidence
        if direction is not SignalDirection.NEUTRAL:
            sign = direction.sign
            share = bullish_fraction if sign > 0 else 1 - bullish_fraction
            confidence += share * h.score_weight
            if histogram * sign > 0:
                confidence += min(h.histogram_bonus_cap, abs(histogram / price) / h.histogram_scale)
            rsi_band = (40, 70) if sign > 0 else (30, 60)
            if rsi_band[0] < rsi < rsi_band[1]:
                confidence += h.rsi_band_bonus
            if adx > h.adx_bonus_level:
                confidence += h.adx_bonus
            confidence += sign * sentiment * h.sentiment_weight

        if volatility > h.volatility_limit:
            confidence *= h.volatility_penalty
        confidence = _clamp_confidence(confidence)

        price_d = to_decimal(price)
        if direction is SignalDirection.NEUTRAL:
            target = price_d + atr * to_decimal(h.neutral_target_multiplier)
            stop = price_d - atr * to_decimal(h.neutral_stop_multiplier)
        else:
            multiplier = h.target_base_multiplier + confidence + volatility * h.target_volatility_weight
            sign = Decimal(direction.sign)
            target = price_d + sign * atr * to_decimal(round(multiplier, 8))
            stop = price_d - sign * atr * to_decimal(h.stop_multiplier)

        volume_ratio = snapshot.latest('volume_ratio')
        ema_colors = {name: BULLISH_COLOR if votes[name] > 0 else BEARISH_COLOR
                      for name in ('ema20', 'ema50', 'ema200')}
        readings = [
            IndicatorReading('MACD', histogram, BULLISH_COLOR if histogram > 0 else BEARISH_COLOR),
            IndicatorReading('RSI', rsi, _rsi_color(rsi)),
            IndicatorReading('EMA20', snapshot.latest('ema20'), ema_colors['ema20']),
            IndicatorReading('EMA50', snapshot.latest('ema50'), ema_colors['ema50']),
            IndicatorReading(f'EMA{self.trend_period}', snapshot.latest('ema200'), ema_colors['ema200']),
            IndicatorReading('ADX', adx, BULLISH_COLOR if adx > h.adx_trend_level else NEUTRAL_COLOR),
            IndicatorReading('Volume Change', volume_ratio, BULLISH_COLOR if volume_ratio > 1 else BEARISH_COLOR),
            IndicatorReading('ATR', float(atr), NEUTRAL_COLOR),
            IndicatorReading('Market Sentiment', sentiment, _sentiment_color(sentiment)),
        ]

        logger.debug(f"{self.id} {market_data.symbol}: net {net_score}/{max_score} "
                     f"-> {direction.value} ({confidence:.3f})")
        return self._build_result(market_data, direction, confidence, target, stop, readings,
                                  _accuracy(direction, confidence, h.base_accuracy, h.accuracy_divisor))


class MeanReversionStrategy(TradingStrategy):
    """
    Mean-reversion strategy fading Bollinger/RSI/StochRSI extremes back to the middle band
    """
    id = 'mean-reversion'
    name = 'Enhanced Mean Reversion Strategy'
    description = 'Uses Bollinger Bands, Stochastic RSI and market sentiment to identify high-probability reversals'
    timeframes = ('15m', '30m', '1h', '4h')
    indicators = ('Bollinger Bands', 'Stochastic RSI', 'RSI', 'ROC', 'ATR', 'Support/Resistance', 'Market Sentiment')

    def __init__(self, heuristics: Optional[ReversionHeuristics] = None):
        self.heuristics = heuristics or ReversionHeuristics()
        logger.info(f"{self.name} initialized (min candles {self.min_candles})")

    @property
    def min_candles(self) -> int:
        return config.reversion_min_candles()

    def compute_indicators(self, market_data: MarketData) -> IndicatorSnapshot:
        frame = market_data.frame
        close = frame['close'].reset_index(drop=True)
        high = frame['high'].reset_index(drop=True)
        low = frame['low'].reset_index(drop=True)

        snapshot = IndicatorSnapshot()
        snapshot.add('close', close)

        bands = calculate_bollinger_bands(close)
        for column in ('upper', 'middle', 'lower', 'width'):
            snapshot.add(f'bb_{column}', bands[column])

        stoch = calculate_stoch_rsi(close)
        snapshot.add('stoch_k', stoch['k'])
        snapshot.add('stoch_d', stoch['d'])
        snapshot.add('rsi', calculate_rsi(close))
        snapshot.add('roc', calculate_roc(close))
        snapshot.add('volume_ratio', calculate_volume_ratio(frame['volume']))
        return snapshot

    def _percent_b(self, market_data: MarketData, snapshot: IndicatorSnapshot) -> float:
        try:
            return calculate_percent_b(market_data.current_price, snapshot.latest('bb_upper'),
                                       snapshot.latest('bb_lower'), snapshot.latest('bb_middle'))
        except DegenerateIndicator as e:
            logger.warning(f"{market_data.symbol}: {e}; using neutral %B")
            return 0.5

    def execute(self, market_data: MarketData) -> PredictionResult:
        self._require_history(market_data, "Bollinger + StochRSI warmup")
        h = self.heuristics

        snapshot = self.compute_indicators(market_data)
        levels = find_support_resistance(market_data.frame['high'], market_data.frame['low'])
        price = market_data.current_price
        percent_b = self._percent_b(market_data, snapshot)

        rsi = snapshot.latest('rsi')
        k, d = snapshot.latest('stoch_k'), snapshot.latest('stoch_d')
        roc = snapshot['roc']
        roc_now, roc_prev = roc.latest, roc.previous()
        width = snapshot.latest('bb_width')
        volume_ratio = snapshot.latest('volume_ratio')
        sentiment = market_data.market_sentiment

        oversold = percent_b < h.percent_b_oversold or rsi < config.RSI_OVERSOLD or k < h.stoch_oversold
        overbought = percent_b > h.percent_b_overbought or rsi > config.RSI_OVERBOUGHT or k > h.stoch_overbought
        k_turn = _compare(k, d, 100.0)
        roc_ready = math.isfinite(roc_now) and math.isfinite(roc_prev)
        roc_allows_long = roc_ready and (snapshot.rising('roc') or roc_now > -h.roc_floor)
        roc_allows_short = roc_ready and (snapshot.falling('roc') or roc_now < h.roc_floor)

        if oversold and k_turn > 0 and roc_allows_long:
            direction = SignalDirection.LONG
        elif overbought and k_turn < 0 and roc_allows_short:
            direction = SignalDirection.SHORT
        else:
            direction = SignalDirection.NEUTRAL

        closes = snapshot.history('close')
        last_move = _compare(float(closes.iloc[-1]), float(closes.iloc[-2]), price)

        if direction is SignalDirection.LONG:
            confidence = h.base_confidence
            confidence += max(0.0, min(h.percent_b_bonus_cap, (h.percent_b_oversold - percent_b) * h.percent_b_weight))
            confidence += max(0.0, min(h.rsi_bonus_cap, (config.RSI_OVERSOLD - rsi) / 100))
            confidence += max(0.0, min(h.stoch_bonus_cap, (h.stoch_oversold - k) / 100))
            if levels.distance_to_support_pct(price) <= h.level_proximity_pct:
                confidence += h.level_bonus
        elif direction is SignalDirection.SHORT:
            confidence = h.base_confidence
            confidence += max(0.0, min(h.percent_b_bonus_cap, (percent_b - h.percent_b_overbought) * h.percent_b_weight))
            confidence += max(0.0, min(h.rsi_bonus_cap, (rsi - config.RSI_OVERBOUGHT) / 100))
            confidence += max(0.0, min(h.stoch_bonus_cap, (k - h.stoch_overbought) / 100))
            if levels.distance_to_resistance_pct(price) <= h.level_proximity_pct:
                confidence += h.level_bonus
        else:
            confidence = h.neutral_confidence

        if direction is not SignalDirection.NEUTRAL:
            if volume_ratio > h.volume_level:
                confidence += h.volume_bonus
            confidence += direction.sign * sentiment * h.sentiment_weight
            if last_move == direction.sign:
                confidence += h.follow_through_bonus

        if width < h.narrow_width:
            confidence *= h.narrow_boost
        elif width > h.wide_width:
            confidence *= h.wide_penalty
        confidence = _clamp_confidence(confidence)

        price_d = to_decimal(price)
        frame = market_data.frame
        atr = calculate_atr(frame['high'], frame['low'], frame['close'])
        target = to_decimal(snapshot.latest('bb_middle'))
        stop_distance = atr * to_decimal(h.stop_atr_multiplier)
        buffer = to_decimal(h.level_buffer)

        if direction is SignalDirection.LONG:
            stop = price_d - stop_distance
            support = levels.nearest_support(price)
            if support is not None and to_decimal(support) * (1 - buffer) > stop:
                stop = to_decimal(support) * (1 - buffer)
        elif direction is SignalDirection.SHORT:
            stop = price_d + stop_distance
            resistance = levels.nearest_resistance(price)
            if resistance is not None and to_decimal(resistance) * (1 + buffer) < stop:
                stop = to_decimal(resistance) * (1 + buffer)
        else:
            stop = price_d * to_decimal(h.neutral_stop_ratio)

        k_color = BEARISH_COLOR if k > h.stoch_overbought else BULLISH_COLOR if k < h.stoch_oversold else NEUTRAL_COLOR
        pb_color = BEARISH_COLOR if percent_b > 0.8 else BULLISH_COLOR if percent_b < 0.2 else NEUTRAL_COLOR
        readings = [
            IndicatorReading('BB Upper', snapshot.latest('bb_upper'), NEUTRAL_COLOR),
            IndicatorReading('BB Middle', snapshot.latest('bb_middle'), NEUTRAL_COLOR),
            IndicatorReading('BB Lower', snapshot.latest('bb_lower'), NEUTRAL_COLOR),
            IndicatorReading('StochRSI K', k, k_color),
            IndicatorReading('StochRSI D', d, ACCENT_COLOR),
            IndicatorReading('RSI', rsi, _rsi_color(rsi)),
            IndicatorReading('Percent B', percent_b, pb_color),
            IndicatorReading('ROC', roc_now, BULLISH_COLOR if snapshot.rising('roc') else BEARISH_COLOR),
            IndicatorReading('Volume Ratio', volume_ratio,
                             BULLISH_COLOR if volume_ratio > h.volume_level else NEUTRAL_COLOR),
            IndicatorReading('BB Width', width, NEUTRAL_COLOR),
            IndicatorReading('ATR', float(atr), NEUTRAL_COLOR),
            IndicatorReading('Market Sentiment', sentiment, _sentiment_color(sentiment)),
        ]

        logger.debug(f"{self.id} {market_data.symbol}: %B={percent_b:.3f} RSI={rsi:.1f} K={k:.1f} D={d:.1f} "
                     f"-> {direction.value} ({confidence:.3f})")
        return self._build_result(market_data, direction, confidence, target, stop, readings,
                                  _accuracy(direction, confidence, h.base_accuracy, h.accuracy_divisor))


def detect_market_regime(market_data: MarketData, heuristics: Optional[BlendHeuristics] = None) -> RegimeReading:
    """
    Classify the market as trending (ADX above 25), ranging (narrow bands and ADX below 20) or mixed
    """
    heuristics = heuristics or BlendHeuristics()
    frame = market_data.frame
    adx = float(calculate_adx(frame['high'], frame['low'], frame['close'])['adx'].iloc[-1])
    width = float(calculate_bollinger_bands(frame['close'])['width'].iloc[-1])

    if adx > heuristics.trending_adx:
        regime = MarketRegime.TRENDING
    elif width < heuristics.ranging_width and adx < heuristics.ranging_adx:
        regime = MarketRegime.RANGING
    else:
        regime = MarketRegime.MIXED
    return RegimeReading(regime=regime, adx=adx, width=width)


def blend_predictions(trend: PredictionResult,
                      reversion: PredictionResult,
                      regime: RegimeReading,
                      heuristics: Optional[BlendHeuristics] = None,
                      sentiment: float = 0.0,
                      strategy_id: str = 'ml-enhanced') -> PredictionResult:
    """
    Combine a trend-following and a mean-reversion prediction for the same candle

    When both agree the confidence, target and stop are regime-weighted averages
    and a directional agreement earns a bonus. When they disagree the prediction
    of the strategy suited to the regime is kept with a penalty; in a mixed
    regime the more confident one is kept.

    Args:
        trend: Trend-following prediction
        reversion: Mean-reversion prediction
        regime: Market regime reading for the same candles
        heuristics: Blend weights and bonuses
        sentiment: External sentiment score in [-1, 1]
        strategy_id: Id stamped on the blended result

    Returns:
        Blended PredictionResult
    """
    h = heuristics or BlendHeuristics()
    trend_weight, reversion_weight = h.weights_for(regime.regime)
    price = trend.current_price

    if trend.direction is reversion.direction:
        direction = trend.direction
        confidence = trend_weight * trend.confidence + reversion_weight * reversion.confidence
        tw, rw = to_decimal(trend_weight), to_decimal(reversion_weight)
        target = tw * trend.target_price + rw * reversion.target_price
        stop = tw * trend.stop_loss + rw * reversion.stop_loss
        if direction is not SignalDirection.NEUTRAL:
            confidence *= h.agreement_bonus
    else:
        if regime.regime is MarketRegime.TRENDING:
            chosen, penalty = trend, h.regime_disagreement_penalty
        elif regime.regime is MarketRegime.RANGING:
            chosen, penalty = reversion, h.regime_disagreement_penalty
        else:
            chosen = trend if trend.confidence > reversion.confidence else reversion
            penalty = h.mixed_disagreement_penalty
        direction = chosen.direction
        confidence = chosen.confidence * penalty
        target, stop = chosen.target_price, chosen.stop_loss

    if direction is not SignalDirection.NEUTRAL and abs(sentiment) > h.sentiment_level \
            and sentiment * direction.sign > 0:
        confidence *= h.sentiment_boost
    confidence = _clamp_confidence(confidence)

    regime_value = {MarketRegime.TRENDING: 1.0, MarketRegime.RANGING: -1.0}.get(regime.regime, 0.0)
    readings = [
        IndicatorReading('Market Regime', regime_value,
                         BULLISH_COLOR if regime_value > 0 else ACCENT_COLOR if regime_value < 0 else NEUTRAL_COLOR),
        IndicatorReading('Trend Strength', regime.adx,
                         BULLISH_COLOR if regime.adx > h.trending_adx else NEUTRAL_COLOR),
        IndicatorReading('Volatility', regime.width,
                         ACCENT_COLOR if regime.width < h.ranging_width else NEUTRAL_COLOR),
        IndicatorReading('Sentiment', sentiment, _sentiment_color(sentiment)),
    ]
    for source, names in ((trend, ('MACD', 'RSI', 'EMA50', 'Volume Change')),
                          (reversion, ('BB Upper', 'BB Lower', 'StochRSI K', 'Percent B'))):
        readings.extend(reading for reading in (source.indicator(name) for name in names) if reading is not None)

    return PredictionResult(
        symbol=trend.symbol,
        timeframe=trend.timeframe,
        timestamp=trend.timestamp,
        current_price=price,
        direction=direction,
        confidence=confidence,
        target_price=round_price(target, reference=price),
        stop_loss=round_price(stop, reference=price),
        indicators=tuple(readings),
        historical_accuracy=_accuracy(direction, confidence, h.base_accuracy, h.accuracy_divisor),
        strategy_id=strategy_id,
    )


class RegimeBlendStrategy(TradingStrategy):
    """
    Composite strategy weighting trend-following and mean-reversion by market regime
    """
    id = 'ml-enhanced'
    name = 'Regime Blend Strategy'
    description = 'Blends trend-following and mean-reversion predictions according to the detected market regime'
    timeframes = ('15m', '30m', '1h', '4h', '1d')
    indicators = ('Market Regime', 'ADX', 'Bollinger Bands', 'Technical Indicators', 'Market Sentiment')

    def __init__(self,
                 trend: Optional[TrendFollowingStrategy] = None,
                 reversion: Optional[MeanReversionStrategy] = None,
                 heuristics: Optional[BlendHeuristics] = None):
        self.trend = trend or TrendFollowingStrategy()
        self.reversion = reversion or MeanReversionStrategy()
        self.heuristics = heuristics or BlendHeuristics()
        logger.info(f"{self.name} initialized (min candles {self.min_candles})")

    @property
    def min_candles(self) -> int:
        return max(self.trend.min_candles, self.reversion.min_candles)

    def execute(self, market_data: MarketData) -> PredictionResult:
        self._require_history(market_data, f"EMA{self.trend.trend_period} + MACD warmup")
        trend = self.trend.execute(market_data)
        reversion = self.reversion.execute(market_data)
        regime = detect_market_regime(market_data, self.heuristics)
        logger.debug(f"{self.id} {market_data.symbol}: regime {regime.regime.value} "
                     f"(ADX {regime.adx:.1f}, width {regime.width:.4f})")
        return blend_predictions(trend, reversion, regime, self.heuristics,
                                 market_data.market_sentiment, strategy_id=self.id)


class StrategyEngine:
    """
    Registry of the available strategies keyed by id
    """

    def __init__(self, strategies: Optional[Iterable[TradingStrategy]] = None):
        self._strategies: Dict[str, TradingStrategy] = {}
        if strategies is None:
            trend = TrendFollowingStrategy()
            reversion = MeanReversionStrategy()
            strategies = (trend, reversion, RegimeBlendStrategy(trend, reversion))
        for strategy in strategies:
            self.register(strategy)
        logger.info(f"StrategyEngine initialized with strategies: {', '.join(self._strategies)}")

    def register(self, strategy: TradingStrategy) -> None:
        self._strategies[strategy.id] = strategy

    def get_strategy(self, strategy_id: str) -> TradingStrategy:
        """
        Look up a strategy

        Raises:
            UnknownStrategy: if no strategy has that id
        """
        try:
            return self._strategies[strategy_id]
        except KeyError:
            raise UnknownStrategy(strategy_id, self._strategies) from None

    def available_strategies(self) -> List[Dict[str, Any]]:
        return [strategy.describe() for strategy in self._strategies.values()]

    def predict(self, strategy_id: str, market_data: MarketData) -> PredictionResult:
        return self.get_strategy(strategy_id).execute(market_data)


# Global strategy engine instance
strategy_engine = StrategyEngine()

"""
Indicators Module for the Candle Signal Engine
Stateless technical indicators computed from ordered candle columns
Includes EMA, RSI, MACD, Bollinger Bands, Stochastic RSI, ATR, ADX, OBV, ROC and support/resistance levels
"""

import math
from dataclasses import dataclass, field
from decimal import Decimal, localcontext
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import ta
from loguru import logger

from config import config
from Errors import DegenerateIndicator
from MarketData import to_decimal

Numeric = Union[pd.Series, np.ndarray, Sequence[float]]

# Working precision for Wilder smoothing of true ranges
ATR_PRECISION = 34

# Relative width below which Bollinger bands count as collapsed
BAND_EPSILON = 1e-12


class IndicatorKind(Enum):
    """Shape of an indicator result"""
    SCALAR = "scalar"
    SERIES = "series"


@dataclass(frozen=True)
class IndicatorValue:
    """
    Indicator result tagged with its shape

    A SCALAR carries one number; a SERIES carries values aligned to the tail
    of the candle history, the last one being the current bar.
    """
    kind: IndicatorKind
    scalar: float = math.nan
    series: Optional[pd.Series] = field(default=None, repr=False, compare=False)

    @classmethod
    def of_scalar(cls, value: Union[float, Decimal]) -> 'IndicatorValue':
        return cls(kind=IndicatorKind.SCALAR, scalar=float(value))

    @classmethod
    def of_series(cls, values: Numeric) -> 'IndicatorValue':
        return cls(kind=IndicatorKind.SERIES, series=_as_series(values))

    @property
    def latest(self) -> float:
        if self.kind is IndicatorKind.SCALAR:
            return self.scalar
        if self.series is None or self.series.empty:
            return math.nan
        return float(self.series.iloc[-1])

    def previous(self, bars: int = 1) -> float:
        """Value `bars` bars before the latest one; NaN for scalars and short series"""
        if self.kind is IndicatorKind.SCALAR or self.series is None or len(self.series) <= bars:
            return math.nan
        return float(self.series.iloc[-1 - bars])


class IndicatorSnapshot:
    """
    Named indicator values computed for one strategy evaluation
    Built fresh on every execute call and never shared between calls
    """

    def __init__(self):
        self._values: Dict[str, IndicatorValue] = {}

    def add(self, name: str, value: Union[IndicatorValue, pd.Series, np.ndarray, float, Decimal]) -> IndicatorValue:
        if not isinstance(value, IndicatorValue):
            if isinstance(value, (pd.Series, np.ndarray, list)):
                value = IndicatorValue.of_series(value)
            else:
                value = IndicatorValue.of_scalar(value)
        self._values[name] = value
        return value

    def __getitem__(self, name: str) -> IndicatorValue:
        return self._values[name]

    def __contains__(self, name: str) -> bool:
        return name in self._values

    def latest(self, name: str) -> float:
        return self._values[name].latest

    def history(self, name: str) -> pd.Series:
        value = self._values[name]
        if value.kind is IndicatorKind.SCALAR:
            return pd.Series([value.scalar], dtype=float)
        return value.series

    def slope(self, name: str, bars: int = 1, tolerance: float = 0.0, scale: Optional[float] = None) -> int:
        """
        +1 if the indicator rose over `bars` bars, -1 if it fell, 0 otherwise

        Changes within tolerance * scale count as flat; scale defaults to the
        larger magnitude of the two values (at least 1). Undefined values are flat.
        """
        value = self._values[name]
        latest, earlier = value.latest, value.previous(bars)
        if not (math.isfinite(latest) and math.isfinite(earlier)):
            return 0
        if scale is None:
            scale = max(abs(latest), abs(earlier), 1.0)
        margin = tolerance * abs(scale)
        if latest > earlier + margin:
            return 1
        if latest < earlier - margin:
            return -1
        return 0

    def rising(self, name: str, bars: int = 1) -> bool:
        return self.slope(name, bars) > 0

    def falling(self, name: str, bars: int = 1) -> bool:
        return self.slope(name, bars) < 0


@dataclass(frozen=True)
class SupportResistance:
    """Clustered swing levels, both tuples sorted ascending"""
    support: Tuple[float, ...] = ()
    resistance: Tuple[float, ...] = ()

    def nearest_support(self, price: float) -> Optional[float]:
        below = [level for level in self.support if level <= price]
        return max(below) if below else None

    def nearest_resistance(self, price: float) -> Optional[float]:
        above = [level for level in self.resistance if level >= price]
        return min(above) if above else None

    def distance_to_support_pct(self, price: float) -> float:
        level = self.nearest_support(price)
        if level is None:
            return math.inf
        return (price - level) / price * 100

    def distance_to_resistance_pct(self, price: float) -> float:
        level = self.nearest_resistance(price)
        if level is None:
            return math.inf
        return (level - price) / price * 100


def _as_series(values: Numeric) -> pd.Series:
    if isinstance(values, pd.Series):
        return values.astype(float)
    return pd.Series(np.asarray(values, dtype=float))


def calculate_ema(values: Numeric, period: int) -> pd.Series:
    """
    Exponential moving average with multiplier 2/(period+1), seeded with the first value

    Values before `period` bars are NaN; after that the recursion has run from
    index 0, so early values keep some seed bias.
    """
    series = _as_series(values)
    return ta.trend.EMAIndicator(close=series, window=period).ema_indicator()


def calculate_rsi(close: Numeric, period: Optional[int] = None) -> pd.Series:
    """
    Calculate Relative Strength Index (RSI)

    Args:
        close: Close prices, oldest first
        period: RSI window (default from config)

    Returns:
        Series with RSI values, NaN during warmup. Bars before the first price
        change read 50 rather than the 100 a zero loss average would give.
    """
    period = period or config.RSI_PERIOD
    series = _as_series(close)
    rsi = ta.momentum.RSIIndicator(close=series, window=period).rsi()
    moved = series.diff().abs().fillna(0).cumsum() > 0
    rsi = rsi.where(moved | rsi.isna(), 50.0)
    logger.debug(f"RSI calculated with period {period}")
    return rsi


def calculate_macd(close: Numeric,
                   fast: Optional[int] = None,
                   slow: Optional[int] = None,
                   signal: Optional[int] = None) -> pd.DataFrame:
    """
    Calculate MACD (Moving Average Convergence Divergence)

    Returns:
        DataFrame with macd, signal and histogram columns
    """
    macd_indicator = ta.trend.MACD(
        close=_as_series(close),
        window_slow=slow or config.MACD_SLOW,
        window_fast=fast or config.MACD_FAST,
        window_sign=signal or config.MACD_SIGNAL
    )
    return pd.DataFrame({
        'macd': macd_indicator.macd(),
        'signal': macd_indicator.macd_signal(),
        'histogram': macd_indicator.macd_diff()
    })


def calculate_bollinger_bands(close: Numeric,
                              period: Optional[int] = None,
                              std_dev: Optional[float] = None) -> pd.DataFrame:
    """
    Calculate Bollinger Bands

    Returns:
        DataFrame with upper, middle, lower and width columns, where width is
        (upper - lower) / middle
    """
    bb_indicator = ta.volatility.BollingerBands(
        close=_as_series(close),
        window=period or config.BB_PERIOD,
        window_dev=std_dev or config.BB_STD
    )
    bands = pd.DataFrame({
        'upper': bb_indicator.bollinger_hband(),
        'middle': bb_indicator.bollinger_mavg(),
        'lower': bb_indicator.bollinger_lband(),
    })
    bands['width'] = (bands['upper'] - bands['lower']) / bands['middle']
    return bands


def calculate_percent_b(price: float, upper: float, lower: float, middle: Optional[float] = None) -> float:
    """
    Position of price inside the Bollinger envelope, 0 at the lower band and 1 at the upper

    Raises:
        DegenerateIndicator: when the bands have collapsed onto each other
    """
    values = [price, upper, lower] + ([middle] if middle is not None else [])
    if not all(math.isfinite(v) for v in values):
        raise DegenerateIndicator('%B', 'Bollinger bands are not available yet')

    scale = abs(middle if middle is not None else (upper + lower) / 2)
    if upper - lower <= BAND_EPSILON * scale:
        raise DegenerateIndicator('%B', f"upper band {upper} equals lower band {lower}")

    band_price = to_decimal(float(price))
    band_upper = to_decimal(float(upper))
    band_lower = to_decimal(float(lower))
    return float((band_price - band_lower) / (band_upper - band_lower))


def calculate_stoch_rsi(close: Numeric,
                        rsi_period: Optional[int] = None,
                        stoch_period: Optional[int] = None,
                        k_period: Optional[int] = None,
                        d_period: Optional[int] = None) -> pd.DataFrame:
    """
    Stochastic oscillator applied to the RSI series, scaled to [0, 100]

    A window in which RSI did not move reads 50.

    Returns:
        DataFrame with stoch_rsi, k and d columns
    """
    stoch_period = stoch_period or config.STOCH_RSI_PERIOD
    rsi = calculate_rsi(close, rsi_period)

    lowest = rsi.rolling(window=stoch_period, min_periods=stoch_period).min()
    highest = rsi.rolling(window=stoch_period, min_periods=stoch_period).max()
    spread = highest - lowest

    stoch = (rsi - lowest) / spread.where(spread > BAND_EPSILON) * 100
    stoch = stoch.where(~(spread <= BAND_EPSILON), 50.0)

    k = stoch.rolling(window=k_period or config.STOCH_K_PERIOD).mean()
    d = k.rolling(window=d_period or config.STOCH_D_PERIOD).mean()
    return pd.DataFrame({'stoch_rsi': stoch, 'k': k, 'd': d})


def calculate_true_range(high: Numeric, low: Numeric, close: Numeric) -> List[Decimal]:
    """True range of every bar that has a previous close, as exact decimals"""
    highs = [to_decimal(float(v)) for v in _as_series(high)]
    lows = [to_decimal(float(v)) for v in _as_series(low)]
    closes = [to_decimal(float(v)) for v in _as_series(close)]

    ranges = []
    for i in range(1, len(closes)):
        prev_close = closes[i - 1]
        ranges.append(max(highs[i] - lows[i], abs(highs[i] - prev_close), abs(lows[i] - prev_close)))
    return ranges


def calculate_atr_series(high: Numeric, low: Numeric, close: Numeric, period: Optional[int] = None) -> List[Decimal]:
    """
    Average True Range with Wilder smoothing

    The first value is the mean of the first `period` true ranges, then
    atr = ((period - 1) * prev_atr + tr) / period. Returns an empty list when
    fewer than period + 1 candles are supplied.
    """
    period = period or config.ATR_PERIOD
    ranges = calculate_true_range(high, low, close)
    if len(ranges) < period:
        return []

    with localcontext() as ctx:
        ctx.prec = ATR_PRECISION
        atr = sum(ranges[:period], Decimal(0)) / period
        values = [atr]
        for tr in ranges[period:]:
            atr = ((period - 1) * atr + tr) / period
            values.append(atr)
    return values


def calculate_atr(high: Numeric, low: Numeric, close: Numeric, period: Optional[int] = None) -> Decimal:
    """Latest ATR, or Decimal zero when the history is too short"""
    values = calculate_atr_series(high, low, close, period)
    if not values:
        logger.debug(f"ATR needs {(period or config.ATR_PERIOD) + 1} candles, got {len(_as_series(close))}")
        return Decimal(0)
    return values[-1]


def calculate_adx(high: Numeric, low: Numeric, close: Numeric, period: Optional[int] = None) -> pd.DataFrame:
    """
    Average Directional Index with +DI and -DI

    Directional movement and true range are Wilder-smoothed
    (smoothed = smoothed - smoothed / period + new). The first ADX is the first
    DX, later ones use ((period - 1) * prev_adx + dx) / period.

    Returns:
        DataFrame with adx, plus_di and minus_di columns aligned to the tail of
        the input; a single all-zero row when the history is too short
    """
    period = period or config.ADX_PERIOD
    highs = _as_series(high).to_numpy()
    lows = _as_series(low).to_numpy()
    closes = _as_series(close).to_numpy()

    if len(closes) < period + 1:
        return pd.DataFrame({'adx': [0.0], 'plus_di': [0.0], 'minus_di': [0.0]})

    up_move = highs[1:] - highs[:-1]
    down_move = lows[:-1] - lows[1:]
    plus_dm = np.where((up_move > down_move) & (up_move > 0), up_move, 0.0)
    minus_dm = np.where((down_move > up_move) & (down_move > 0), down_move, 0.0)
    tr = np.maximum.reduce([
        highs[1:] - lows[1:],
        np.abs(highs[1:] - closes[:-1]),
        np.abs(lows[1:] - closes[:-1]),
    ])

    smoothed_tr = tr[:period].sum()
    smoothed_plus = plus_dm[:period].sum()
    smoothed_minus = minus_dm[:period].sum()

    rows = []
    adx = None
    for i in range(period - 1, len(tr)):
        if i >= period:
            smoothed_tr = smoothed_tr - smoothed_tr / period + tr[i]
            smoothed_plus = smoothed_plus - smoothed_plus / period + plus_dm[i]
            smoothed_minus = smoothed_minus - smoothed_minus / period + minus_dm[i]

        if smoothed_tr > 0:
            plus_di = 100 * smoothed_plus / smoothed_tr
            minus_di = 100 * smoothed_minus / smoothed_tr
        else:
            plus_di = minus_di = 0.0

        di_sum = plus_di + minus_di
        dx = 100 * abs(plus_di - minus_di) / di_sum if di_sum > 0 else 0.0
        adx = dx if adx is None else ((period - 1) * adx + dx) / period
        rows.append((adx, plus_di, minus_di))

    logger.debug(f"ADX calculated with period {period}")
    return pd.DataFrame(rows, columns=['adx', 'plus_di', 'minus_di'], dtype=float)


def calculate_obv(close: Numeric, volume: Numeric) -> pd.Series:
    """On-Balance Volume seeded at 0 on the first bar"""
    closes = _as_series(close)
    volumes = _as_series(volume)
    direction = np.sign(closes.diff()).fillna(0.0)
    return (direction * volumes.to_numpy()).cumsum()


def calculate_roc(close: Numeric, period: Optional[int] = None) -> pd.Series:
    """Rate of change in percent over `period` bars"""
    return ta.momentum.ROCIndicator(close=_as_series(close), window=period or config.ROC_PERIOD).roc()


def calculate_volume_ratio(volume: Numeric, period: Optional[int] = None) -> float:
    """Latest volume relative to its EMA; 1.0 when the average is not usable"""
    volumes = _as_series(volume)
    average = calculate_ema(volumes, period or config.VOLUME_EMA_PERIOD)
    if average.empty:
        return 1.0
    latest_average = float(average.iloc[-1])
    if not math.isfinite(latest_average) or latest_average <= 0:
        return 1.0
    return float(volumes.iloc[-1]) / latest_average


def check_trend_pattern(high: Numeric, low: Numeric, bars: int = 5) -> str:
    """
    Classify the last `bars` candles as 'uptrend', 'downtrend' or 'sideways'

    An uptrend needs at least 60% higher highs and 50% higher lows between
    consecutive bars; a downtrend mirrors that with lower lows and lower highs.
    """
    highs = _as_series(high).to_numpy()[-bars:]
    lows = _as_series(low).to_numpy()[-bars:]
    steps = len(highs) - 1
    if steps < 1:
        return 'sideways'

    higher_highs = np.count_nonzero(highs[1:] > highs[:-1]) / steps
    higher_lows = np.count_nonzero(lows[1:] > lows[:-1]) / steps
    lower_highs = np.count_nonzero(highs[1:] < highs[:-1]) / steps
    lower_lows = np.count_nonzero(lows[1:] < lows[:-1]) / steps

    if higher_highs >= 0.6 and higher_lows >= 0.5:
        return 'uptrend'
    if lower_lows >= 0.6 and lower_highs >= 0.5:
        return 'downtrend'
    return 'sideways'


def cluster_levels(levels: Iterable[float], tolerance: Optional[float] = None) -> List[float]:
    """
    Merge price levels closer than `tolerance` (relative) into their average

    Levels are visited in ascending order; a level joins the current cluster
    when it is within tolerance of the previous level, so close levels chain.
    """
    tolerance = config.SR_CLUSTER_TOLERANCE if tolerance is None else tolerance
    clusters: List[List[float]] = []
    previous = None
    for level in sorted(levels):
        if previous is not None and (level - previous) / previous < tolerance:
            clusters[-1].append(level)
        else:
            clusters.append([level])
        previous = level
    return [sum(cluster) / len(cluster) for cluster in clusters]


def find_support_resistance(high: Numeric,
                            low: Numeric,
                            lookback: Optional[int] = None,
                            swing: Optional[int] = None,
                            tolerance: Optional[float] = None) -> SupportResistance:
    """
    Find clustered swing highs and lows in the last `lookback` candles

    A bar is a support when its low is strictly below every low within `swing`
    bars on both sides, and a resistance when its high is strictly above every
    such high.

    Args:
        high: High prices, oldest first
        low: Low prices, oldest first
        lookback: Number of recent candles to scan
        swing: Bars required on each side of an extremum
        tolerance: Relative distance under which levels are merged

    Returns:
        SupportResistance with ascending levels
    """
    lookback = lookback or config.SR_LOOKBACK
    swing = swing or config.SR_SWING
    highs = _as_series(high).to_numpy()[-lookback:]
    lows = _as_series(low).to_numpy()[-lookback:]

    swing_lows = []
    swing_highs = []
    for i in range(swing, len(lows) - swing):
        neighbours = np.r_[i - swing:i, i + 1:i + swing + 1]
        if np.all(lows[i] < lows[neighbours]):
            swing_lows.append(float(lows[i]))
        if np.all(highs[i] > highs[neighbours]):
            swing_highs.append(float(highs[i]))

    levels = SupportResistance(
        support=tuple(cluster_levels(swing_lows, tolerance)),
        resistance=tuple(cluster_levels(swing_highs, tolerance)),
    )
    logger.debug(f"Support/resistance found: {len(levels.support)} support, {len(levels.resistance)} resistance")
    return levels

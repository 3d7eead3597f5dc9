"""
MarketData Module for the Candle Signal Engine
Holds validated OHLCV candle series, loads them from CSV/JSON files,
and owns the price rounding policy applied to every monetary output
"""

import json
import math
from dataclasses import dataclass, field, asdict, replace
from decimal import Decimal, ROUND_HALF_UP, localcontext
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from loguru import logger
from pydantic import ValidationError

from config import config
from Errors import InvalidCandle
from Schemas import CandleRecord

PRICE_COLUMNS = ['open', 'high', 'low', 'close']
REQUIRED_COLUMNS = PRICE_COLUMNS + ['volume']


@dataclass(frozen=True)
class Candle:
    """
    Single OHLCV bar. open_time is the bar's opening time in epoch milliseconds.
    """
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True, eq=False)
class MarketData:
    """
    Ordered candle history for one symbol and timeframe

    The frame is indexed by UTC open time and carries the columns
    open_time, open, high, low, close, volume. Instances are never mutated;
    head() returns a causal prefix sharing the same underlying data.
    """
    symbol: str
    timeframe: str
    frame: pd.DataFrame = field(repr=False)
    market_sentiment: float = 0.0

    @classmethod
    def from_candles(cls,
                     symbol: str,
                     timeframe: str,
                     candles: Iterable[Candle],
                     market_sentiment: float = 0.0) -> 'MarketData':
        """
        Build validated market data from Candle objects

        Raises:
            InvalidCandle: if any candle violates an OHLCV invariant
        """
        rows = [asdict(candle) for candle in candles]
        if not rows:
            raise InvalidCandle("no candles supplied")
        frame = pd.DataFrame(rows, columns=['open_time'] + REQUIRED_COLUMNS)
        return cls.from_frame(symbol, timeframe, frame, market_sentiment)

    @classmethod
    def from_frame(cls,
                   symbol: str,
                   timeframe: str,
                   frame: pd.DataFrame,
                   market_sentiment: float = 0.0) -> 'MarketData':
        """
        Build validated market data from a DataFrame

        The frame needs the OHLCV columns and either an open_time column
        (epoch milliseconds) or a DatetimeIndex.
        """
        normalized = _normalize_frame(frame)
        validate_frame(normalized)
        sentiment = _clip_sentiment(market_sentiment)
        logger.debug(f"Market data ready for {symbol} {timeframe}: {len(normalized)} candles")
        return cls(symbol=symbol, timeframe=timeframe, frame=normalized, market_sentiment=sentiment)

    def __len__(self) -> int:
        return len(self.frame)

    def head(self, count: int) -> 'MarketData':
        """Return the first `count` candles; the backtester only ever looks at such prefixes"""
        return replace(self, frame=self.frame.iloc[:count])

    def with_sentiment(self, market_sentiment: float) -> 'MarketData':
        return replace(self, market_sentiment=_clip_sentiment(market_sentiment))

    @property
    def candles(self) -> Tuple[Candle, ...]:
        return tuple(
            Candle(int(row.open_time), float(row.open), float(row.high),
                   float(row.low), float(row.close), float(row.volume))
            for row in self.frame.itertuples(index=False)
        )

    @property
    def closes(self) -> np.ndarray:
        return _read_only(self.frame['close'])

    @property
    def highs(self) -> np.ndarray:
        return _read_only(self.frame['high'])

    @property
    def lows(self) -> np.ndarray:
        return _read_only(self.frame['low'])

    @property
    def volumes(self) -> np.ndarray:
        return _read_only(self.frame['volume'])

    @property
    def current_price(self) -> float:
        return float(self.frame['close'].iloc[-1])

    @property
    def last_timestamp(self) -> int:
        return int(self.frame['open_time'].iloc[-1])

    def timestamp_at(self, index: int) -> int:
        return int(self.frame['open_time'].iloc[index])


def _read_only(column: pd.Series) -> np.ndarray:
    values = column.to_numpy()
    values.flags.writeable = False
    return values


def _clip_sentiment(value: float) -> float:
    value = float(value or 0.0)
    if not math.isfinite(value):
        raise ValueError(f"market sentiment must be finite, got {value}")
    return min(max(value, -1.0), 1.0)


def _normalize_frame(frame: pd.DataFrame) -> pd.DataFrame:
    """Copy the input into the canonical column layout and UTC index"""
    if frame is None or frame.empty:
        raise InvalidCandle("no candles supplied")

    data = frame.copy()
    data.columns = [str(col).lower() for col in data.columns]

    missing = [col for col in REQUIRED_COLUMNS if col not in data.columns]
    if missing:
        raise InvalidCandle(f"missing required columns: {', '.join(missing)}")

    if 'open_time' not in data.columns:
        if not isinstance(data.index, pd.DatetimeIndex):
            raise InvalidCandle("an open_time column or a DatetimeIndex is required")
        index = data.index.tz_localize('UTC') if data.index.tz is None else data.index.tz_convert('UTC')
        data['open_time'] = (index - pd.Timestamp(0, tz='UTC')) // pd.Timedelta(milliseconds=1)

    try:
        data[REQUIRED_COLUMNS] = data[REQUIRED_COLUMNS].astype(float)
        data['open_time'] = data['open_time'].astype('int64')
    except (TypeError, ValueError) as e:
        raise InvalidCandle(f"non-numeric OHLCV value: {e}")

    data = data[['open_time'] + REQUIRED_COLUMNS]
    data.index = pd.DatetimeIndex(pd.to_datetime(data['open_time'].to_numpy(), unit='ms', utc=True),
                                  name='timestamp')
    return data


def _first_row(mask: np.ndarray) -> int:
    return int(np.flatnonzero(mask)[0])


def validate_frame(frame: pd.DataFrame) -> None:
    """
    Validate the OHLCV invariants of a normalized frame

    Raises:
        InvalidCandle: naming the first offending row and field
    """
    values = frame[REQUIRED_COLUMNS].to_numpy(dtype=float)

    non_finite = ~np.isfinite(values)
    if non_finite.any():
        row, col = np.argwhere(non_finite)[0]
        raise InvalidCandle("non-finite value", row=int(row), field=REQUIRED_COLUMNS[col])

    non_positive = values[:, :4] <= 0
    if non_positive.any():
        row, col = np.argwhere(non_positive)[0]
        raise InvalidCandle("prices must be positive", row=int(row), field=PRICE_COLUMNS[col])

    negative_volume = frame['volume'].to_numpy() < 0
    if negative_volume.any():
        raise InvalidCandle("negative volume", row=_first_row(negative_volume), field='volume')

    high = frame['high'].to_numpy()
    low = frame['low'].to_numpy()
    body_top = np.maximum(frame['open'].to_numpy(), frame['close'].to_numpy())
    body_bottom = np.minimum(frame['open'].to_numpy(), frame['close'].to_numpy())

    checks = [
        (high < low, "high below low", 'high'),
        (high < body_top, "high below open/close", 'high'),
        (low > body_bottom, "low above open/close", 'low'),
    ]
    for mask, message, column in checks:
        if mask.any():
            raise InvalidCandle(message, row=_first_row(mask), field=column)

    open_times = frame['open_time'].to_numpy()
    if len(open_times) > 1:
        not_increasing = np.diff(open_times) <= 0
        if not_increasing.any():
            raise InvalidCandle("open times must be strictly increasing",
                                row=_first_row(not_increasing) + 1, field='open_time')


def load_candles(path: Union[str, Path],
                 symbol: str,
                 timeframe: str,
                 market_sentiment: float = 0.0) -> MarketData:
    """
    Load candles from a CSV or JSON file

    CSV files need open_time (or time/timestamp), open, high, low, close, volume columns.
    JSON files hold a list of objects with the same keys, or raw exchange kline arrays
    [openTime, open, high, low, close, volume, ...].

    Args:
        path: File to read
        symbol: Trading symbol the candles belong to
        timeframe: Candle interval, e.g. '1h'
        market_sentiment: Externally supplied sentiment score in [-1, 1]

    Returns:
        Validated MarketData
    """
    path = Path(path)
    logger.info(f"Loading candles for {symbol} {timeframe} from {path}")

    if path.suffix.lower() == '.json':
        with open(path) as f:
            payload = json.load(f)
        if isinstance(payload, dict):
            payload = payload.get('candles', [])
        raw_rows: Sequence = payload
    else:
        raw_rows = pd.read_csv(path).to_dict(orient='records')

    records = parse_candle_records(raw_rows)
    candles = [Candle(**record.model_dump()) for record in records]
    return MarketData.from_candles(symbol, timeframe, candles, market_sentiment)


def parse_candle_records(raw_rows: Sequence) -> List[CandleRecord]:
    """Parse loosely typed rows (dicts or kline arrays) into CandleRecord objects"""
    records = []
    for row_index, raw in enumerate(raw_rows):
        try:
            records.append(CandleRecord.from_raw(raw))
        except ValidationError as e:
            first = e.errors()[0]
            location = '.'.join(str(part) for part in first.get('loc', ())) or None
            raise InvalidCandle(first.get('msg', 'unreadable record'), row=row_index, field=location)
    return records


def to_decimal(value: Union[Decimal, float, int, str]) -> Decimal:
    """Convert a number to Decimal through its shortest repr so 0.1 stays 0.1"""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def price_decimals(price: Union[Decimal, float]) -> int:
    """
    Number of decimal places used for an asset quoted around `price`

    Keeps PRICE_SIGNIFICANT_DIGITS significant digits, so cheaper assets get more
    decimal places: 65000 -> 3, 100 -> 5, 0.5 -> 8, 0.00001 -> 12.
    """
    price = abs(float(price))
    if price == 0 or not math.isfinite(price):
        return config.PRICE_MIN_DECIMALS
    magnitude = math.floor(math.log10(price))
    decimals = config.PRICE_SIGNIFICANT_DIGITS - 1 - magnitude
    return min(max(decimals, config.PRICE_MIN_DECIMALS), config.PRICE_MAX_DECIMALS)


def round_price(value: Union[Decimal, float], reference: Optional[Union[Decimal, float]] = None) -> Decimal:
    """
    Quantize a monetary value with ROUND_HALF_UP

    Args:
        value: Value to round
        reference: Price whose magnitude decides the precision (defaults to value itself)
    """
    value = to_decimal(value)
    if not value.is_finite():
        return value
    decimals = price_decimals(reference if reference is not None else value)
    with localcontext() as ctx:
        # quantize needs every integer digit plus the kept decimals
        ctx.prec = max(ctx.prec, value.adjusted() + decimals + 2)
        return value.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)

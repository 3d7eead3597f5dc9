"""
Pytest configuration and shared candle fixtures
"""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Modules live flat under backend/
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / 'backend'))

from MarketData import MarketData  # noqa: E402

START_MS = 1704067200000  # 2024-01-01 00:00 UTC
HOUR_MS = 3600 * 1000

OSCILLATION_CYCLE = [100, 101.5, 103, 104.5, 105, 105, 105, 104.5, 103, 101.5,
                     100, 98.5, 97, 95.5, 95, 95, 95, 95.5, 97, 98.5]


def pytest_configure(config):
    config.addinivalue_line("markers", "heuristic: checks a documented confidence heuristic, not an invariant")


def build_market_data(closes,
                      opens=None,
                      highs=None,
                      lows=None,
                      volumes=1000.0,
                      symbol='TESTUSDT',
                      timeframe='1h',
                      sentiment=0.0) -> MarketData:
    """
    Build hourly market data from closes; opens default to the previous close
    and highs/lows to the candle body
    """
    closes = np.asarray(closes, dtype=float)
    opens = np.r_[closes[0], closes[:-1]] if opens is None else np.asarray(opens, dtype=float)
    highs = np.maximum(opens, closes) if highs is None else np.asarray(highs, dtype=float)
    lows = np.minimum(opens, closes) if lows is None else np.asarray(lows, dtype=float)
    volumes = np.array(np.broadcast_to(np.asarray(volumes, dtype=float), closes.shape))

    frame = pd.DataFrame({
        'open_time': START_MS + np.arange(len(closes), dtype='int64') * HOUR_MS,
        'open': opens,
        'high': highs,
        'low': lows,
        'close': closes,
        'volume': volumes,
    })
    return MarketData.from_frame(symbol, timeframe, frame, market_sentiment=sentiment)


@pytest.fixture
def market_factory():
    """Builder for ad-hoc candle series"""
    return build_market_data


@pytest.fixture
def flat_market():
    """300 candles with open = high = low = close = 100"""
    return build_market_data(np.full(300, 100.0))


@pytest.fixture
def rising_market():
    """250 candles with the close rising 0.5% per bar"""
    closes = 100.0 * 1.005 ** np.arange(250)
    opens = np.r_[closes[0], closes[:-1]]
    return build_market_data(closes, opens=opens, highs=closes * 1.002,
                             lows=np.minimum(opens, closes) * 0.998)


@pytest.fixture
def falling_market():
    """250 candles with the close falling 0.5% per bar"""
    closes = 100.0 * 0.995 ** np.arange(250)
    opens = np.r_[closes[0], closes[:-1]]
    return build_market_data(closes, opens=opens, highs=np.maximum(opens, closes) * 1.002,
                             lows=closes * 0.998)


@pytest.fixture
def oscillating_market():
    """Eight 20-bar cycles swinging between 95 and 105 around a 100 mean"""
    closes = np.tile(OSCILLATION_CYCLE, 8).astype(float)
    opens = np.r_[closes[0], closes[:-1]]
    return build_market_data(closes, opens=opens,
                             highs=np.maximum(opens, closes) + 0.25,
                             lows=np.minimum(opens, closes) - 0.25)


def random_walk(seed: int, bars: int = 260) -> MarketData:
    rng = np.random.default_rng(seed)
    closes = 100.0 * np.exp(np.cumsum(rng.normal(0, 0.01, bars)))
    opens = np.r_[100.0, closes[:-1]]
    wick = np.abs(rng.normal(0, 0.003, (2, bars)))
    highs = np.maximum(opens, closes) * (1 + wick[0])
    lows = np.minimum(opens, closes) * (1 - wick[1])
    volumes = rng.uniform(500, 1500, bars)
    sentiment = float(rng.uniform(-1, 1))
    return build_market_data(closes, opens=opens, highs=highs, lows=lows, volumes=volumes, sentiment=sentiment)


@pytest.fixture(params=[1, 7, 42, 2024, 31337])
def random_walk_market(request):
    """Seeded random-walk candles with random external sentiment"""
    return random_walk(request.param)

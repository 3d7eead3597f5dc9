"""
Errors Module for the Candle Signal Engine
Typed failures raised by market data validation, indicators, strategies and the backtester
"""

from typing import Iterable, Optional


class SignalEngineError(Exception):
    """Base class for every failure the engine reports to its callers"""


class InsufficientData(SignalEngineError):
    """
    Raised when a candle series is shorter than the window an indicator or strategy needs.
    Recoverable by supplying more history.
    """

    def __init__(self, required: int, available: int, window: str):
        self.required = required
        self.available = available
        self.window = window
        super().__init__(f"need >= {required} candles for {window}, got {available}")


class InvalidCandle(SignalEngineError):
    """Raised when OHLCV input violates a data invariant. Fatal for the run."""

    def __init__(self, message: str, row: Optional[int] = None, field: Optional[str] = None):
        self.row = row
        self.field = field
        location = ""
        if row is not None:
            location = f" (row {row}" + (f", field '{field}'" if field else "") + ")"
        super().__init__(f"invalid candle data: {message}{location}")


class DegenerateIndicator(SignalEngineError):
    """Raised when an indicator has no defined value for the input, e.g. %B with collapsed bands"""

    def __init__(self, indicator: str, reason: str):
        self.indicator = indicator
        self.reason = reason
        super().__init__(f"{indicator} is undefined: {reason}")


class UnknownStrategy(SignalEngineError):
    """Raised when a strategy id is not registered with the engine"""

    def __init__(self, strategy_id: str, known: Iterable[str]):
        self.strategy_id = strategy_id
        self.known = sorted(known)
        super().__init__(f"unknown strategy '{strategy_id}', expected one of: {', '.join(self.known)}")

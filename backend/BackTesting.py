"""
BackTesting Module for the Candle Signal Engine
Replays a strategy candle by candle over history with one position at a time
Includes exit resolution, trade statistics and result export
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pandas as pd
from loguru import logger

from config import config
from Errors import InsufficientData, SignalEngineError
from MarketData import MarketData, to_decimal
from Schemas import BacktestSchema, TradeEntrySchema, TradeExitSchema, TradeSchema
from StrategyEngine import SignalDirection, TradingStrategy, strategy_engine


class ExitReason(Enum):
    """Why a position was closed"""
    TARGET = "target"
    STOP = "stop"
    SIGNAL = "signal"


@dataclass(frozen=True)
class Position:
    """Open position owned by the InPosition state"""
    entry_timestamp: int
    entry_price: Decimal
    direction: SignalDirection
    entry_index: int
    target_price: Decimal
    stop_loss: Decimal


@dataclass(frozen=True)
class Flat:
    """No position is open"""


@dataclass(frozen=True)
class InPosition:
    position: Position


SimulationState = Union[Flat, InPosition]


@dataclass(frozen=True)
class TradeEntry:
    timestamp: int
    price: Decimal
    direction: SignalDirection


@dataclass(frozen=True)
class TradeExit:
    timestamp: int
    price: Decimal
    reason: ExitReason


@dataclass(frozen=True)
class Trade:
    """
    Closed position with its directional profit or loss per unit
    """
    entry: TradeEntry
    exit: TradeExit
    profit_loss: Decimal
    profit_loss_percent: Decimal

    @classmethod
    def close(cls, position: Position, timestamp: int, price: Decimal, reason: ExitReason) -> 'Trade':
        profit_loss = (price - position.entry_price) * position.direction.sign
        return cls(
            entry=TradeEntry(position.entry_timestamp, position.entry_price, position.direction),
            exit=TradeExit(timestamp, price, reason),
            profit_loss=profit_loss,
            profit_loss_percent=profit_loss / position.entry_price * 100,
        )

    @property
    def is_win(self) -> bool:
        return self.profit_loss > 0

    def to_schema(self) -> TradeSchema:
        return TradeSchema(
            entry=TradeEntrySchema(timestamp=self.entry.timestamp, price=float(self.entry.price),
                                   direction=self.entry.direction.value),
            exit=TradeExitSchema(timestamp=self.exit.timestamp, price=float(self.exit.price),
                                 reason=self.exit.reason.value),
            profit_loss=float(self.profit_loss),
            profit_loss_percent=float(self.profit_loss_percent),
        )


def calculate_win_rate(trades: Sequence[Trade]) -> float:
    """Share of winning trades, 0 when there are none"""
    if not trades:
        return 0.0
    return sum(1 for trade in trades if trade.is_win) / len(trades)


def calculate_profit_factor(trades: Sequence[Trade]) -> float:
    """
    Gross gain over gross loss

    Infinite when nothing was lost but something was gained, 0 when both are 0.
    """
    total_gain = sum((t.profit_loss for t in trades if t.profit_loss > 0), Decimal(0))
    total_loss = sum((-t.profit_loss for t in trades if t.profit_loss < 0), Decimal(0))
    if total_loss > 0:
        return float(total_gain / total_loss)
    return math.inf if total_gain > 0 else 0.0


def calculate_max_drawdown(trades: Sequence[Trade]) -> float:
    """
    Largest (peak - balance) / peak of the running P&L balance

    The balance starts at 0, so drawdown is only measured once the peak is
    positive; a fall below zero is capped at 1. A run that loses from its first
    trade never has a positive peak and reports 0.0, so read it together with
    the profit factor.
    """
    balance = Decimal(0)
    peak = Decimal(0)
    max_drawdown = Decimal(0)
    for trade in trades:
        balance += trade.profit_loss
        peak = max(peak, balance)
        if peak > 0:
            max_drawdown = max(max_drawdown, (peak - balance) / peak)
    return float(min(max_drawdown, Decimal(1)))


@dataclass(frozen=True)
class BacktestResult:
    """
    Backtest summary derived entirely from the trade list
    """
    strategy_id: str
    symbol: str
    timeframe: str
    start_date: str
    end_date: str
    total_trades: int
    win_rate: float
    profit_factor: float
    max_drawdown: float
    trades: Tuple[Trade, ...] = ()

    @classmethod
    def from_trades(cls,
                    strategy_id: str,
                    symbol: str,
                    timeframe: str,
                    start_date: str,
                    end_date: str,
                    trades: Iterable[Trade]) -> 'BacktestResult':
        trades = tuple(trades)
        return cls(
            strategy_id=strategy_id,
            symbol=symbol,
            timeframe=timeframe,
            start_date=start_date,
            end_date=end_date,
            total_trades=len(trades),
            win_rate=calculate_win_rate(trades),
            profit_factor=calculate_profit_factor(trades),
            max_drawdown=calculate_max_drawdown(trades),
            trades=trades,
        )

    @property
    def total_profit_loss(self) -> Decimal:
        return sum((trade.profit_loss for trade in self.trades), Decimal(0))

    def to_schema(self) -> BacktestSchema:
        return BacktestSchema(
            strategy_id=self.strategy_id,
            symbol=self.symbol,
            timeframe=self.timeframe,
            start_date=self.start_date,
            end_date=self.end_date,
            total_trades=self.total_trades,
            win_rate=self.win_rate,
            profit_factor=self.profit_factor,
            max_drawdown=self.max_drawdown,
            trades=[trade.to_schema() for trade in self.trades],
        )

    def to_dict(self) -> Dict[str, Any]:
        return self.to_schema().model_dump(by_alias=True)

    def to_json(self, indent: Optional[int] = None) -> str:
        return self.to_schema().model_dump_json(by_alias=True, indent=indent)

    def trades_frame(self) -> pd.DataFrame:
        """One row per trade, for CSV export"""
        rows = [{
            'entry_timestamp': t.entry.timestamp,
            'entry_price': float(t.entry.price),
            'direction': t.entry.direction.value,
            'exit_timestamp': t.exit.timestamp,
            'exit_price': float(t.exit.price),
            'exit_reason': t.exit.reason.value,
            'profit_loss': float(t.profit_loss),
            'profit_loss_percent': float(t.profit_loss_percent),
        } for t in self.trades]
        return pd.DataFrame(rows, columns=['entry_timestamp', 'entry_price', 'direction', 'exit_timestamp',
                                           'exit_price', 'exit_reason', 'profit_loss', 'profit_loss_percent'])


@dataclass
class BacktestConfig:
    """
    Configuration for backtesting parameters
    """
    start_index: int = field(default_factory=lambda: config.BACKTEST_START_INDEX)
    max_holding_bars: int = field(default_factory=lambda: config.BACKTEST_MAX_HOLDING_BARS)
    entry_threshold: float = field(default_factory=lambda: config.BACKTEST_ENTRY_THRESHOLD)


class BackTester:
    """
    Causal backtesting engine

    At every bar an open position is checked for target, then stop, then
    timeout; while flat the strategy only ever sees candles up to the
    current bar.
    """

    def __init__(self, backtest_config: Optional[BacktestConfig] = None):
        """
        Initialize BackTester

        Args:
            backtest_config: Backtesting configuration
        """
        self.config = backtest_config or BacktestConfig()
        logger.info(f"BackTester initialized (start index {self.config.start_index}, "
                    f"max hold {self.config.max_holding_bars} bars, entry threshold {self.config.entry_threshold})")

    def run_backtest(self, strategy: Union[TradingStrategy, str], market_data: MarketData) -> BacktestResult:
        """
        Run a backtest

        Args:
            strategy: Strategy instance or registered strategy id
            market_data: Full candle history

        Returns:
            BacktestResult for the candles from start_index to the end

        Raises:
            InsufficientData: if the history does not reach past start_index
        """
        if isinstance(strategy, str):
            strategy = strategy_engine.get_strategy(strategy)

        start_index = self.config.start_index
        if len(market_data) <= start_index:
            raise InsufficientData(start_index + 1, len(market_data), f"backtest start index {start_index}")

        logger.info(f"Starting backtest of {strategy.id} on {market_data.symbol} {market_data.timeframe} "
                    f"({len(market_data) - start_index} bars)")

        highs, lows, closes = market_data.highs, market_data.lows, market_data.closes
        state: SimulationState = Flat()
        trades: List[Trade] = []

        for i in range(start_index, len(market_data)):
            if isinstance(state, InPosition):
                fill = self._resolve_exit(state.position, i, highs[i], lows[i], closes[i])
                if fill is None:
                    continue
                reason, price = fill
                trade = Trade.close(state.position, market_data.timestamp_at(i), price, reason)
                trades.append(trade)
                state = Flat()
                logger.debug(f"Bar {i}: closed {trade.entry.direction.value} at {price} ({reason.value}), "
                             f"P&L {trade.profit_loss}")
                if reason is not ExitReason.SIGNAL:
                    continue

            state = self._evaluate_entry(strategy, market_data, i)

        if isinstance(state, InPosition):
            logger.debug(f"Discarding position opened at bar {state.position.entry_index}, still open at the end")

        index = market_data.frame.index
        result = BacktestResult.from_trades(
            strategy_id=strategy.id,
            symbol=market_data.symbol,
            timeframe=market_data.timeframe,
            start_date=index[start_index].date().isoformat(),
            end_date=index[-1].date().isoformat(),
            trades=trades,
        )
        logger.info(f"Backtest completed for {market_data.symbol} with {strategy.id}: {result.total_trades} trades, "
                    f"{result.win_rate * 100:.1f}% win rate, profit factor {result.profit_factor:.2f}, "
                    f"max drawdown {result.max_drawdown * 100:.1f}%")
        return result

    def _evaluate_entry(self, strategy: TradingStrategy, market_data: MarketData, index: int) -> SimulationState:
        """Run the strategy on candles[0..index] and open a position on a confident signal"""
        try:
            prediction = strategy.execute(market_data.head(index + 1))
        except SignalEngineError as e:
            logger.debug(f"Bar {index}: no signal ({e})")
            return Flat()
        except Exception as e:
            logger.warning(f"Bar {index}: strategy evaluation failed, treating as no signal: {e!r}")
            return Flat()

        if prediction.direction is SignalDirection.NEUTRAL or prediction.confidence <= self.config.entry_threshold:
            return Flat()

        position = Position(
            entry_timestamp=market_data.timestamp_at(index),
            entry_price=to_decimal(float(market_data.closes[index])),
            direction=prediction.direction,
            entry_index=index,
            target_price=prediction.target_price,
            stop_loss=prediction.stop_loss,
        )
        logger.debug(f"Bar {index}: opened {position.direction.value} at {position.entry_price} "
                     f"(confidence {prediction.confidence:.3f}, target {position.target_price}, "
                     f"stop {position.stop_loss})")
        return InPosition(position)

    def _resolve_exit(self,
                      position: Position,
                      index: int,
                      high: float,
                      low: float,
                      close: float) -> Optional[Tuple[ExitReason, Decimal]]:
        """
        Exit for the bar at `index`, checked in priority order target, stop, timeout

        Returns:
            (reason, fill price) or None when the position stays open
        """
        high_d, low_d = to_decimal(float(high)), to_decimal(float(low))
        if position.direction is SignalDirection.LONG:
            if high_d >= position.target_price:
                return ExitReason.TARGET, position.target_price
            if low_d <= position.stop_loss:
                return ExitReason.STOP, position.stop_loss
        else:
            if low_d <= position.target_price:
                return ExitReason.TARGET, position.target_price
            if high_d >= position.stop_loss:
                return ExitReason.STOP, position.stop_loss

        if index - position.entry_index >= self.config.max_holding_bars:
            return ExitReason.SIGNAL, to_decimal(float(close))
        return None

    def compare_strategies(self,
                           market_data: MarketData,
                           strategy_ids: Optional[Iterable[str]] = None) -> Dict[str, BacktestResult]:
        """
        Backtest several registered strategies on the same candles

        Args:
            market_data: Full candle history
            strategy_ids: Strategies to run (default: every registered strategy)

        Returns:
            Results keyed by strategy id
        """
        if strategy_ids is None:
            strategy_ids = [info['id'] for info in strategy_engine.available_strategies()]

        results = {}
        for strategy_id in strategy_ids:
            results[strategy_id] = self.run_backtest(strategy_id, market_data)

        ranking = sorted(results.values(), key=lambda r: (r.win_rate, r.total_profit_loss), reverse=True)
        if ranking:
            logger.info(f"Best strategy on {market_data.symbol}: {ranking[0].strategy_id} "
                        f"({ranking[0].win_rate * 100:.1f}% win rate)")
        return results

    def save_results(self, result: BacktestResult, directory: Optional[Union[str, Path]] = None) -> Path:
        """
        Save backtest results to files

        Writes <base>_summary.json (the full result) and <base>_trades.csv.

        Returns:
            Path of the JSON summary
        """
        results_dir = Path(directory or config.BACKTEST_RESULTS_DIR)
        results_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filename_base = f"{result.symbol}_{result.strategy_id}_{result.timeframe}_{timestamp}"

        summary_path = results_dir / f"{filename_base}_summary.json"
        summary_path.write_text(result.to_json(indent=2))
        result.trades_frame().to_csv(results_dir / f"{filename_base}_trades.csv", index=False)

        logger.info(f"Backtest results saved: {summary_path}")
        return summary_path


def run_backtest(strategy: Union[TradingStrategy, str],
                 market_data: MarketData,
                 start_index: int = 50,
                 max_holding_bars: int = 10,
                 entry_threshold: float = 0.65) -> BacktestResult:
    """Backtest a strategy with explicit simulator settings"""
    backtester = BackTester(BacktestConfig(start_index=start_index,
                                           max_holding_bars=max_holding_bars,
                                           entry_threshold=entry_threshold))
    return backtester.run_backtest(strategy, market_data)


def calculate_strategy_accuracy(strategy: Union[TradingStrategy, str],
                                market_data: MarketData,
                                start_index: Optional[int] = None) -> float:
    """
    Backtest win rate of a strategy, or 0.5 when the history is too short to backtest
    """
    backtester = BackTester(BacktestConfig(start_index=start_index)) if start_index is not None else BackTester()
    try:
        return backtester.run_backtest(strategy, market_data).win_rate
    except InsufficientData as e:
        logger.warning(f"Cannot estimate accuracy: {e}")
        return 0.5

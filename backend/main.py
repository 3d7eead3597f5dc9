"""
Main Entry Point for the Candle Signal Engine
Command line access to predictions, backtests and strategy comparison on candle files
Handles logging setup, argument parsing and error reporting
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from loguru import logger

from config import config, create_env_template
from Errors import SignalEngineError
from MarketData import load_candles
from BackTesting import BackTester, BacktestConfig
from StrategyEngine import strategy_engine

# Exit status for typed engine failures (bad candles, short history, unknown strategy)
ENGINE_ERROR_STATUS = 2


def setup_logging(level: Optional[str] = None):
    """
    Configure logging for the application
    """
    level = level or config.LOG_LEVEL
    Path(config.LOG_FILE_PATH).parent.mkdir(parents=True, exist_ok=True)

    logger.remove()

    # Console output goes to stderr so stdout carries only JSON
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True
    )

    logger.add(
        config.LOG_FILE_PATH,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
        level=level,
        rotation="10 MB",
        retention="30 days",
        compression="zip"
    )

    logger.debug("Logging configured successfully")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='candle-signals',
        description='Candle-based trading signals and backtests',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  candle-signals strategies
  candle-signals predict --candles btc_1h.csv --symbol BTCUSDT --timeframe 1h
  candle-signals backtest --candles btc_1h.json --symbol BTCUSDT --timeframe 1h --strategy mean-reversion
  candle-signals compare --candles btc_1h.csv --symbol BTCUSDT --timeframe 1h
        """
    )
    parser.add_argument('--log-level', type=str, default=None, help='Log level (default from LOG_LEVEL)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('strategies', help='List available strategies')
    init_env = subparsers.add_parser('init-env', help='Write a .env.template with every setting')
    init_env.add_argument('--path', type=str, default='.env.template', help='Template file to write')

    def add_market_arguments(sub: argparse.ArgumentParser):
        sub.add_argument('--candles', type=Path, required=True, help='CSV or JSON candle file')
        sub.add_argument('--symbol', type=str, required=True, help='Symbol, e.g. BTCUSDT')
        sub.add_argument('--timeframe', type=str, required=True, help='Candle interval, e.g. 1h')
        sub.add_argument('--sentiment', type=float, default=0.0, help='External market sentiment in [-1, 1]')

    def add_backtest_arguments(sub: argparse.ArgumentParser):
        sub.add_argument('--start-index', type=int, default=config.BACKTEST_START_INDEX,
                         help='First candle index the simulator trades on')
        sub.add_argument('--max-holding-bars', type=int, default=config.BACKTEST_MAX_HOLDING_BARS,
                         help='Bars after which an open position is closed at the bar close')
        sub.add_argument('--entry-threshold', type=float, default=config.BACKTEST_ENTRY_THRESHOLD,
                         help='Confidence a signal must exceed to open a position')
        sub.add_argument('--output-dir', type=Path, default=None, help='Save JSON/CSV results to this directory')

    predict = subparsers.add_parser('predict', help='Predict the next move from a candle file')
    add_market_arguments(predict)
    predict.add_argument('--strategy', type=str, default='ml-enhanced', help='Strategy id')

    backtest = subparsers.add_parser('backtest', help='Backtest one strategy over a candle file')
    add_market_arguments(backtest)
    add_backtest_arguments(backtest)
    backtest.add_argument('--strategy', type=str, default='trend-following', help='Strategy id')

    compare = subparsers.add_parser('compare', help='Backtest every strategy over a candle file')
    add_market_arguments(compare)
    add_backtest_arguments(compare)

    return parser


def _backtester(args: argparse.Namespace) -> BackTester:
    return BackTester(BacktestConfig(start_index=args.start_index,
                                     max_holding_bars=args.max_holding_bars,
                                     entry_threshold=args.entry_threshold))


def run_command(args: argparse.Namespace) -> int:
    if args.command == 'strategies':
        for info in strategy_engine.available_strategies():
            print(f"{info['id']:<18} v{info['version']}  {info['name']} [{', '.join(info['timeframes'])}]")
            print(f"{'':<18} {info['description']}")
        return 0

    if args.command == 'init-env':
        return 0 if create_env_template(args.path) else 1

    market_data = load_candles(args.candles, args.symbol, args.timeframe, args.sentiment)

    if args.command == 'predict':
        prediction = strategy_engine.predict(args.strategy, market_data)
        print(prediction.to_json(indent=2))
        return 0

    backtester = _backtester(args)

    if args.command == 'backtest':
        result = backtester.run_backtest(args.strategy, market_data)
        if args.output_dir:
            backtester.save_results(result, args.output_dir)
        print(result.to_json(indent=2))
        return 0

    results = backtester.compare_strategies(market_data)
    for strategy_id, result in results.items():
        if args.output_dir:
            backtester.save_results(result, args.output_dir)
        print(f"{strategy_id:<18} trades={result.total_trades:<4} win_rate={result.win_rate:.2%} "
              f"profit_factor={result.profit_factor:.2f} max_drawdown={result.max_drawdown:.2%}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        return run_command(args)
    except SignalEngineError as e:
        logger.error(str(e))
        print(f"error: {e}", file=sys.stderr)
        return ENGINE_ERROR_STATUS
    except OSError as e:
        logger.error(f"Cannot read or write file: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

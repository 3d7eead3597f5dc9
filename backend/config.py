"""
Configuration module for the Candle Signal Engine
Handles environment variables, indicator periods, backtest defaults and logging settings
"""

import os
from dotenv import load_dotenv
from loguru import logger

# Load environment variables from .env file
load_dotenv()

class SignalEngineConfig:
    """
    Central configuration class for the signal engine
    Manages indicator windows, backtest defaults, output precision and logging
    """

    def __init__(self):
        # Momentum indicators
        self.RSI_PERIOD: int = int(os.getenv("RSI_PERIOD", "14"))
        self.RSI_OVERBOUGHT: float = float(os.getenv("RSI_OVERBOUGHT", "70"))
        self.RSI_OVERSOLD: float = float(os.getenv("RSI_OVERSOLD", "30"))

        self.MACD_FAST: int = int(os.getenv("MACD_FAST", "12"))
        self.MACD_SLOW: int = int(os.getenv("MACD_SLOW", "26"))
        self.MACD_SIGNAL: int = int(os.getenv("MACD_SIGNAL", "9"))

        self.STOCH_RSI_PERIOD: int = int(os.getenv("STOCH_RSI_PERIOD", "14"))
        self.STOCH_K_PERIOD: int = int(os.getenv("STOCH_K_PERIOD", "3"))
        self.STOCH_D_PERIOD: int = int(os.getenv("STOCH_D_PERIOD", "3"))

        self.ROC_PERIOD: int = int(os.getenv("ROC_PERIOD", "9"))

        # Volatility and trend indicators
        self.BB_PERIOD: int = int(os.getenv("BB_PERIOD", "20"))
        self.BB_STD: float = float(os.getenv("BB_STD", "2.0"))

        self.ATR_PERIOD: int = int(os.getenv("ATR_PERIOD", "14"))
        self.ADX_PERIOD: int = int(os.getenv("ADX_PERIOD", "14"))
        self.TREND_EMA_PERIOD: int = int(os.getenv("TREND_EMA_PERIOD", "200"))
        self.VOLUME_EMA_PERIOD: int = int(os.getenv("VOLUME_EMA_PERIOD", "20"))

        # Support / resistance detection
        self.SR_LOOKBACK: int = int(os.getenv("SR_LOOKBACK", "20"))
        self.SR_SWING: int = int(os.getenv("SR_SWING", "3"))
        self.SR_CLUSTER_TOLERANCE: float = float(os.getenv("SR_CLUSTER_TOLERANCE", "0.005"))  # 0.5%

        # Signal output
        self.MAX_CONFIDENCE: float = float(os.getenv("MAX_CONFIDENCE", "0.95"))
        self.PRICE_SIGNIFICANT_DIGITS: int = int(os.getenv("PRICE_SIGNIFICANT_DIGITS", "8"))
        self.PRICE_MIN_DECIMALS: int = int(os.getenv("PRICE_MIN_DECIMALS", "2"))
        self.PRICE_MAX_DECIMALS: int = int(os.getenv("PRICE_MAX_DECIMALS", "12"))

        # Backtesting
        self.BACKTEST_START_INDEX: int = int(os.getenv("BACKTEST_START_INDEX", "50"))
        self.BACKTEST_MAX_HOLDING_BARS: int = int(os.getenv("BACKTEST_MAX_HOLDING_BARS", "10"))
        self.BACKTEST_ENTRY_THRESHOLD: float = float(os.getenv("BACKTEST_ENTRY_THRESHOLD", "0.65"))
        self.BACKTEST_RESULTS_DIR: str = os.getenv("BACKTEST_RESULTS_DIR", "backtest_results")

        # Logging Configuration
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
        self.LOG_FILE_PATH: str = os.getenv("LOG_FILE_PATH", "logs/signal_engine.log")

        # Validate critical configurations
        self._validate_config()

    def _validate_config(self):
        """
        Validate critical configuration parameters
        Logs warnings for inconsistent windows and thresholds
        """
        if self.MACD_FAST >= self.MACD_SLOW:
            logger.warning(f"MACD fast period ({self.MACD_FAST}) is not shorter than slow period ({self.MACD_SLOW})")

        if not 0 < self.RSI_OVERSOLD < self.RSI_OVERBOUGHT < 100:
            logger.warning(f"RSI thresholds out of order: oversold={self.RSI_OVERSOLD}, overbought={self.RSI_OVERBOUGHT}")

        if self.MAX_CONFIDENCE > 1.0:
            logger.warning(f"Confidence ceiling above 1.0: {self.MAX_CONFIDENCE}")

        if not 0 <= self.BACKTEST_ENTRY_THRESHOLD < self.MAX_CONFIDENCE:
            logger.warning(f"Backtest entry threshold {self.BACKTEST_ENTRY_THRESHOLD} can never be exceeded "
                           f"with confidence ceiling {self.MAX_CONFIDENCE}")

        if self.BACKTEST_MAX_HOLDING_BARS < 1:
            logger.warning(f"Max holding bars must be positive, got {self.BACKTEST_MAX_HOLDING_BARS}")

        logger.debug("Configuration validation completed")

    def trend_min_candles(self) -> int:
        """
        Minimum history the trend-following strategy needs: trend EMA or slow MACD,
        plus the MACD signal warmup, plus one bar for the first true range
        """
        return max(self.MACD_SLOW, self.TREND_EMA_PERIOD) + self.MACD_SIGNAL + 1

    def reversion_min_candles(self) -> int:
        """
        Minimum history the mean-reversion strategy needs: the StochRSI chain
        (RSI then stochastic window) or the Bollinger window, plus K and D smoothing
        """
        stochastic_chain = self.RSI_PERIOD + self.STOCH_RSI_PERIOD
        return max(self.BB_PERIOD, stochastic_chain, self.ATR_PERIOD + 1) + self.STOCH_K_PERIOD + self.STOCH_D_PERIOD

# Global configuration instance
config = SignalEngineConfig()

# Environment file template for users
ENV_TEMPLATE = """
# Candle Signal Engine Environment Configuration
# Copy this to .env and adjust the values you want to override

# Momentum Indicators
RSI_PERIOD=14
RSI_OVERBOUGHT=70
RSI_OVERSOLD=30
MACD_FAST=12
MACD_SLOW=26
MACD_SIGNAL=9
STOCH_RSI_PERIOD=14
STOCH_K_PERIOD=3
STOCH_D_PERIOD=3
ROC_PERIOD=9

# Volatility and Trend Indicators
BB_PERIOD=20
BB_STD=2.0
ATR_PERIOD=14
ADX_PERIOD=14
TREND_EMA_PERIOD=200
VOLUME_EMA_PERIOD=20

# Support / Resistance
SR_LOOKBACK=20
SR_SWING=3
SR_CLUSTER_TOLERANCE=0.005

# Signal Output
MAX_CONFIDENCE=0.95
PRICE_SIGNIFICANT_DIGITS=8
PRICE_MIN_DECIMALS=2
PRICE_MAX_DECIMALS=12

# Backtesting
BACKTEST_START_INDEX=50
BACKTEST_MAX_HOLDING_BARS=10
BACKTEST_ENTRY_THRESHOLD=0.65
BACKTEST_RESULTS_DIR=backtest_results

# Logging
LOG_LEVEL=INFO
LOG_FILE_PATH=logs/signal_engine.log
"""

def create_env_template(path: str = ".env.template") -> bool:
    """
    Create a .env.template file listing every tunable setting
    """
    try:
        with open(path, 'w') as f:
            f.write(ENV_TEMPLATE)
        logger.info(f"Created {path} - copy it to .env to override defaults")
        return True
    except OSError as e:
        logger.error(f"Failed to create {path}: {e}")
        return False

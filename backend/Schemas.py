"""
Schemas Module for the Candle Signal Engine
Pydantic models for candle input records and the JSON shapes of predictions and backtests
"""

from typing import Any, Dict, List, Literal, Optional, Sequence, Union

import pandas as pd
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

KLINE_FIELDS = ('open_time', 'open', 'high', 'low', 'close', 'volume')


class CandleRecord(BaseModel):
    """Candle record as read from a file; accepts exchange kline arrays and several timestamp keys"""
    open_time: int = Field(validation_alias=AliasChoices('open_time', 'openTime', 'time', 'timestamp'))
    open: float
    high: float
    low: float
    close: float
    volume: float

    @model_validator(mode='before')
    @classmethod
    def _unwrap_numpy_scalars(cls, data: Any) -> Any:
        # pandas hands out numpy scalars when reading CSV rows
        if isinstance(data, dict):
            return {key: value.item() if hasattr(value, 'item') else value for key, value in data.items()}
        return data

    @field_validator('open_time', mode='before')
    @classmethod
    def _parse_open_time(cls, value: Any) -> Any:
        if isinstance(value, str):
            text = value.strip()
            if text.lstrip('-').isdigit():
                return int(text)
            stamp = pd.Timestamp(text)
            if stamp.tzinfo is None:
                stamp = stamp.tz_localize('UTC')
            return int(stamp.value // 1_000_000)
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return value

    @classmethod
    def from_raw(cls, raw: Union[Dict[str, Any], Sequence[Any]]) -> 'CandleRecord':
        if isinstance(raw, (list, tuple)):
            raw = dict(zip(KLINE_FIELDS, raw[:len(KLINE_FIELDS)]))
        return cls.model_validate(raw)


class IndicatorSchema(BaseModel):
    """Indicator entry of a prediction"""
    name: str
    value: Optional[float] = None
    color: str


class PredictionSchema(BaseModel):
    """JSON shape of a prediction"""
    model_config = ConfigDict(populate_by_name=True)

    symbol: str
    timeframe: str
    timestamp: int
    current_price: float = Field(alias='currentPrice')
    direction: Literal['long', 'short', 'neutral']
    confidence: float = Field(ge=0.0, le=1.0)
    target_price: float = Field(alias='targetPrice')
    stop_loss: float = Field(alias='stopLoss')
    indicators: List[IndicatorSchema]
    historical_accuracy: Optional[float] = Field(default=None, alias='historicalAccuracy')
    strategy_id: Optional[str] = Field(default=None, alias='strategyId')


class TradeEntrySchema(BaseModel):
    timestamp: int
    price: float
    direction: Literal['long', 'short']


class TradeExitSchema(BaseModel):
    timestamp: int
    price: float
    reason: Literal['target', 'stop', 'signal']


class TradeSchema(BaseModel):
    """JSON shape of a closed backtest trade"""
    model_config = ConfigDict(populate_by_name=True)

    entry: TradeEntrySchema
    exit: TradeExitSchema
    profit_loss: float = Field(alias='profitLoss')
    profit_loss_percent: float = Field(alias='profitLossPercent')


class BacktestSchema(BaseModel):
    """JSON shape of a backtest run; an infinite profit factor is written as null"""
    model_config = ConfigDict(populate_by_name=True)

    strategy_id: str = Field(alias='strategyId')
    symbol: str
    timeframe: str
    start_date: str = Field(alias='startDate')
    end_date: str = Field(alias='endDate')
    total_trades: int = Field(alias='totalTrades', ge=0)
    win_rate: float = Field(alias='winRate', ge=0.0, le=1.0)
    profit_factor: float = Field(alias='profitFactor', ge=0.0)
    max_drawdown: float = Field(alias='maxDrawdown', ge=0.0, le=1.0)
    trades: List[TradeSchema]

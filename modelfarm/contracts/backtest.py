# modelfarm/contracts/backtest.py
from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import BaseModel, Field

from .enums import TradeDirection


class TradeRecord(BaseModel):
    """
    One closed round trip.

    gross_pnl : price move times size
    fees      : opening + closing fee of this round trip
    pnl       : gross_pnl - fees
    """

    entry_time: datetime
    exit_time: datetime
    direction: TradeDirection
    entry_price: float
    exit_price: float
    size: float
    gross_pnl: float
    fees: float
    pnl: float
    return_percent: float


class EquityPoint(BaseModel):
    timestamp: datetime
    equity: float


class BacktestMetrics(BaseModel):
    total_return: float = 0.0
    annualized_return: float = 0.0
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    max_drawdown: float = 0.0
    calmar_ratio: float = 0.0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    average_win: float = 0.0
    average_loss: float = 0.0
    max_consecutive_wins: int = 0
    max_consecutive_losses: int = 0
    average_holding_period_seconds: float = 0.0
    total_fees_paid: float = 0.0
    final_portfolio_value: float = 0.0
    backtest_start_utc: datetime
    backtest_end_utc: datetime


class BacktestResult(BaseModel):
    metrics: BacktestMetrics
    trades: List[TradeRecord] = Field(default_factory=list)
    dropped_trades: int = 0
    equity_curve: List[EquityPoint] = Field(default_factory=list)
    final_equity: float = 0.0

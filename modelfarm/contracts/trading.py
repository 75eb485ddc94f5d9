# modelfarm/contracts/trading.py
"""
Trading environment and performance requirement contracts.
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class FeeSchedule(BaseModel):
    maker_fee_rate: float = Field(default=0.001, ge=0, lt=1)
    taker_fee_rate: float = Field(default=0.001, ge=0, lt=1)

    @classmethod
    def binance_spot_vip0(cls) -> "FeeSchedule":
        return cls(maker_fee_rate=0.001, taker_fee_rate=0.001)

    @classmethod
    def binance_futures(cls) -> "FeeSchedule":
        return cls(maker_fee_rate=0.0002, taker_fee_rate=0.0005)

    @classmethod
    def zero(cls) -> "FeeSchedule":
        return cls(maker_fee_rate=0.0, taker_fee_rate=0.0)


class TradingEnvironmentConfig(BaseModel):
    """
    Simulated account the backtest runs against.
    Market orders only, so the taker rate is the one charged.
    """

    initial_capital: float = Field(default=10_000.0, gt=0)
    fees: FeeSchedule = Field(default_factory=FeeSchedule)
    max_position_size_ratio: float = Field(default=1.0, gt=0, le=1)
    allow_short_selling: bool = False

    @classmethod
    def spot_trading(cls) -> "TradingEnvironmentConfig":
        return cls(fees=FeeSchedule.binance_spot_vip0(), allow_short_selling=False)

    @classmethod
    def futures_trading(cls) -> "TradingEnvironmentConfig":
        return cls(fees=FeeSchedule.binance_futures(), allow_short_selling=True)

    @classmethod
    def ideal(cls) -> "TradingEnvironmentConfig":
        return cls(fees=FeeSchedule.zero(), allow_short_selling=True)


class PerformanceRequirements(BaseModel):
    """
    Thresholds a backtest must meet. Absent thresholds always pass;
    min_trade_count is always checked.
    """

    min_sharpe_ratio: Optional[float] = None
    min_sortino_ratio: Optional[float] = None
    max_drawdown: Optional[float] = None
    min_win_rate: Optional[float] = None
    min_profit_factor: Optional[float] = None
    min_annualized_return: Optional[float] = None
    max_consecutive_losses: Optional[int] = None
    min_trade_count: int = Field(default=30, ge=0)

    def check(self, metrics) -> tuple[bool, list[str]]:
        """
        metrics: BacktestMetrics. Returns (meets, human-readable failures).
        """
        failures: list[str] = []

        def _min(name: str, threshold, actual) -> None:
            if threshold is not None and not actual >= threshold:
                failures.append(f"{name} {actual:.4f} < required {threshold:.4f}")

        def _max(name: str, threshold, actual) -> None:
            if threshold is not None and not actual <= threshold:
                failures.append(f"{name} {actual:.4f} > allowed {threshold:.4f}")

        _min("Sharpe ratio", self.min_sharpe_ratio, metrics.sharpe_ratio)
        _min("Sortino ratio", self.min_sortino_ratio, metrics.sortino_ratio)
        _max("Max drawdown", self.max_drawdown, metrics.max_drawdown)
        _min("Win rate", self.min_win_rate, metrics.win_rate)
        _min("Profit factor", self.min_profit_factor, metrics.profit_factor)
        _min("Annualized return", self.min_annualized_return, metrics.annualized_return)
        _max("Consecutive losses", self.max_consecutive_losses, metrics.max_consecutive_losses)

        if metrics.total_trades < self.min_trade_count:
            failures.append(
                f"Trade count {metrics.total_trades} < required {self.min_trade_count}"
            )

        return not failures, failures

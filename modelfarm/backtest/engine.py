# modelfarm/backtest/engine.py
"""
Event-driven mark-to-market simulator（FINAL / FROZEN）

Policy:
    predicted_return > 0  → BUY   (close short, open long)
    otherwise             → SELL  (close long, open short if allowed else flat)

Memory stays bounded on long series:
    - equity curve downsampled to <= MAX_EQUITY_CURVE_POINTS
    - trade log capped at MAX_STORED_TRADES (extra trades are counted)
    - period returns aggregated online (sum / sum of squares / downside)
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Sequence

from modelfarm.contracts.backtest import BacktestMetrics, BacktestResult, EquityPoint, TradeRecord
from modelfarm.contracts.enums import TradeDirection, TradeSignal
from modelfarm.contracts.trading import TradingEnvironmentConfig
from modelfarm.utils.datetime_utils import DateTimeUtils
from modelfarm.utils.logger import logs

MAX_EQUITY_CURVE_POINTS = 1000
MAX_STORED_TRADES = 500


@dataclass(frozen=True)
class BacktestPoint:
    timestamp: datetime
    close_price: float
    predicted_return: float
    actual_return: float


def signal_for(predicted_return: float) -> TradeSignal:
    return TradeSignal.BUY if predicted_return > 0 else TradeSignal.SELL


class _ReturnStats:
    """Online period-return aggregates."""

    def __init__(self):
        self.total = 0.0
        self.total_sq = 0.0
        self.count = 0
        self.neg_total_sq = 0.0
        self.neg_count = 0

    def add(self, r: float) -> None:
        self.total += r
        self.total_sq += r * r
        self.count += 1
        if r < 0:
            self.neg_total_sq += r * r
            self.neg_count += 1

    def risk_adjusted(self, annualization_factor: float) -> tuple[float, float]:
        if self.count < 2:
            return 0.0, 0.0

        mean = self.total / self.count
        variance = max(0.0, self.total_sq / self.count - mean * mean)
        std = math.sqrt(variance)
        downside = math.sqrt(self.neg_total_sq / self.neg_count) if self.neg_count else 0.0

        root_a = math.sqrt(annualization_factor)
        annual_mean = mean * annualization_factor
        annual_std = std * root_a
        annual_downside = downside * root_a

        sharpe = annual_mean / annual_std if annual_std > 0 else 0.0
        sortino = annual_mean / annual_downside if annual_downside > 0 else 0.0
        return sharpe, sortino


class _TradeStats:
    """Win/loss aggregates over every closed trade, stored or not."""

    def __init__(self):
        self.count = 0
        self.wins = 0
        self.losses = 0
        self.gross_profit = 0.0
        self.gross_loss = 0.0
        self.holding_seconds = 0.0
        self._win_streak = 0
        self._loss_streak = 0
        self.max_win_streak = 0
        self.max_loss_streak = 0

    def add(self, trade: TradeRecord) -> None:
        self.count += 1
        self.holding_seconds += (trade.exit_time - trade.entry_time).total_seconds()
        if trade.pnl > 0:
            self.wins += 1
            self.gross_profit += trade.pnl
            self._win_streak += 1
            self._loss_streak = 0
            self.max_win_streak = max(self.max_win_streak, self._win_streak)
        elif trade.pnl < 0:
            self.losses += 1
            self.gross_loss += -trade.pnl
            self._loss_streak += 1
            self._win_streak = 0
            self.max_loss_streak = max(self.max_loss_streak, self._loss_streak)

    @property
    def profit_factor(self) -> float:
        if self.gross_loss > 0:
            return self.gross_profit / self.gross_loss
        return math.inf if self.gross_profit > 0 else 0.0


class BacktestEngine:
    def __init__(self, env: TradingEnvironmentConfig):
        self.env = env
        self.fee_rate = env.fees.taker_fee_rate

    # ------------------------------------------------------------------
    def run(self, points: Sequence[BacktestPoint], annualization_factor: float) -> BacktestResult:
        n = len(points)
        if n == 0:
            return self._empty_result()

        env = self.env
        stride = max(1, math.ceil(n / MAX_EQUITY_CURVE_POINTS))

        equity = env.initial_capital
        position = 0.0          # signed size; < 0 is short
        entry_price = 0.0
        entry_time = points[0].timestamp
        entry_fee = 0.0
        total_fees = 0.0

        peak = equity
        max_drawdown = 0.0
        prev_mtm = equity

        returns = _ReturnStats()
        trade_stats = _TradeStats()
        trades: List[TradeRecord] = []
        dropped = 0
        curve: List[EquityPoint] = []

        def close_position(price: float, when: datetime) -> None:
            nonlocal equity, position, total_fees, dropped
            fee = abs(position) * price * self.fee_rate
            gross = position * (price - entry_price)
            equity += gross - fee
            total_fees += fee
            fees = entry_fee + fee
            trade = TradeRecord(
                entry_time=entry_time,
                exit_time=when,
                direction=TradeDirection.LONG if position > 0 else TradeDirection.SHORT,
                entry_price=entry_price,
                exit_price=price,
                size=abs(position),
                gross_pnl=gross,
                fees=fees,
                pnl=gross - fees,
                return_percent=(gross - fees) / (abs(position) * entry_price),
            )
            trade_stats.add(trade)
            if len(trades) < MAX_STORED_TRADES:
                trades.append(trade)
            else:
                dropped += 1
            position = 0.0

        def open_position(direction: int, price: float, when: datetime) -> None:
            nonlocal equity, position, entry_price, entry_time, entry_fee, total_fees
            size = equity * env.max_position_size_ratio / price
            fee = size * price * self.fee_rate
            equity -= fee
            total_fees += fee
            position = direction * size
            entry_price = price
            entry_time = when
            entry_fee = fee

        for i, p in enumerate(points):
            price = float(p.close_price)
            signal = signal_for(p.predicted_return)

            if signal is TradeSignal.BUY and position <= 0:
                if position < 0:
                    close_position(price, p.timestamp)
                open_position(+1, price, p.timestamp)
            elif signal is TradeSignal.SELL and position >= 0:
                if position > 0:
                    close_position(price, p.timestamp)
                if env.allow_short_selling:
                    open_position(-1, price, p.timestamp)

            mtm = equity + position * (price - entry_price)

            if (i + 1) % stride == 0 or i == n - 1:
                curve.append(EquityPoint(timestamp=p.timestamp, equity=mtm))

            if mtm > peak:
                peak = mtm
            if peak > 0:
                max_drawdown = max(max_drawdown, (peak - mtm) / peak)

            if i > 0 and prev_mtm > 0:
                returns.add((mtm - prev_mtm) / prev_mtm)
            prev_mtm = mtm

        if position != 0:
            close_position(float(points[-1].close_price), points[-1].timestamp)

        total_return = (equity - env.initial_capital) / env.initial_capital
        annualized = annualize(total_return, annualization_factor, n)
        sharpe, sortino = returns.risk_adjusted(annualization_factor)

        metrics = BacktestMetrics(
            total_return=total_return,
            annualized_return=annualized,
            sharpe_ratio=sharpe,
            sortino_ratio=sortino,
            max_drawdown=max_drawdown,
            calmar_ratio=annualized / max_drawdown if max_drawdown > 0 else 0.0,
            win_rate=trade_stats.wins / trade_stats.count if trade_stats.count else 0.0,
            profit_factor=trade_stats.profit_factor,
            total_trades=trade_stats.count,
            winning_trades=trade_stats.wins,
            losing_trades=trade_stats.losses,
            average_win=trade_stats.gross_profit / trade_stats.wins if trade_stats.wins else 0.0,
            average_loss=-trade_stats.gross_loss / trade_stats.losses if trade_stats.losses else 0.0,
            max_consecutive_wins=trade_stats.max_win_streak,
            max_consecutive_losses=trade_stats.max_loss_streak,
            average_holding_period_seconds=(
                trade_stats.holding_seconds / trade_stats.count if trade_stats.count else 0.0
            ),
            total_fees_paid=total_fees,
            final_portfolio_value=equity,
            backtest_start_utc=points[0].timestamp,
            backtest_end_utc=points[-1].timestamp,
        )

        logs.debug(
            f"[Backtest] points={n} trades={trade_stats.count} "
            f"total_return={total_return:.4f} sharpe={sharpe:.3f} max_dd={max_drawdown:.4f}"
        )

        return BacktestResult(
            metrics=metrics,
            trades=trades,
            dropped_trades=dropped,
            equity_curve=curve,
            final_equity=equity,
        )

    def _empty_result(self) -> BacktestResult:
        now = DateTimeUtils.utc_now()
        metrics = BacktestMetrics(
            final_portfolio_value=self.env.initial_capital,
            backtest_start_utc=now,
            backtest_end_utc=now,
        )
        return BacktestResult(metrics=metrics, final_equity=self.env.initial_capital)


def annualize(total_return: float, annualization_factor: float, periods: int) -> float:
    """
    (1 + total)^(A / N) - 1, with A = periods per year.
    """
    if periods <= 0:
        return 0.0
    base = 1.0 + total_return
    if base <= 0:
        return -1.0
    try:
        return math.pow(base, annualization_factor / periods) - 1.0
    except OverflowError:
        return math.inf


def run_backtest(
    points: Sequence[BacktestPoint],
    env: TradingEnvironmentConfig,
    annualization_factor: float,
) -> BacktestResult:
    return BacktestEngine(env).run(points, annualization_factor)

from .engine import (
    MAX_EQUITY_CURVE_POINTS,
    MAX_STORED_TRADES,
    BacktestEngine,
    BacktestPoint,
    annualize,
    run_backtest,
    signal_for,
)

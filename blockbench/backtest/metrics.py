"""blockbench.backtest.metrics

Performance metrics for a finished simulation.

Pure functions of the equity curve, the trade log and the starting capital.
Enough to rank strategies honestly; not a full tearsheet.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import timedelta

import numpy as np

from blockbench.backtest.models import EquityPoint, Metrics, Trade, TradeKind
from blockbench.backtest.portfolio import LPPosition
from blockbench.core.time import YEAR

LP_TRADE_KINDS = frozenset({TradeKind.LP_CREATE, TradeKind.LP_COLLECT, TradeKind.LP_CLOSE})


def periods_per_year(tick_interval: timedelta) -> float:
    """365 for daily ticks, 8760 for hourly, and so on."""

    if tick_interval <= timedelta(0):
        raise ValueError("tick_interval must be > 0")
    return YEAR / tick_interval


def max_drawdown(equity: np.ndarray, *, initial_capital: float | None = None) -> tuple[float, float]:
    """Largest peak-to-trough drop as (absolute, percent of peak).

    The running peak starts at ``initial_capital`` when given, so an equity
    curve that opens below its funding already counts as drawn down.
    """

    eq = equity.astype(np.float64)
    if eq.size == 0:
        return 0.0, 0.0
    seed = eq[:1] if initial_capital is None else np.array([initial_capital], dtype=np.float64)
    peak = np.maximum.accumulate(np.concatenate([seed, eq]))[1:]
    dd = peak - eq
    with np.errstate(divide="ignore", invalid="ignore"):
        dd_pct = np.where(peak > 0, dd / peak * 100.0, 0.0)
    return float(max(dd.max(), 0.0)), float(max(dd_pct.max(), 0.0))


def simple_returns(equity: np.ndarray) -> np.ndarray:
    """Per-tick simple returns; ticks following a non-positive equity are dropped."""

    eq = equity.astype(np.float64)
    if eq.size < 2:
        return np.zeros(0, dtype=np.float64)
    prev, cur = eq[:-1], eq[1:]
    mask = prev > 0
    return (cur[mask] - prev[mask]) / prev[mask]


def sharpe(returns: np.ndarray, *, periods_per_year: float = 365.0) -> float:
    r = returns.astype(np.float64)
    if r.size == 0:
        return 0.0
    mu = float(np.mean(r))
    sd = float(np.std(r))
    if sd == 0.0:
        return 0.0
    return (mu / sd) * float(np.sqrt(periods_per_year))


def closed_pnls(trades: Sequence[Trade]) -> np.ndarray:
    return np.array([t.pnl for t in trades if t.pnl is not None], dtype=np.float64)


def win_rate(trades: Sequence[Trade]) -> float:
    """Fraction of realized-P&L trades that made money."""

    pnl = closed_pnls(trades)
    if pnl.size == 0:
        return 0.0
    return float(np.count_nonzero(pnl > 0) / pnl.size)


def profit_factor(trades: Sequence[Trade]) -> float:
    pnl = closed_pnls(trades)
    gross_profit = float(pnl[pnl > 0].sum()) if pnl.size else 0.0
    gross_loss = float(-pnl[pnl < 0].sum()) if pnl.size else 0.0
    if gross_loss > 0:
        return gross_profit / gross_loss
    return float("inf") if gross_profit > 0 else 0.0


def impermanent_loss(lp_positions: Sequence[LPPosition], *, reference_price: float) -> float:
    """Notional-weighted IL estimate summed over positions.

    ``IL = |2·sqrt(ρ)/(1+ρ) − 1|`` with ``ρ = reference_price / entry_price``.
    The reference price is a single configured figure, not the price at
    evaluation time.
    """

    total = 0.0
    for lp in lp_positions:
        if lp.entry_price <= 0:
            continue
        rho = reference_price / lp.entry_price
        il = 2.0 * np.sqrt(rho) / (1.0 + rho) - 1.0
        total += abs(float(il)) * lp.notional
    return total


def compute_metrics(
    *,
    equity_curve: Sequence[EquityPoint],
    trades: Sequence[Trade],
    initial_capital: float,
    periods_per_year: float = 365.0,
    lp_positions: Sequence[LPPosition] = (),
    reference_price: float = 2000.0,
) -> Metrics:
    if not equity_curve:
        return Metrics.zero()

    equity = np.array([p.equity for p in equity_curve], dtype=np.float64)
    final = float(equity[-1])
    total_return = final - initial_capital
    dd_abs, dd_pct = max_drawdown(equity, initial_capital=initial_capital)

    is_lp = bool(lp_positions) or any(t.kind in LP_TRADE_KINDS for t in trades)
    il = impermanent_loss(lp_positions, reference_price=reference_price) if is_lp else None

    return Metrics(
        total_return=total_return,
        total_return_pct=total_return / initial_capital * 100.0 if initial_capital else 0.0,
        max_drawdown=dd_abs,
        max_drawdown_pct=dd_pct,
        sharpe_ratio=sharpe(simple_returns(equity), periods_per_year=periods_per_year),
        win_rate=win_rate(trades),
        profit_factor=profit_factor(trades),
        total_trades=len(trades),
        total_gas_spent=float(sum(t.gas_cost for t in trades)),
        total_fees_spent=float(sum(t.protocol_fee for t in trades)),
        impermanent_loss=il,
    )

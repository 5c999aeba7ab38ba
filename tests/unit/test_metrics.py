from __future__ import annotations

import math
from datetime import timedelta

import numpy as np
import pytest

from blockbench.backtest.metrics import (
    compute_metrics,
    impermanent_loss,
    max_drawdown,
    periods_per_year,
    profit_factor,
    sharpe,
    simple_returns,
    win_rate,
)
from blockbench.backtest.models import EquityPoint, Metrics, Trade, TradeKind
from blockbench.backtest.portfolio import LPPosition
from tests.unit._series import day


def _curve(*values: float) -> list[EquityPoint]:
    return [EquityPoint(timestamp=day(i), equity=v) for i, v in enumerate(values)]


def _trade(pnl: float | None, kind: TradeKind = TradeKind.LP_CLOSE, gas: float = 0.01, fee: float = 1.0) -> Trade:
    return Trade(
        id="T", timestamp=day(0), kind=kind, protocol="Uniswap", details={}, gas_cost=gas, protocol_fee=fee, slippage=0.0, pnl=pnl
    )


def test_max_drawdown_from_running_peak():
    dd, dd_pct = max_drawdown(np.array([10_000, 11_000, 9_000, 9_500]), initial_capital=10_000)
    assert dd == pytest.approx(2000.0)
    assert dd_pct == pytest.approx(2000 / 11_000 * 100)


def test_drawdown_peak_starts_at_initial_capital():
    dd, dd_pct = max_drawdown(np.array([9_000.0, 9_500.0]), initial_capital=10_000)
    assert dd == pytest.approx(1000.0)
    assert dd_pct == pytest.approx(10.0)


def test_drawdown_of_rising_curve_is_zero():
    assert max_drawdown(np.array([1.0, 2.0, 3.0])) == (0.0, 0.0)
    assert max_drawdown(np.array([])) == (0.0, 0.0)


def test_sharpe_uses_population_std_and_annualizes():
    r = np.array([0.01, -0.005, 0.02, 0.0])
    expected = r.mean() / r.std(ddof=0) * math.sqrt(365)
    assert sharpe(r) == pytest.approx(expected)
    assert sharpe(r, periods_per_year=8760) == pytest.approx(r.mean() / r.std() * math.sqrt(8760))


def test_sharpe_degenerate_cases_are_zero():
    assert sharpe(np.array([])) == 0.0
    assert sharpe(np.array([0.01, 0.01, 0.01])) == 0.0


def test_simple_returns_skip_non_positive_equity():
    r = simple_returns(np.array([100.0, 110.0, 0.0, 50.0]))
    assert r.tolist() == pytest.approx([0.1, -1.0])


def test_win_rate_and_profit_factor_use_realized_trades_only():
    trades = [_trade(None, TradeKind.SWAP), _trade(10.0), _trade(-5.0), _trade(20.0), _trade(0.0)]
    assert win_rate(trades) == pytest.approx(0.5)
    assert profit_factor(trades) == pytest.approx(6.0)


def test_profit_factor_edges():
    assert profit_factor([]) == 0.0
    assert profit_factor([_trade(5.0)]) == math.inf
    assert profit_factor([_trade(-5.0)]) == 0.0


def test_impermanent_loss_against_reference_price():
    lp = LPPosition(
        pool_id="WETH-USDC-3000",
        token0="WETH",
        token1="USDC",
        notional=1000.0,
        token0_amount=0.5,
        token1_amount=500.0,
        fee_tier=3000,
        entry_price=1000.0,
        opened_at=day(0),
    )
    rho = 2.0
    expected = abs(2 * math.sqrt(rho) / (1 + rho) - 1) * 1000
    assert impermanent_loss([lp], reference_price=2000.0) == pytest.approx(expected)
    assert impermanent_loss([lp], reference_price=1000.0) == pytest.approx(0.0)


def test_periods_per_year():
    assert periods_per_year(timedelta(days=1)) == pytest.approx(365.0)
    assert periods_per_year(timedelta(hours=1)) == pytest.approx(8760.0)
    with pytest.raises(ValueError):
        periods_per_year(timedelta(0))


def test_compute_metrics_end_to_end():
    m = compute_metrics(
        equity_curve=_curve(10_000, 11_000, 9_000, 9_500),
        trades=[_trade(None, TradeKind.SWAP), _trade(100.0)],
        initial_capital=10_000,
    )
    assert m.total_return == pytest.approx(-500.0)
    assert m.total_return_pct == pytest.approx(-5.0)
    assert m.max_drawdown == pytest.approx(2000.0)
    assert m.total_trades == 2
    assert m.total_gas_spent == pytest.approx(0.02)
    assert m.total_fees_spent == pytest.approx(2.0)
    assert m.win_rate == 1.0
    # LP trade present, no open positions: IL is reported as zero
    assert m.impermanent_loss == 0.0


def test_compute_metrics_without_lp_activity_has_no_il():
    m = compute_metrics(equity_curve=_curve(1.0, 1.0), trades=[_trade(None, TradeKind.SWAP)], initial_capital=1.0)
    assert m.impermanent_loss is None


def test_empty_curve_gives_zero_metrics():
    assert compute_metrics(equity_curve=[], trades=[], initial_capital=1.0) == Metrics.zero()


def test_json_dict_nulls_infinite_profit_factor_and_round_trips():
    m = compute_metrics(equity_curve=_curve(100.0, 110.0), trades=[_trade(5.0)], initial_capital=100.0)
    d = m.to_json_dict()
    assert d["profit_factor"] is None
    assert Metrics.from_dict(d).profit_factor == math.inf

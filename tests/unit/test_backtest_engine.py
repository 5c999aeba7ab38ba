from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from blockbench.backtest.costs import CostModel
from blockbench.backtest.engine import StrategyExecutionEngine
from blockbench.backtest.models import BacktestConfig, TradeKind
from blockbench.backtest.operations import parse_operations
from blockbench.backtest.portfolio import LendingSide
from blockbench.core.cancellation import CancellationToken
from blockbench.core.exceptions import ConfigurationError
from blockbench.data.historical import HistoricalDataCache
from blockbench.data.provider import StaticProvider
from tests.unit._series import day, flat_prices, flat_rates, prices


def _engine(price_series=None, rate_series=None, **kw) -> StrategyExecutionEngine:
    cache = HistoricalDataCache(
        StaticProvider(prices=price_series or {}, rates=rate_series or {}),
        lending_assets=(),
    )
    return StrategyExecutionEngine(cache, **kw)


def _config(ops, *, start=0, end=0, capital=10_000.0, interval=timedelta(days=1)) -> BacktestConfig:
    return BacktestConfig(
        operations=parse_operations(ops),
        start=day(start),
        end=day(end),
        initial_capital=capital,
        tick_interval=interval,
    )


async def _run(engine: StrategyExecutionEngine, config: BacktestConfig):
    await engine.load_data(config)
    return engine.run(config)


@pytest.mark.anyio
async def test_single_swap_matches_worked_example():
    engine = _engine({"WETH": flat_prices(2000.0)})
    config = _config([{"kind": "SWAP", "token_in": "USDC", "token_out": "WETH", "amount": 1000, "slippage": 0.5}])

    result = await _run(engine, config)

    assert result is not None
    bal = result.final_portfolio.balances
    assert bal["USDC"] == pytest.approx(9000.0)
    assert bal["WETH"] == pytest.approx(0.4975)
    assert len(result.trades) == 1
    trade = result.trades[0]
    assert trade.kind == TradeKind.SWAP
    assert trade.id == "T1"
    assert trade.slippage == pytest.approx(0.5)
    assert trade.protocol_fee == pytest.approx(3.0)
    assert trade.gas_cost == pytest.approx(150_000 * 20e-9)
    assert trade.details["expected_out"] == pytest.approx(0.5)


@pytest.mark.anyio
async def test_large_swap_uses_price_impact_over_tolerance():
    engine = _engine({"WETH": flat_prices(2000.0)}, costs=CostModel(pool_liquidity=100_000.0))
    config = _config(
        [{"kind": "SWAP", "token_in": "USDC", "token_out": "WETH", "amount": 10_000, "slippage": 0.1}],
    )
    result = await _run(engine, config)
    # 10k / 100k * 100 * 0.1 = 1%
    assert result.trades[0].slippage == pytest.approx(1.0)
    assert result.final_portfolio.balances["WETH"] == pytest.approx(5.0 * 0.99)


@pytest.mark.anyio
async def test_zero_operations_keep_equity_flat():
    engine = _engine()
    config = _config([], start=0, end=9)
    result = await _run(engine, config)

    assert len(result.equity_curve) == 10
    assert all(p.equity == 10_000.0 for p in result.equity_curve)
    assert result.trades == ()
    assert result.metrics.total_return == 0.0
    assert result.metrics.max_drawdown == 0.0
    assert result.metrics.sharpe_ratio == 0.0


@pytest.mark.anyio
async def test_one_equity_point_per_tick_and_end_inclusive():
    engine = _engine()
    config = _config([], start=0, end=2, interval=timedelta(hours=12))
    result = await _run(engine, config)

    stamps = [p.timestamp for p in result.equity_curve]
    assert stamps == [day(0) + timedelta(hours=12 * i) for i in range(5)]
    assert stamps[-1] == day(2)


@pytest.mark.anyio
async def test_unaffordable_operation_is_skipped_without_trade():
    engine = _engine({"WETH": flat_prices(2000.0)})
    config = _config(
        [
            {"kind": "SWAP", "token_in": "USDC", "token_out": "WETH", "amount": 6000},
            {"kind": "SWAP", "token_in": "WBTC", "token_out": "USDC", "amount": 1},
        ],
        start=0,
        end=1,
    )
    result = await _run(engine, config)

    # first tick swaps 6000, second tick only 4000 left
    assert [t.kind for t in result.trades] == [TradeKind.SWAP]
    assert result.final_portfolio.balances["USDC"] == pytest.approx(4000.0)
    assert all(v >= 0 for v in result.final_portfolio.balances.values())


@pytest.mark.anyio
async def test_equity_tracks_price_moves():
    engine = _engine({"WETH": prices(2000.0, 2200.0, 1800.0)})
    config = _config(
        [{"kind": "SWAP", "token_in": "USDC", "token_out": "WETH", "amount": 10_000, "slippage": 0.0}],
        start=0,
        end=2,
    )
    result = await _run(engine, config)

    weth = 10_000 / 2000 * (1 - 0.1 / 100)  # impact-only slippage
    assert [p.equity for p in result.equity_curve] == pytest.approx([weth * 2000, weth * 2200, weth * 1800])
    assert result.metrics.max_drawdown == pytest.approx(weth * 400)


@pytest.mark.anyio
async def test_supply_accrues_simple_interest_from_entry_rate():
    engine = _engine(rate_series={"USDC": flat_rates(10.0, 12.0, days=400)})
    config = _config([{"kind": "SUPPLY", "asset": "USDC", "amount": 10_000}], start=0, end=365, interval=timedelta(days=365))
    result = await _run(engine, config)

    # supplied once on tick 0; tick 1 has no USDC left to supply
    assert [t.kind for t in result.trades] == [TradeKind.SUPPLY]
    pos = result.final_portfolio.lending_positions[0]
    assert pos.side == LendingSide.SUPPLY
    assert pos.entry_apy == 10.0
    assert pos.accrued_interest == pytest.approx(1000.0)
    assert result.equity_curve[0].equity == pytest.approx(10_000.0)
    assert result.equity_curve[-1].equity == pytest.approx(11_000.0)


@pytest.mark.anyio
async def test_borrow_is_capped_by_ltv_and_uses_borrow_rate():
    engine = _engine(
        {"WETH": flat_prices(2000.0)},
        rate_series={"WETH": flat_rates(1.0, 4.0)},
    )
    config = _config(
        [
            {"kind": "BORROW", "asset": "WETH", "amount": 2},  # 4000 of 8000 capacity
            {"kind": "BORROW", "asset": "WETH", "amount": 3},  # would exceed: skipped
        ]
    )
    result = await _run(engine, config)

    assert [t.kind for t in result.trades] == [TradeKind.BORROW]
    debt = result.final_portfolio.lending(LendingSide.BORROW)
    assert len(debt) == 1
    assert debt[0].entry_apy == 4.0
    assert result.final_portfolio.balances["WETH"] == 2
    # borrowed tokens and debt cancel out
    assert result.equity_curve[0].equity == pytest.approx(10_000.0)


@pytest.mark.anyio
async def test_repay_pays_interest_first_and_records_negative_pnl():
    engine = _engine(
        {"WETH": flat_prices(2000.0, days=800)},
        rate_series={"WETH": flat_rates(1.0, 10.0, days=800)},
    )
    config = _config(
        [{"kind": "BORROW", "asset": "WETH", "amount": 1}, {"kind": "REPAY", "asset": "WETH", "amount": 0.05}],
        start=0,
        end=730,
        interval=timedelta(days=365),
    )
    result = await _run(engine, config)

    repays = [t for t in result.trades if t.kind == TradeKind.REPAY]
    assert len(repays) == 3
    # ticks 0 and 1 pay principal only: nothing has accrued yet when they run
    assert repays[0].pnl == pytest.approx(0.0)
    assert repays[1].pnl == pytest.approx(0.0)
    # the oldest debt accrued 0.09 WETH over the year; the repay goes to interest
    assert repays[2].details["interest_paid"] == pytest.approx(0.05)
    assert repays[2].pnl == pytest.approx(-100.0)

    oldest = result.final_portfolio.lending(LendingSide.BORROW, "WETH")[0]
    assert oldest.principal == pytest.approx(0.90)


@pytest.mark.anyio
async def test_repay_without_debt_is_skipped():
    engine = _engine()
    result = await _run(engine, _config([{"kind": "REPAY", "asset": "USDC", "amount": 10}]))
    assert result.trades == ()


@pytest.mark.anyio
async def test_lp_create_and_close_in_one_tick():
    engine = _engine({"WETH": flat_prices(2000.0)})
    config = _config(
        [
            {"kind": "SWAP", "token_in": "USDC", "token_out": "WETH", "amount": 2000, "slippage": 0.0},
            {"kind": "CREATE_LP_POSITION", "token0": "WETH", "token1": "USDC", "amount": 1000, "fee_tier": 3000},
        ]
    )
    result = await _run(engine, config)
    lp = result.final_portfolio.lp_positions[0]
    assert lp.pool_id == "WETH-USDC-3000"
    assert lp.token0_amount == pytest.approx(0.25)
    assert lp.token1_amount == pytest.approx(500.0)
    assert lp.entry_price == pytest.approx(2000.0)
    assert result.metrics.impermanent_loss is not None

    collect_close = _config(
        [
            {"kind": "SWAP", "token_in": "USDC", "token_out": "DAI", "amount": 1000, "slippage": 0.0},
            {"kind": "CREATE_LP_POSITION", "token0": "USDC", "token1": "DAI", "amount": 1000},
            {"kind": "COLLECT_FEES", "token0": "USDC", "token1": "DAI"},
            {"kind": "CLOSE_LP_POSITION", "token0": "USDC", "token1": "DAI"},
        ],
        start=0,
        end=0,
    )
    # same tick: no fees yet, so collect is skipped and close returns the notional
    res2 = await _run(_engine(), collect_close)
    assert [t.kind for t in res2.trades] == [TradeKind.SWAP, TradeKind.LP_CREATE, TradeKind.LP_CLOSE]
    assert res2.trades[-1].pnl == pytest.approx(0.0)
    assert res2.final_portfolio.lp_positions == []


@pytest.mark.anyio
async def test_lp_fees_accrue_per_elapsed_day_and_collect():
    engine = _engine()
    config = _config(
        [
            {"kind": "SWAP", "token_in": "USDC", "token_out": "DAI", "amount": 2000, "slippage": 0.0},
            {"kind": "CREATE_LP_POSITION", "token0": "USDC", "token1": "DAI", "amount": 1000, "fee_tier": 3000},
        ],
        start=0,
        end=10,
        interval=timedelta(days=10),
    )
    result = await _run(engine, config)
    # the second tick opens a second position; the first earned 10 days of fees
    first, second = result.final_portfolio.lp_positions
    earned = first.fees0 + first.fees1
    assert earned == pytest.approx(1000 * 0.003 * 0.1 * 10)
    assert second.fees0 + second.fees1 == 0.0
    # each 2000 swap loses 0.02% to price impact
    assert result.equity_curve[-1].equity == pytest.approx(10_000 - 2 * 0.4 + earned)


@pytest.mark.anyio
async def test_costs_are_not_debited_from_balances():
    engine = _engine()
    config = _config([{"kind": "SUPPLY", "asset": "USDC", "amount": 100}])
    result = await _run(engine, config)
    assert result.metrics.total_gas_spent > 0
    assert result.equity_curve[0].equity == pytest.approx(10_000.0)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"start": 5, "end": 4},
        {"capital": 0.0},
        {"capital": -1.0},
        {"interval": timedelta(0)},
    ],
)
def test_configuration_errors_raise(kwargs):
    engine = _engine()
    with pytest.raises(ConfigurationError):
        engine.run(_config([], **kwargs))


def test_too_many_ticks_is_a_configuration_error():
    engine = _engine(max_ticks=10)
    with pytest.raises(ConfigurationError):
        engine.prepare(_config([], start=0, end=30))


def test_cancelled_token_returns_none():
    engine = _engine(checkpoint_every=5)
    token = CancellationToken()
    token.cancel()
    assert engine.run(_config([], start=0, end=20), token=token) is None


def test_result_is_detached_from_simulation_state():
    engine = _engine()
    plan = engine.prepare(_config([], start=0, end=1))
    trace = engine.simulate(plan)
    result = engine.finalize(plan, trace)

    trace.portfolio.balances["USDC"] = 0.0
    assert result.final_portfolio.balances["USDC"] == 10_000.0


def _regime_engine() -> StrategyExecutionEngine:
    series = prices(*([1500.0] * 11 + [2000.0] * 9 + [3000.0] * 11))
    cache = HistoricalDataCache(StaticProvider(prices={"WETH": series}, clip_to_window=True), lending_assets=())
    return StrategyExecutionEngine(cache)


_BUY_WETH = [{"kind": "SWAP", "token_in": "USDC", "token_out": "WETH", "amount": 1000}]


@pytest.mark.anyio
async def test_runs_over_different_windows_do_not_share_prices():
    early, late = _config(_BUY_WETH, start=0, end=10), _config(_BUY_WETH, start=20, end=30)
    solo = await _run(_regime_engine(), early)

    engine = _regime_engine()
    await engine.load_data(early)
    plan_early = engine.prepare(early)
    await engine.load_data(late)
    plan_late = engine.prepare(late)
    trace_early, trace_late = await asyncio.gather(
        asyncio.to_thread(engine.simulate, plan_early),
        asyncio.to_thread(engine.simulate, plan_late),
    )
    shared = engine.finalize(plan_early, trace_early)

    assert shared.trades[0].details["amount_out"] == pytest.approx(1000 / 1500 * 0.995)
    assert trace_late.trades[0].details["amount_out"] == pytest.approx(1000 / 3000 * 0.995)
    assert [p.equity for p in shared.equity_curve] == pytest.approx([p.equity for p in solo.equity_curve])


@pytest.mark.anyio
async def test_prepare_uses_its_own_window_after_a_later_prefetch():
    engine = _regime_engine()
    early, late = _config(_BUY_WETH, start=0, end=10), _config(_BUY_WETH, start=20, end=30)
    await engine.load_data(early)
    await engine.load_data(late)

    result = engine.run(early)
    assert result.trades[0].details["amount_out"] == pytest.approx(1000 / 1500 * 0.995)

"""blockbench.backtest.engine

Strategy execution engine.

One pass over a discrete timeline. At every tick:
- price every asset the strategy touches (quote asset included)
- apply each operation, in declared order, against the live portfolio
- accrue LP fees and lending interest for the elapsed time
- mark the portfolio and append an equity point

An operation that cannot be afforded or has nothing to act on is skipped
for that tick. Skips are not trades and are logged at debug only.

Costs (gas, protocol fee) are recorded on each trade and summed into the
metrics; they are never debited from balances.

The engine is synchronous and never touches the network. Prefetch happens
before ``prepare``, which pins the plan to that window's data; the scheduler owns
that ordering.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from blockbench.backtest.costs import CostModel
from blockbench.backtest.metrics import compute_metrics
from blockbench.backtest.models import BacktestConfig, BacktestResult, EquityPoint, Trade, TradeKind
from blockbench.backtest.operations import (
    BorrowOperation,
    CloseLPOperation,
    CollectFeesOperation,
    CreateLPOperation,
    OperationKind,
    RepayOperation,
    StrategyOperation,
    SupplyOperation,
    SwapOperation,
    lending_assets,
    referenced_assets,
)
from blockbench.backtest.portfolio import EPSILON, LendingPosition, LendingSide, LPPosition, Portfolio
from blockbench.core.cancellation import NEVER, CancellationToken
from blockbench.core.config import Config
from blockbench.core.exceptions import ConfigurationError
from blockbench.core.time import days_between, ensure_utc, tick_times
from blockbench.data.historical import HistoricalDataCache, MarketView

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SimulationPlan:
    config: BacktestConfig
    ticks: tuple[datetime, ...]
    assets: tuple[str, ...]  # priced every tick, quote asset first
    market: MarketView


@dataclass(slots=True)
class SimulationTrace:
    portfolio: Portfolio
    trades: list[Trade] = field(default_factory=list)
    equity_curve: list[EquityPoint] = field(default_factory=list)
    seq: int = 0

    def next_trade_id(self) -> str:
        self.seq += 1
        return f"T{self.seq}"


class _Skip(Exception):
    """Operation is a no-op on this tick."""


@dataclass(slots=True)
class _Tick:
    ts: datetime
    prices: dict[str, float]
    market: MarketView
    trace: SimulationTrace

    @property
    def portfolio(self) -> Portfolio:
        return self.trace.portfolio


class StrategyExecutionEngine:
    def __init__(
        self,
        data: HistoricalDataCache,
        *,
        costs: CostModel | None = None,
        quote_asset: str = "USDC",
        checkpoint_every: int = 50,
        max_ticks: int = 200_000,
        il_reference_price: float = 2000.0,
    ) -> None:
        if checkpoint_every < 1:
            raise ValueError("checkpoint_every must be >= 1")
        self.data = data
        self.costs = costs or CostModel()
        self.quote_asset = quote_asset.upper()
        self.checkpoint_every = checkpoint_every
        self.max_ticks = max_ticks
        self.il_reference_price = il_reference_price
        self._handlers: dict[type, Callable[[Any, _Tick], Trade]] = {
            SwapOperation: self._swap,
            SupplyOperation: self._supply,
            BorrowOperation: self._borrow,
            RepayOperation: self._repay,
            CreateLPOperation: self._create_lp,
            CollectFeesOperation: self._collect_fees,
            CloseLPOperation: self._close_lp,
        }

    @classmethod
    def from_config(cls, config: Config, data: HistoricalDataCache) -> StrategyExecutionEngine:
        return cls(
            data,
            costs=CostModel.from_config(config.costs),
            quote_asset=config.simulation.quote_asset,
            checkpoint_every=config.simulation.checkpoint_every,
            max_ticks=config.simulation.max_ticks,
            il_reference_price=config.metrics.il_reference_price,
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def load_data(self, config: BacktestConfig) -> MarketView:
        """Prefetch every series the run will ask for."""

        assets = [self.quote_asset, *referenced_assets(config.operations)]
        return await self.data.prefetch(config.start, config.end, assets, rate_assets=lending_assets(config.operations))

    def prepare(self, config: BacktestConfig) -> SimulationPlan:
        config.validate_run()
        start, end = ensure_utc(config.start), ensure_utc(config.end)
        expected = int((end - start) / config.tick_interval) + 1
        if expected > self.max_ticks:
            raise ConfigurationError(
                f"window produces {expected} ticks at {config.tick_interval}; limit is {self.max_ticks}"
            )
        assets: dict[str, None] = {self.quote_asset: None}
        for a in referenced_assets(config.operations):
            assets.setdefault(a, None)
        return SimulationPlan(
            config=config,
            ticks=tuple(tick_times(start, end, config.tick_interval)),
            assets=tuple(assets),
            market=self.data.view(start, end),
        )

    def simulate(self, plan: SimulationPlan, *, token: CancellationToken = NEVER) -> SimulationTrace | None:
        """Replay the plan; ``None`` if cancelled at a checkpoint."""

        cfg = plan.config
        trace = SimulationTrace(portfolio=Portfolio.funded(self.quote_asset, cfg.initial_capital))
        for i, ts in enumerate(plan.ticks):
            if i % self.checkpoint_every == 0:
                if token.cancelled:
                    logger.info("simulation_cancelled", extra={"tick": i, "ticks": len(plan.ticks)})
                    return None
                # let other threads in between chunks
                time.sleep(0)

            tick = _Tick(ts=ts, prices=plan.market.prices_at(plan.assets, ts), market=plan.market, trace=trace)
            for op in cfg.operations:
                try:
                    trace.trades.append(self._apply(op, tick))
                except _Skip as e:
                    logger.debug("operation_skipped", extra={"kind": str(op.kind), "tick": i, "reason": str(e)})

            self._accrue(trace.portfolio, ts, tick.prices)
            trace.equity_curve.append(EquityPoint(timestamp=ts, equity=trace.portfolio.mark(tick.prices)))

        return trace

    def finalize(self, plan: SimulationPlan, trace: SimulationTrace) -> BacktestResult:
        cfg = plan.config
        metrics = compute_metrics(
            equity_curve=trace.equity_curve,
            trades=trace.trades,
            initial_capital=cfg.initial_capital,
            periods_per_year=cfg.periods_per_year,
            lp_positions=trace.portfolio.lp_positions,
            reference_price=self.il_reference_price,
        )
        return BacktestResult.build(
            trades=trace.trades,
            equity_curve=trace.equity_curve,
            metrics=metrics,
            portfolio=trace.portfolio,
        )

    def run(self, config: BacktestConfig, *, token: CancellationToken = NEVER) -> BacktestResult | None:
        """Prepare, simulate and finalize in one call. Data must already be loaded."""

        plan = self.prepare(config)
        trace = self.simulate(plan, token=token)
        if trace is None:
            return None
        return self.finalize(plan, trace)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _apply(self, op: StrategyOperation, tick: _Tick) -> Trade:
        handler = self._handlers.get(type(op))
        if handler is None:
            raise TypeError(f"unsupported operation: {type(op).__name__}")
        return handler(op, tick)

    def _trade(
        self,
        tick: _Tick,
        kind: TradeKind,
        op_kind: OperationKind,
        *,
        protocol: str,
        details: dict[str, Any],
        protocol_fee: float = 0.0,
        slippage: float = 0.0,
        pnl: float | None = None,
    ) -> Trade:
        return Trade(
            id=tick.trace.next_trade_id(),
            timestamp=tick.ts,
            kind=kind,
            protocol=protocol,
            details=details,
            gas_cost=self.costs.gas_cost(op_kind),
            protocol_fee=protocol_fee,
            slippage=slippage,
            pnl=pnl,
        )

    @staticmethod
    def _require_balance(p: Portfolio, asset: str, amount: float) -> None:
        have = p.balance(asset)
        if have + EPSILON < amount:
            raise _Skip(f"insufficient {asset}: have {have}, need {amount}")

    def _swap(self, op: SwapOperation, tick: _Tick) -> Trade:
        p = tick.portfolio
        if op.token_in == op.token_out:
            raise _Skip("token_in equals token_out")
        self._require_balance(p, op.token_in, op.amount)
        price_in, price_out = tick.prices[op.token_in], tick.prices[op.token_out]
        if price_out <= 0:
            raise _Skip(f"no price for {op.token_out}")

        slippage = self.costs.effective_slippage_pct(op.amount, op.slippage)
        expected_out = op.amount * price_in / price_out
        amount_out = expected_out * (1.0 - slippage / 100.0)

        p.debit(op.token_in, op.amount)
        p.credit(op.token_out, amount_out)
        return self._trade(
            tick,
            TradeKind.SWAP,
            OperationKind.SWAP,
            protocol="Uniswap",
            details={
                "token_in": op.token_in,
                "token_out": op.token_out,
                "amount_in": op.amount,
                "amount_out": amount_out,
                "expected_out": expected_out,
            },
            protocol_fee=self.costs.swap_fee(op.amount * price_in),
            slippage=slippage,
        )

    def _supply(self, op: SupplyOperation, tick: _Tick) -> Trade:
        p = tick.portfolio
        self._require_balance(p, op.asset, op.amount)
        apy = tick.market.apy_at(op.asset, tick.ts).supply_apy
        p.debit(op.asset, op.amount)
        p.lending_positions.append(
            LendingPosition(side=LendingSide.SUPPLY, asset=op.asset, principal=op.amount, entry_apy=apy, opened_at=tick.ts)
        )
        return self._trade(
            tick,
            TradeKind.SUPPLY,
            OperationKind.SUPPLY,
            protocol="Aave",
            details={"asset": op.asset, "amount": op.amount, "apy": apy},
        )

    def _borrow(self, op: BorrowOperation, tick: _Tick) -> Trade:
        p = tick.portfolio
        collateral = p.balance(self.quote_asset) * tick.prices[self.quote_asset] + p.supply_value(tick.prices)
        capacity = self.costs.ltv * collateral - p.debt_value(tick.prices)
        value = op.amount * tick.prices[op.asset]
        if value > capacity + EPSILON:
            raise _Skip(f"borrow of {value} exceeds capacity {capacity}")

        apy = tick.market.apy_at(op.asset, tick.ts).borrow_apy
        p.credit(op.asset, op.amount)
        p.lending_positions.append(
            LendingPosition(side=LendingSide.BORROW, asset=op.asset, principal=op.amount, entry_apy=apy, opened_at=tick.ts)
        )
        return self._trade(
            tick,
            TradeKind.BORROW,
            OperationKind.BORROW,
            protocol="Aave",
            details={"asset": op.asset, "amount": op.amount, "apy": apy, "capacity": capacity},
        )

    def _repay(self, op: RepayOperation, tick: _Tick) -> Trade:
        p = tick.portfolio
        debts = p.lending(LendingSide.BORROW, op.asset)
        if not debts:
            raise _Skip(f"no {op.asset} debt")
        outstanding = sum(d.amount for d in debts)
        pay = min(op.amount, outstanding)
        self._require_balance(p, op.asset, pay)

        # oldest first; interest before principal
        remaining = pay
        interest_paid = 0.0
        for d in debts:
            if remaining <= 0:
                break
            portion = min(remaining, d.amount)
            on_interest = min(portion, d.accrued_interest)
            d.accrued_interest -= on_interest
            d.principal -= portion - on_interest
            interest_paid += on_interest
            remaining -= portion
            if d.amount <= EPSILON:
                p.lending_positions.remove(d)

        p.debit(op.asset, pay)
        return self._trade(
            tick,
            TradeKind.REPAY,
            OperationKind.REPAY,
            protocol="Aave",
            details={"asset": op.asset, "amount": pay, "interest_paid": interest_paid},
            pnl=-interest_paid * tick.prices[op.asset],
        )

    def _create_lp(self, op: CreateLPOperation, tick: _Tick) -> Trade:
        p = tick.portfolio
        p0, p1 = tick.prices[op.token0], tick.prices[op.token1]
        if p0 <= 0 or p1 <= 0:
            raise _Skip("missing pool price")
        amount0 = op.amount / 2.0 / p0
        amount1 = op.amount / 2.0 / p1
        self._require_balance(p, op.token0, amount0)
        self._require_balance(p, op.token1, amount1)

        p.debit(op.token0, amount0)
        p.debit(op.token1, amount1)
        lp = LPPosition(
            pool_id=f"{op.token0}-{op.token1}-{op.fee_tier}",
            token0=op.token0,
            token1=op.token1,
            notional=op.amount,
            token0_amount=amount0,
            token1_amount=amount1,
            fee_tier=op.fee_tier,
            entry_price=p0 / p1,
            opened_at=tick.ts,
        )
        p.lp_positions.append(lp)
        return self._trade(
            tick,
            TradeKind.LP_CREATE,
            OperationKind.CREATE_LP_POSITION,
            protocol="Uniswap",
            details={
                "pool_id": lp.pool_id,
                "token0_amount": amount0,
                "token1_amount": amount1,
                "notional": op.amount,
                "entry_price": lp.entry_price,
            },
        )

    def _pool_positions(self, p: Portfolio, token0: str, token1: str) -> list[LPPosition]:
        lps = [lp for lp in p.lp_positions if lp.token0 == token0 and lp.token1 == token1]
        if not lps:
            raise _Skip(f"no {token0}/{token1} position")
        return lps

    def _collect_fees(self, op: CollectFeesOperation, tick: _Tick) -> Trade:
        p = tick.portfolio
        lps = self._pool_positions(p, op.token0, op.token1)
        fees0 = sum(lp.fees0 for lp in lps)
        fees1 = sum(lp.fees1 for lp in lps)
        if fees0 <= 0 and fees1 <= 0:
            raise _Skip("nothing to collect")

        value = sum(lp.fees_value(tick.prices) for lp in lps)
        for lp in lps:
            lp.fees0 = lp.fees1 = 0.0
        p.credit(op.token0, fees0)
        p.credit(op.token1, fees1)
        return self._trade(
            tick,
            TradeKind.LP_COLLECT,
            OperationKind.COLLECT_FEES,
            protocol="Uniswap",
            details={"token0": op.token0, "token1": op.token1, "fees0": fees0, "fees1": fees1, "positions": len(lps)},
            pnl=value,
        )

    def _close_lp(self, op: CloseLPOperation, tick: _Tick) -> Trade:
        p = tick.portfolio
        lps = self._pool_positions(p, op.token0, op.token1)
        value = 0.0
        notional = 0.0
        for lp in lps:
            value += lp.value(tick.prices)
            notional += lp.notional
            p.credit(lp.token0, lp.token0_amount + lp.fees0)
            p.credit(lp.token1, lp.token1_amount + lp.fees1)
            p.lp_positions.remove(lp)
        return self._trade(
            tick,
            TradeKind.LP_CLOSE,
            OperationKind.CLOSE_LP_POSITION,
            protocol="Uniswap",
            details={"token0": op.token0, "token1": op.token1, "value": value, "notional": notional, "positions": len(lps)},
            pnl=value - notional,
        )

    # ------------------------------------------------------------------
    # Accrual
    # ------------------------------------------------------------------

    def _accrue(self, p: Portfolio, ts: datetime, prices: dict[str, float]) -> None:
        for pos in p.lending_positions:
            pos.accrue(ts)

        for lp in p.lp_positions:
            days = days_between(lp.last_fee_at or lp.opened_at, ts)
            if days <= 0:
                continue
            earned = (
                lp.principal_value(prices)
                * self.costs.lp_fee_rate(lp.fee_tier)
                * self.costs.lp_daily_volume_ratio
                * days
            )
            lp.fees0 += earned / 2.0 / prices[lp.token0]
            lp.fees1 += earned / 2.0 / prices[lp.token1]
            lp.last_fee_at = ts


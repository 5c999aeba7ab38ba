"""blockbench.backtest.models

Inputs and outputs of a backtest.

``BacktestConfig`` is an IO-boundary pydantic model; the records the engine
emits per tick are frozen dataclasses.
"""

from __future__ import annotations

import copy
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from blockbench.backtest.operations import StrategyOperation, dump_operations
from blockbench.backtest.portfolio import Portfolio
from blockbench.core.exceptions import ConfigurationError
from blockbench.core.time import YEAR, ensure_utc


class TradeKind(StrEnum):
    SWAP = "SWAP"
    SUPPLY = "SUPPLY"
    BORROW = "BORROW"
    REPAY = "REPAY"
    LP_CREATE = "LP_CREATE"
    LP_COLLECT = "LP_COLLECT"
    LP_CLOSE = "LP_CLOSE"


@dataclass(frozen=True, slots=True)
class Trade:
    id: str
    timestamp: datetime
    kind: TradeKind
    protocol: str
    details: dict[str, Any]
    gas_cost: float  # ETH
    protocol_fee: float  # quote currency
    slippage: float  # percent
    pnl: float | None = None  # realized, closing trades only

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        d["kind"] = str(self.kind)
        return d


@dataclass(frozen=True, slots=True)
class EquityPoint:
    timestamp: datetime
    equity: float


@dataclass(frozen=True, slots=True)
class Metrics:
    total_return: float
    total_return_pct: float
    max_drawdown: float
    max_drawdown_pct: float
    sharpe_ratio: float
    win_rate: float
    profit_factor: float
    total_trades: int
    total_gas_spent: float
    total_fees_spent: float
    impermanent_loss: float | None = None

    @classmethod
    def zero(cls) -> Metrics:
        return cls(
            total_return=0.0,
            total_return_pct=0.0,
            max_drawdown=0.0,
            max_drawdown_pct=0.0,
            sharpe_ratio=0.0,
            win_rate=0.0,
            profit_factor=0.0,
            total_trades=0,
            total_gas_spent=0.0,
            total_fees_spent=0.0,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json_dict(self) -> dict[str, Any]:
        """Like ``to_dict`` but JSON-safe: non-finite floats become ``None``."""

        return {k: (None if isinstance(v, float) and not math.isfinite(v) else v) for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Metrics:
        known = {f: d[f] for f in cls.__dataclass_fields__ if f in d}
        if "profit_factor" in known and known["profit_factor"] is None:
            # to_json_dict wrote an infinite factor as null
            known["profit_factor"] = math.inf
        return cls(**{**asdict(cls.zero()), **known})


@dataclass(frozen=True, slots=True)
class BacktestResult:
    trades: tuple[Trade, ...]
    equity_curve: tuple[EquityPoint, ...]
    metrics: Metrics
    final_portfolio: Portfolio = field(compare=False)

    @classmethod
    def build(cls, *, trades: list[Trade], equity_curve: list[EquityPoint], metrics: Metrics, portfolio: Portfolio) -> BacktestResult:
        # detach from the simulation's live objects
        return cls(
            trades=tuple(trades),
            equity_curve=tuple(equity_curve),
            metrics=metrics,
            final_portfolio=copy.deepcopy(portfolio),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "trades": [t.to_dict() for t in self.trades],
            "equity_curve": [{"timestamp": p.timestamp.isoformat(), "equity": p.equity} for p in self.equity_curve],
            "metrics": self.metrics.to_dict(),
            "final_portfolio": self.final_portfolio.to_dict(),
        }


class BacktestConfig(BaseModel):
    """One backtest run: what to replay, over which window, with how much."""

    model_config = ConfigDict(frozen=True)

    operations: list[StrategyOperation] = Field(default_factory=list)
    start: datetime
    end: datetime
    initial_capital: float
    tick_interval: timedelta = timedelta(days=1)

    def validate_run(self) -> None:
        """Raise :class:`ConfigurationError` if the run would be meaningless."""

        if ensure_utc(self.end) < ensure_utc(self.start):
            raise ConfigurationError("empty window: end is before start")
        if not self.initial_capital > 0:
            raise ConfigurationError("initial_capital must be > 0")
        if self.tick_interval <= timedelta(0):
            raise ConfigurationError("tick_interval must be > 0")

    @property
    def periods_per_year(self) -> float:
        return YEAR / self.tick_interval

    def operations_json(self) -> list[dict[str, Any]]:
        return dump_operations(self.operations)

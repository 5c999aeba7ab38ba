"""blockbench.backtest.portfolio

Simulated portfolio state.

Owned by exactly one in-flight simulation and mutated in place by the engine.
Balances never go negative: debt lives in BORROW lending positions and counts
against total value there.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from blockbench.core.time import days_between

# float dust below this is treated as zero when debiting
EPSILON = 1e-12


class LendingSide(StrEnum):
    SUPPLY = "SUPPLY"
    BORROW = "BORROW"


@dataclass(slots=True)
class LendingPosition:
    side: LendingSide
    asset: str
    principal: float
    entry_apy: float  # percent, fixed at open
    opened_at: datetime
    protocol: str = "Aave"
    accrued_interest: float = 0.0
    last_accrued_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.last_accrued_at is None:
            self.last_accrued_at = self.opened_at

    @property
    def amount(self) -> float:
        return self.principal + self.accrued_interest

    def accrue(self, now: datetime) -> float:
        """Simple interest on principal for the time since the last accrual."""

        days = days_between(self.last_accrued_at or self.opened_at, now)
        if days <= 0:
            return 0.0
        interest = self.principal * (self.entry_apy / 100.0) * (days / 365.0)
        self.accrued_interest += interest
        self.last_accrued_at = now
        return interest


@dataclass(slots=True)
class LPPosition:
    pool_id: str
    token0: str
    token1: str
    notional: float  # quote value committed at open
    token0_amount: float
    token1_amount: float
    fee_tier: int
    entry_price: float  # price0 / price1 at open
    opened_at: datetime
    fees0: float = 0.0
    fees1: float = 0.0
    last_fee_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.last_fee_at is None:
            self.last_fee_at = self.opened_at

    def principal_value(self, prices: Mapping[str, float]) -> float:
        return self.token0_amount * prices[self.token0] + self.token1_amount * prices[self.token1]

    def fees_value(self, prices: Mapping[str, float]) -> float:
        return self.fees0 * prices[self.token0] + self.fees1 * prices[self.token1]

    def value(self, prices: Mapping[str, float]) -> float:
        return self.principal_value(prices) + self.fees_value(prices)


@dataclass(slots=True)
class Portfolio:
    balances: dict[str, float] = field(default_factory=dict)
    lp_positions: list[LPPosition] = field(default_factory=list)
    lending_positions: list[LendingPosition] = field(default_factory=list)
    total_value_usd: float = 0.0

    @classmethod
    def funded(cls, asset: str, amount: float) -> Portfolio:
        return cls(balances={asset.upper(): float(amount)}, total_value_usd=float(amount))

    def balance(self, asset: str) -> float:
        return self.balances.get(asset, 0.0)

    def credit(self, asset: str, amount: float) -> None:
        self.balances[asset] = self.balance(asset) + float(amount)

    def debit(self, asset: str, amount: float) -> None:
        remaining = self.balance(asset) - float(amount)
        if remaining < -EPSILON:
            raise ValueError(f"debit would overdraw {asset}: {remaining}")
        self.balances[asset] = max(remaining, 0.0)

    def lending(self, side: LendingSide, asset: str | None = None) -> list[LendingPosition]:
        return [p for p in self.lending_positions if p.side == side and (asset is None or p.asset == asset)]

    def held_assets(self) -> set[str]:
        out = set(self.balances)
        for lp in self.lp_positions:
            out.update((lp.token0, lp.token1))
        out.update(p.asset for p in self.lending_positions)
        return out

    def supply_value(self, prices: Mapping[str, float]) -> float:
        return sum(p.amount * prices[p.asset] for p in self.lending(LendingSide.SUPPLY))

    def debt_value(self, prices: Mapping[str, float]) -> float:
        return sum(p.amount * prices[p.asset] for p in self.lending(LendingSide.BORROW))

    def total_value(self, prices: Mapping[str, float]) -> float:
        tokens = sum(bal * prices[a] for a, bal in self.balances.items())
        lps = sum(lp.value(prices) for lp in self.lp_positions)
        return tokens + lps + self.supply_value(prices) - self.debt_value(prices)

    def mark(self, prices: Mapping[str, float]) -> float:
        self.total_value_usd = self.total_value(prices)
        return self.total_value_usd

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        for lp in d["lp_positions"]:
            lp["opened_at"] = lp["opened_at"].isoformat()
            lp["last_fee_at"] = lp["last_fee_at"].isoformat() if lp["last_fee_at"] else None
        for pos in d["lending_positions"]:
            pos["side"] = str(pos["side"])
            pos["opened_at"] = pos["opened_at"].isoformat()
            pos["last_accrued_at"] = pos["last_accrued_at"].isoformat() if pos["last_accrued_at"] else None
        return d

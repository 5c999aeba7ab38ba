"""blockbench.backtest.costs

Cost model for simulated DeFi execution.

Gas is charged in ETH (units × gas price), protocol fees in the quote
currency, slippage as a percentage of expected output. Numbers are
deliberately coarse: a constant-liquidity pool, a fixed gas price.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from blockbench.backtest.operations import OperationKind
from blockbench.core.config import CostModelConfig, GasUnits

GWEI = 1e-9


def _gas_table(units: GasUnits) -> dict[OperationKind, int]:
    return {
        OperationKind.SWAP: units.swap,
        OperationKind.SUPPLY: units.supply,
        OperationKind.BORROW: units.borrow,
        OperationKind.REPAY: units.repay,
        OperationKind.CREATE_LP_POSITION: units.lp_create,
        OperationKind.COLLECT_FEES: units.lp_collect,
        OperationKind.CLOSE_LP_POSITION: units.lp_close,
    }


@dataclass(frozen=True, slots=True)
class CostModel:
    gas_price_gwei: float = 20.0
    gas_units: dict[OperationKind, int] = field(default_factory=lambda: _gas_table(GasUnits()))
    swap_fee_rate: float = 0.003
    pool_liquidity: float = 1_000_000.0
    price_impact_factor: float = 0.1
    ltv: float = 0.8
    lp_daily_volume_ratio: float = 0.1

    @classmethod
    def from_config(cls, cfg: CostModelConfig) -> CostModel:
        return cls(
            gas_price_gwei=cfg.gas_price_gwei,
            gas_units=_gas_table(cfg.gas),
            swap_fee_rate=cfg.swap_fee_rate,
            pool_liquidity=cfg.pool_liquidity_usd,
            price_impact_factor=cfg.price_impact_factor,
            ltv=cfg.ltv,
            lp_daily_volume_ratio=cfg.lp_daily_volume_ratio,
        )

    def gas_cost(self, kind: OperationKind) -> float:
        """Gas cost in ETH."""

        return self.gas_units[kind] * self.gas_price_gwei * GWEI

    def price_impact_pct(self, amount: float) -> float:
        # linear: impact_factor % of slippage per 1% of pool
        return (amount / self.pool_liquidity) * 100.0 * self.price_impact_factor

    def effective_slippage_pct(self, amount: float, tolerance_pct: float) -> float:
        return max(self.price_impact_pct(amount), tolerance_pct)

    def swap_fee(self, notional: float) -> float:
        return notional * self.swap_fee_rate

    def lp_fee_rate(self, fee_tier: int) -> float:
        # fee tiers are in hundredths of a basis point: 3000 -> 0.3%
        return fee_tier / 1_000_000.0

"""blockbench.core.config

Three config surfaces only:
1) `config/default.yaml` + `config/presets/*.yaml`
2) Environment variables (`BLOCKBENCH_` prefix, `__` for nesting)
3) Keyword overrides in code (tests, embedding)

Everything else is derived.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from blockbench.core.exceptions import ConfigError


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = dict(base)
    for k, v in overlay.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


class GasUnits(BaseModel):
    """Gas units charged per executed operation kind."""

    swap: int = 150_000
    supply: int = 200_000
    borrow: int = 300_000
    repay: int = 200_000
    lp_create: int = 500_000
    lp_collect: int = 100_000
    lp_close: int = 400_000


class CostModelConfig(BaseModel):
    gas_price_gwei: float = 20.0
    gas: GasUnits = Field(default_factory=GasUnits)
    swap_fee_rate: float = 0.003  # 0.3% of input notional
    pool_liquidity_usd: float = 1_000_000.0
    price_impact_factor: float = 0.1  # 0.1% slippage per 1% of pool
    ltv: float = 0.8
    lp_daily_volume_ratio: float = 0.1

    @field_validator("ltv")
    @classmethod
    def ltv_is_a_fraction(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("ltv must be in (0, 1]")
        return v

    @field_validator("pool_liquidity_usd")
    @classmethod
    def liquidity_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("pool_liquidity_usd must be > 0")
        return v


class ApyPair(BaseModel):
    supply: float
    borrow: float


def _default_fallback_prices() -> dict[str, float]:
    return {"USDC": 1.0, "USDT": 1.0, "DAI": 1.0, "WETH": 2300.0, "WBTC": 43000.0}


def _default_fallback_apy() -> dict[str, ApyPair]:
    return {
        "USDC": ApyPair(supply=3.5, borrow=5.2),
        "WETH": ApyPair(supply=1.8, borrow=3.4),
        "DAI": ApyPair(supply=3.2, borrow=4.8),
    }


class DataConfig(BaseModel):
    provider: Literal["subgraph", "csv", "static"] = "subgraph"
    csv_dir: Path = Path("data/series")
    uniswap_subgraph_url: str = "https://api.thegraph.com/subgraphs/name/uniswap/uniswap-v3"
    aave_subgraph_url: str = "https://api.thegraph.com/subgraphs/name/aave/protocol-v3"
    # asset -> Uniswap v3 pool id quoted against a stable
    token_pools: dict[str, str] = Field(default_factory=dict)
    stable_assets: list[str] = ["USDC", "USDT", "DAI"]
    lending_assets: list[str] = ["USDC", "WETH", "DAI"]
    fallback_prices: dict[str, float] = Field(default_factory=_default_fallback_prices)
    fallback_apy: dict[str, ApyPair] = Field(default_factory=_default_fallback_apy)
    default_fallback_price: float = 1.0
    default_fallback_apy: ApyPair = Field(default_factory=lambda: ApyPair(supply=3.0, borrow=5.0))
    cache_ttl_seconds: float = 300.0
    rate_limit_rps: float = 2.0
    max_retries: int = 3
    timeout_s: float = 20.0


class SimulationConfig(BaseModel):
    quote_asset: str = "USDC"
    checkpoint_every: int = 50
    default_tick_interval_hours: float = 24.0
    max_ticks: int = 200_000

    @field_validator("checkpoint_every")
    @classmethod
    def checkpoint_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("checkpoint_every must be >= 1")
        return v


class MetricsConfig(BaseModel):
    # Reference "current" price used by the impermanent-loss estimate.
    il_reference_price: float = 2000.0


class StoreConfig(BaseModel):
    max_backtests_per_strategy: int = 50


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_output: bool = False


class ApiConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 5060
    auth_token: str = ""
    cors_origins: list[str] = []


class Config(BaseSettings):
    """Root configuration. Single source of truth."""

    # Paths
    data_dir: Path = Path("data")
    config_dir: Path = Path("config")

    # Preset selection
    preset: Literal["mainnet", "l2", "custom"] = "mainnet"

    costs: CostModelConfig = Field(default_factory=CostModelConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    simulation: SimulationConfig = Field(default_factory=SimulationConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    model_config = {"env_prefix": "BLOCKBENCH_", "env_nested_delimiter": "__"}

    @property
    def db_path(self) -> Path:
        return self.data_dir / "blockbench.db"

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

        try:
            raw = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Config file is not valid YAML: {path}") from e

        preset_name = raw.get("preset", "mainnet")
        preset_path = path.parent / "presets" / f"{preset_name}.yaml"
        if preset_path.exists():
            preset_data = yaml.safe_load(preset_path.read_text()) or {}
            raw = _deep_merge(preset_data, raw)

        return cls(**raw)

    @classmethod
    def from_repo_defaults(cls, repo_root: Path | None = None) -> Config:
        root = repo_root or Path.cwd()
        user_path = root / "config" / "user.yaml"
        if user_path.exists():
            return cls.from_yaml(user_path)
        return cls.from_yaml(root / "config" / "default.yaml")

"""blockbench.backtest.operations

Strategy operations: a closed set of typed variants.

Each variant carries exactly the fields its kind needs and is validated at the
IO boundary. A strategy with a missing or misnamed field fails to parse; it
never reaches the engine as a silent no-op.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


class OperationKind(StrEnum):
    SWAP = "SWAP"
    SUPPLY = "SUPPLY"
    BORROW = "BORROW"
    REPAY = "REPAY"
    CREATE_LP_POSITION = "CREATE_LP_POSITION"
    COLLECT_FEES = "COLLECT_FEES"
    CLOSE_LP_POSITION = "CLOSE_LP_POSITION"


FeeTier = Literal[500, 3000, 10000]


class _Operation(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("token_in", "token_out", "asset", "token0", "token1", mode="before", check_fields=False)
    @classmethod
    def _upper_symbols(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper()
        return v

    def assets(self) -> tuple[str, ...]:
        return ()


class SwapOperation(_Operation):
    kind: Literal[OperationKind.SWAP] = OperationKind.SWAP
    token_in: str = Field(min_length=1)
    token_out: str = Field(min_length=1)
    amount: float = Field(gt=0, description="Units of token_in")
    slippage: float = Field(default=0.5, ge=0, le=100, description="Tolerance, percent")

    def assets(self) -> tuple[str, ...]:
        return (self.token_in, self.token_out)


class SupplyOperation(_Operation):
    kind: Literal[OperationKind.SUPPLY] = OperationKind.SUPPLY
    asset: str = Field(min_length=1)
    amount: float = Field(gt=0)

    def assets(self) -> tuple[str, ...]:
        return (self.asset,)


class BorrowOperation(_Operation):
    kind: Literal[OperationKind.BORROW] = OperationKind.BORROW
    asset: str = Field(min_length=1)
    amount: float = Field(gt=0)

    def assets(self) -> tuple[str, ...]:
        return (self.asset,)


class RepayOperation(_Operation):
    kind: Literal[OperationKind.REPAY] = OperationKind.REPAY
    asset: str = Field(min_length=1)
    amount: float = Field(gt=0)

    def assets(self) -> tuple[str, ...]:
        return (self.asset,)


class CreateLPOperation(_Operation):
    kind: Literal[OperationKind.CREATE_LP_POSITION] = OperationKind.CREATE_LP_POSITION
    token0: str = Field(min_length=1)
    token1: str = Field(min_length=1)
    amount: float = Field(gt=0, description="Total notional in the quote currency")
    fee_tier: FeeTier = 3000

    @model_validator(mode="after")
    def _distinct_tokens(self) -> CreateLPOperation:
        if self.token0 == self.token1:
            raise ValueError("token0 and token1 must differ")
        return self

    def assets(self) -> tuple[str, ...]:
        return (self.token0, self.token1)


class CollectFeesOperation(_Operation):
    kind: Literal[OperationKind.COLLECT_FEES] = OperationKind.COLLECT_FEES
    token0: str = Field(min_length=1)
    token1: str = Field(min_length=1)

    def assets(self) -> tuple[str, ...]:
        return (self.token0, self.token1)


class CloseLPOperation(_Operation):
    kind: Literal[OperationKind.CLOSE_LP_POSITION] = OperationKind.CLOSE_LP_POSITION
    token0: str = Field(min_length=1)
    token1: str = Field(min_length=1)

    def assets(self) -> tuple[str, ...]:
        return (self.token0, self.token1)


StrategyOperation = Annotated[
    SwapOperation
    | SupplyOperation
    | BorrowOperation
    | RepayOperation
    | CreateLPOperation
    | CollectFeesOperation
    | CloseLPOperation,
    Field(discriminator="kind"),
]

LENDING_KINDS = frozenset({OperationKind.SUPPLY, OperationKind.BORROW, OperationKind.REPAY})

_ADAPTER: TypeAdapter[StrategyOperation] = TypeAdapter(StrategyOperation)
_LIST_ADAPTER: TypeAdapter[list[StrategyOperation]] = TypeAdapter(list[StrategyOperation])


def parse_operation(raw: dict[str, Any]) -> StrategyOperation:
    """Validate one operation dict (raises ``pydantic.ValidationError``)."""

    return _ADAPTER.validate_python(raw)


def parse_operations(raw: list[dict[str, Any]]) -> list[StrategyOperation]:
    return _LIST_ADAPTER.validate_python(raw)


def dump_operations(ops: list[StrategyOperation]) -> list[dict[str, Any]]:
    return _LIST_ADAPTER.dump_python(ops, mode="json")


def referenced_assets(ops: list[StrategyOperation]) -> list[str]:
    """Every asset any operation touches, in first-seen order."""

    seen: dict[str, None] = {}
    for op in ops:
        for a in op.assets():
            seen.setdefault(a, None)
    return list(seen)


def lending_assets(ops: list[StrategyOperation]) -> list[str]:
    seen: dict[str, None] = {}
    for op in ops:
        if op.kind in LENDING_KINDS:
            for a in op.assets():
                seen.setdefault(a, None)
    return list(seen)

"""blockbench.backtest.validation

Pre-run strategy checks.

Parsing already guarantees every operation is well formed on its own. This
module looks at the list as a whole and reports what parsing cannot see:

- errors: the run would be meaningless (nothing to do, swap into itself)
- warnings: the run is legal but probably not what the author meant

Warnings never block a run.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum

from blockbench.backtest.operations import (
    BorrowOperation,
    CreateLPOperation,
    RepayOperation,
    StrategyOperation,
    SupplyOperation,
    SwapOperation,
)

MAX_SANE_SLIPPAGE_PCT = 5.0


class Severity(StrEnum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True, slots=True)
class Issue:
    severity: Severity
    message: str
    index: int | None = None  # operation position, None for strategy-wide


@dataclass(frozen=True, slots=True)
class ValidationReport:
    errors: tuple[Issue, ...] = field(default_factory=tuple)
    warnings: tuple[Issue, ...] = field(default_factory=tuple)

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, object]:
        def _d(i: Issue) -> dict[str, object]:
            return {"severity": str(i.severity), "message": i.message, "index": i.index}

        return {"valid": self.valid, "errors": [_d(i) for i in self.errors], "warnings": [_d(i) for i in self.warnings]}


def validate_strategy(ops: Sequence[StrategyOperation], *, quote_asset: str = "USDC") -> ValidationReport:
    errors: list[Issue] = []
    warnings: list[Issue] = []

    if not ops:
        errors.append(Issue(Severity.ERROR, "strategy has no operations"))
        return ValidationReport(errors=tuple(errors))

    quote = quote_asset.upper()
    borrowed: set[str] = set()
    seen: dict[StrategyOperation, int] = {}

    for i, op in enumerate(ops):
        if isinstance(op, SwapOperation):
            if op.token_in == op.token_out:
                errors.append(Issue(Severity.ERROR, f"swap of {op.token_in} into itself", i))
            if op.slippage > MAX_SANE_SLIPPAGE_PCT:
                warnings.append(Issue(Severity.WARNING, f"slippage tolerance {op.slippage}% is unusually high", i))
        elif isinstance(op, BorrowOperation):
            if not any(isinstance(o, SupplyOperation) for o in ops):
                warnings.append(
                    Issue(Severity.WARNING, f"borrow of {op.asset} with no supply; free {quote} is the only collateral", i)
                )
            borrowed.add(op.asset)
        elif isinstance(op, RepayOperation):
            if op.asset not in borrowed:
                warnings.append(Issue(Severity.WARNING, f"repay of {op.asset} before any borrow of it", i))
        elif isinstance(op, CreateLPOperation):
            if op.token0 == op.token1:
                errors.append(Issue(Severity.ERROR, "LP pair uses the same token twice", i))

        first = seen.setdefault(op, i)
        if first != i:
            warnings.append(Issue(Severity.WARNING, f"operation repeats #{first}", i))

    return ValidationReport(errors=tuple(errors), warnings=tuple(warnings))

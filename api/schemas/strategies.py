from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from blockbench.backtest.operations import StrategyOperation


class StrategyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    operations: list[StrategyOperation]
    author: str = ""
    description: str = ""


class StrategyUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    operations: list[StrategyOperation] | None = None
    description: str | None = None


class StrategyResponse(BaseModel):
    id: str
    name: str
    author: str
    description: str
    operations: list[dict[str, Any]]
    created_at: datetime
    updated_at: datetime
    warnings: list[str] = []


class ValidateRequest(BaseModel):
    operations: list[StrategyOperation]


class ValidateResponse(BaseModel):
    valid: bool
    errors: list[dict[str, Any]]
    warnings: list[dict[str, Any]]


class ForkRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    author: str = "You"


class ForkResponse(BaseModel):
    strategy: StrategyResponse
    fork_of_id: str
    parent_fork_count: int


class ForkNodeResponse(BaseModel):
    id: str
    name: str
    author: str
    sharpe_ratio: float
    children: list[ForkNodeResponse] = []

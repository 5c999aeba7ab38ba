from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class BacktestRequest(BaseModel):
    start: datetime
    end: datetime
    initial_capital: float = Field(default=10_000.0, gt=0)
    tick_interval_hours: float | None = Field(default=None, gt=0)


class BacktestRecordResponse(BaseModel):
    id: str
    strategy_id: str
    created_at: datetime
    config: dict[str, Any]
    metrics: dict[str, Any]
    final_equity: float


class EquityPointResponse(BaseModel):
    timestamp: datetime
    equity: float


class BacktestRunResponse(BaseModel):
    record: BacktestRecordResponse
    equity_curve: list[EquityPointResponse]
    trades: list[dict[str, Any]]

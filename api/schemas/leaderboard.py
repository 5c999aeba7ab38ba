from __future__ import annotations

from pydantic import BaseModel

from api.schemas.strategies import StrategyResponse


class RankedEntryResponse(BaseModel):
    rank: int
    medal: str | None = None
    strategy: StrategyResponse
    sharpe_ratio: float
    total_return: float
    max_drawdown: float
    win_rate: float
    total_trades: int
    fork_count: int
    parent_id: str | None = None

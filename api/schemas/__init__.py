from api.schemas.backtests import BacktestRecordResponse, BacktestRequest, BacktestRunResponse
from api.schemas.common import ErrorResponse
from api.schemas.leaderboard import RankedEntryResponse
from api.schemas.strategies import ForkNodeResponse, ForkRequest, StrategyCreate, StrategyResponse

__all__ = [
    "BacktestRecordResponse",
    "BacktestRequest",
    "BacktestRunResponse",
    "ErrorResponse",
    "ForkNodeResponse",
    "ForkRequest",
    "RankedEntryResponse",
    "StrategyCreate",
    "StrategyResponse",
]

from __future__ import annotations

import logging
from datetime import timedelta

from fastapi import APIRouter, Depends

from api.auth import AuthDep
from api.deps import get_config, get_engine, get_store
from api.errors import ApiError
from api.schemas.backtests import BacktestRecordResponse, BacktestRequest, BacktestRunResponse, EquityPointResponse
from blockbench.backtest.engine import StrategyExecutionEngine
from blockbench.backtest.runner import config_for_strategy, run_backtest, to_record
from blockbench.backtest.scheduler import SimulationScheduler
from blockbench.core.config import Config
from blockbench.core.store import Store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/strategies/{strategy_id}/backtests", dependencies=[AuthDep])


@router.get("", response_model=list[BacktestRecordResponse])
def list_backtests(strategy_id: str, store: Store = Depends(get_store)) -> list[BacktestRecordResponse]:
    store.strategies.require(strategy_id)
    return [BacktestRecordResponse(**r.to_dict()) for r in store.backtests.list_for(strategy_id)]


@router.post("", response_model=BacktestRunResponse, status_code=201)
async def run(
    strategy_id: str,
    payload: BacktestRequest,
    store: Store = Depends(get_store),
    engine: StrategyExecutionEngine = Depends(get_engine),
    config: Config = Depends(get_config),
) -> BacktestRunResponse:
    strategy = store.strategies.require(strategy_id)
    hours = payload.tick_interval_hours or config.simulation.default_tick_interval_hours
    bt_config = config_for_strategy(
        strategy,
        start=payload.start,
        end=payload.end,
        initial_capital=payload.initial_capital,
        tick_interval=timedelta(hours=hours),
    )

    result = await run_backtest(SimulationScheduler(engine), bt_config)
    if result is None:
        raise ApiError(code="backtest.cancelled", message="Backtest was cancelled", status=409)

    record = store.backtests.put(to_record(strategy.id, bt_config, result))
    logger.info("backtest_recorded", extra={"strategy_id": strategy.id, "backtest_id": record.id})
    return BacktestRunResponse(
        record=BacktestRecordResponse(**record.to_dict()),
        equity_curve=[EquityPointResponse(timestamp=p.timestamp, equity=p.equity) for p in result.equity_curve],
        trades=[t.to_dict() for t in result.trades],
    )

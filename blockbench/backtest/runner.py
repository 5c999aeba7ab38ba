"""blockbench.backtest.runner

Wiring for callers that want a result, not a pipeline.

Builds provider → cache → engine from a :class:`Config`, turns a saved
strategy into a :class:`BacktestConfig`, drives one run through a
:class:`SimulationScheduler`, and condenses the result into a storable
record.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from pydantic import ValidationError

from blockbench.backtest.engine import StrategyExecutionEngine
from blockbench.backtest.models import BacktestConfig, BacktestResult
from blockbench.backtest.operations import parse_operations
from blockbench.backtest.scheduler import CompleteEvent, ErrorEvent, SchedulerEvent, SimulationScheduler
from blockbench.core.config import Config
from blockbench.core.exceptions import BacktestFailedError, ConfigurationError
from blockbench.core.store import BacktestRecord, SavedStrategy
from blockbench.core.time import ensure_utc, utc_now
from blockbench.data.historical import HistoricalDataCache
from blockbench.data.provider import DataProvider, build_provider


def build_engine(config: Config, *, provider: DataProvider | None = None) -> StrategyExecutionEngine:
    cache = HistoricalDataCache.from_config(config, provider or build_provider(config))
    return StrategyExecutionEngine.from_config(config, cache)


async def close_engine(engine: StrategyExecutionEngine) -> None:
    aclose = getattr(engine.data.provider, "aclose", None)
    if aclose is not None:
        await aclose()


def config_for_strategy(
    strategy: SavedStrategy,
    *,
    start: datetime,
    end: datetime,
    initial_capital: float,
    tick_interval: timedelta = timedelta(days=1),
) -> BacktestConfig:
    """Parse a stored strategy into a run config; bad operations are a configuration error."""

    try:
        operations = parse_operations(strategy.operations)
    except ValidationError as e:
        raise ConfigurationError(f"strategy {strategy.id} has invalid operations: {e.error_count()} error(s)") from e
    return BacktestConfig(
        operations=operations,
        start=ensure_utc(start),
        end=ensure_utc(end),
        initial_capital=initial_capital,
        tick_interval=tick_interval,
    )


async def run_backtest(
    scheduler: SimulationScheduler,
    config: BacktestConfig,
    *,
    on_event: Callable[[SchedulerEvent], None] | None = None,
) -> BacktestResult | None:
    """Run to a terminal event. ``None`` means cancelled."""

    scheduler.start(config)
    async for event in scheduler.events():
        if on_event is not None:
            on_event(event)
    terminal = await scheduler.wait()

    if isinstance(terminal, CompleteEvent):
        return terminal.result
    if isinstance(terminal, ErrorEvent):
        if terminal.code == "configuration_error":
            raise ConfigurationError(terminal.message)
        raise BacktestFailedError(terminal.message)
    return None


def to_record(strategy_id: str, config: BacktestConfig, result: BacktestResult) -> BacktestRecord:
    final_equity = result.equity_curve[-1].equity if result.equity_curve else config.initial_capital
    return BacktestRecord(
        id=str(uuid.uuid4()),
        strategy_id=strategy_id,
        created_at=utc_now(),
        config={
            "start": ensure_utc(config.start).isoformat(),
            "end": ensure_utc(config.end).isoformat(),
            "initial_capital": config.initial_capital,
            "tick_interval_s": config.tick_interval.total_seconds(),
            "operations": config.operations_json(),
        },
        metrics=result.metrics.to_json_dict(),
        final_equity=float(final_equity),
    )

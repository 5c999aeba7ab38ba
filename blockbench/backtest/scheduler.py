"""blockbench.backtest.scheduler

Simulation scheduler: one backtest at a time, observable and cancellable.

The run is split into fixed stages so the caller always has something to show:

  1 load_data        15%   prefetch series (network, on the event loop)
  2 warm_up          35%   validate and lay out the tick timeline
  3 simulate         60%   replay ticks (worker thread)
  4 compute_metrics  85%
  5 finalize        100%

Every run ends with exactly one terminal event: Complete, Error or Cancelled.
Cancellation is cooperative: the token is checked at every stage boundary and
at the engine's tick checkpoints, and once more right before Complete so a
late cancel never reports success.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import StrEnum

from blockbench.backtest.engine import StrategyExecutionEngine
from blockbench.backtest.models import BacktestConfig, BacktestResult
from blockbench.core.cancellation import CancellationToken
from blockbench.core.exceptions import ConfigurationError, SchedulerBusyError

logger = logging.getLogger(__name__)


class RunState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class Stage:
    step: int
    name: str
    message: str
    percent: int


LOAD_DATA = Stage(1, "load_data", "Loading historical data...", 15)
WARM_UP = Stage(2, "warm_up", "Calculating indicators...", 35)
SIMULATE = Stage(3, "simulate", "Simulating trades...", 60)
COMPUTE_METRICS = Stage(4, "compute_metrics", "Computing metrics...", 85)
FINALIZE = Stage(5, "finalize", "Finalizing results...", 100)

STAGES = (LOAD_DATA, WARM_UP, SIMULATE, COMPUTE_METRICS, FINALIZE)


# ---------------------------------------------------------------------------
# Events (outbound) and commands (inbound)
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    run_id: str
    stage: int
    message: str
    percent: int


@dataclass(frozen=True, slots=True)
class CompleteEvent:
    run_id: str
    result: BacktestResult


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    run_id: str
    message: str
    code: str = "internal_error"


@dataclass(frozen=True, slots=True)
class CancelledEvent:
    run_id: str


SchedulerEvent = ProgressEvent | CompleteEvent | ErrorEvent | CancelledEvent
TerminalEvent = CompleteEvent | ErrorEvent | CancelledEvent


@dataclass(frozen=True, slots=True)
class StartCommand:
    config: BacktestConfig
    run_id: str | None = None


@dataclass(frozen=True, slots=True)
class CancelCommand:
    pass


SchedulerCommand = StartCommand | CancelCommand


def is_terminal(event: SchedulerEvent) -> bool:
    return isinstance(event, CompleteEvent | ErrorEvent | CancelledEvent)


@dataclass(slots=True)
class _Run:
    run_id: str
    config: BacktestConfig
    token: CancellationToken = field(default_factory=CancellationToken)
    queue: asyncio.Queue[SchedulerEvent] = field(default_factory=asyncio.Queue)
    history: list[SchedulerEvent] = field(default_factory=list)
    terminal: TerminalEvent | None = None
    task: asyncio.Task[None] | None = None


class SimulationScheduler:
    """Drives one :class:`StrategyExecutionEngine` run at a time.

    ``listener`` (optional) is called synchronously with every event, on the
    event loop, before the event is queued for :meth:`events`.
    """

    def __init__(
        self,
        engine: StrategyExecutionEngine,
        *,
        listener: Callable[[SchedulerEvent], None] | None = None,
    ) -> None:
        self.engine = engine
        self.listener = listener
        self._run: _Run | None = None
        self._state = RunState.IDLE

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def run_id(self) -> str | None:
        return self._run.run_id if self._run else None

    @property
    def history(self) -> list[SchedulerEvent]:
        return list(self._run.history) if self._run else []

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def send(self, command: SchedulerCommand) -> str | None:
        if isinstance(command, StartCommand):
            return self.start(command.config, run_id=command.run_id)
        if isinstance(command, CancelCommand):
            self.cancel()
            return None
        raise TypeError(f"unsupported command: {type(command).__name__}")

    def start(self, config: BacktestConfig, *, run_id: str | None = None) -> str:
        """Schedule a run on the current event loop and return its id."""

        if self._state == RunState.RUNNING:
            raise SchedulerBusyError(f"run {self.run_id} is still in flight")

        run = _Run(run_id=run_id or uuid.uuid4().hex[:12], config=config)
        self._run = run
        self._state = RunState.RUNNING
        run.task = asyncio.get_running_loop().create_task(self._execute(run))
        logger.info("simulation_started", extra={"run_id": run.run_id, "operations": len(config.operations)})
        return run.run_id

    def cancel(self) -> None:
        run = self._run
        if run is None or self._state != RunState.RUNNING:
            return
        logger.info("simulation_cancel_requested", extra={"run_id": run.run_id})
        run.token.cancel()

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    async def events(self) -> AsyncIterator[SchedulerEvent]:
        """Yield the current run's events up to and including the terminal one."""

        run = self._run
        if run is None:
            return
        while True:
            event = await run.queue.get()
            yield event
            if is_terminal(event):
                return

    async def wait(self) -> TerminalEvent | None:
        run = self._run
        if run is None or run.task is None:
            return None
        try:
            await asyncio.shield(run.task)
        except asyncio.CancelledError:
            if not run.task.cancelled():
                raise
        return run.terminal

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _emit(self, run: _Run, event: SchedulerEvent) -> None:
        if run.terminal is not None:
            return
        if is_terminal(event):
            run.terminal = event  # type: ignore[assignment]
        run.history.append(event)
        if self.listener is not None:
            try:
                self.listener(event)
            except Exception:  # noqa: BLE001 - a bad listener must not kill the run
                logger.exception("scheduler_listener_failed", extra={"run_id": run.run_id})
        run.queue.put_nowait(event)

    def _progress(self, run: _Run, stage: Stage) -> None:
        self._emit(run, ProgressEvent(run_id=run.run_id, stage=stage.step, message=stage.message, percent=stage.percent))

    def _cancelled(self, run: _Run) -> None:
        self._state = RunState.CANCELLED
        self._emit(run, CancelledEvent(run_id=run.run_id))
        logger.info("simulation_cancelled", extra={"run_id": run.run_id})

    async def _execute(self, run: _Run) -> None:
        engine = self.engine
        try:
            run.config.validate_run()

            self._progress(run, LOAD_DATA)
            await engine.load_data(run.config)
            if run.token.cancelled:
                return self._cancelled(run)

            self._progress(run, WARM_UP)
            plan = engine.prepare(run.config)
            if run.token.cancelled:
                return self._cancelled(run)

            self._progress(run, SIMULATE)
            trace = await asyncio.to_thread(engine.simulate, plan, token=run.token)
            if trace is None or run.token.cancelled:
                return self._cancelled(run)

            self._progress(run, COMPUTE_METRICS)
            result = engine.finalize(plan, trace)

            self._progress(run, FINALIZE)
            if run.token.cancelled:
                return self._cancelled(run)

            self._state = RunState.COMPLETED
            self._emit(run, CompleteEvent(run_id=run.run_id, result=result))
            logger.info(
                "simulation_completed",
                extra={
                    "run_id": run.run_id,
                    "trades": result.metrics.total_trades,
                    "total_return_pct": result.metrics.total_return_pct,
                },
            )
        except asyncio.CancelledError:
            # task torn down from outside (shutdown); stop the worker thread too
            run.token.cancel()
            self._cancelled(run)
            raise
        except ConfigurationError as e:
            self._state = RunState.FAILED
            self._emit(run, ErrorEvent(run_id=run.run_id, message=str(e), code="configuration_error"))
            logger.warning("simulation_rejected", extra={"run_id": run.run_id, "error": str(e)})
        except Exception as e:  # noqa: BLE001 - every run ends in a terminal event
            logger.exception("simulation_failed", extra={"run_id": run.run_id})
            self._state = RunState.FAILED
            self._emit(run, ErrorEvent(run_id=run.run_id, message=f"{type(e).__name__}: {e}"))

"""blockbench.core.exceptions

Errors are part of the interface.

Anything a caller is expected to handle lives here. Per-operation problems
inside a simulation (insufficient balance, no collateral) are not errors:
the engine skips the operation and moves on.
"""

from __future__ import annotations


class BlockbenchError(Exception):
    """Base exception for blockbench."""


class ConfigError(BlockbenchError):
    """Settings file is missing, invalid, or inconsistent."""


class ConfigurationError(BlockbenchError):
    """A backtest was configured in a way that makes the run meaningless."""


class DataUnavailableError(BlockbenchError):
    """A data provider could not deliver a series."""


class StoreError(BlockbenchError):
    """Persistence failures: schema, IO, or payload decoding."""


class StrategyNotFoundError(StoreError):
    """No strategy stored under that id."""


class SchedulerBusyError(BlockbenchError):
    """A scheduler instance already has a run in flight."""


class BacktestFailedError(BlockbenchError):
    """A run ended in an error event."""

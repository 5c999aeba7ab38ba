"""blockbench.core

Core primitives: config, errors, time, persistence.

Nothing in here knows what a swap is.
"""

from .config import Config
from .exceptions import BlockbenchError
from .store import Store
from .time import parse_dt, utc_now

__all__ = [
    "BlockbenchError",
    "Config",
    "Store",
    "parse_dt",
    "utc_now",
]

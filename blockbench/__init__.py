"""blockbench: DeFi strategy backtesting and leaderboard core.

A strategy is an ordered list of typed operations (swap, supply, borrow,
provide liquidity). The engine replays them over history, the metrics module
scores the run, and the leaderboard ranks strategies by risk-adjusted return
while tracking who forked whom.
"""

from __future__ import annotations

__all__ = [
    "__version__",
    "DEFAULT_QUOTE_ASSET",
]

__version__ = "0.4.0"

# Every simulated portfolio starts fully in this asset.
DEFAULT_QUOTE_ASSET = "USDC"

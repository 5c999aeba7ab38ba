"""blockbench.leaderboard

Who is winning, and who they copied.
"""

from .ranker import ForkNode, LeaderboardRanker, LeaderboardService, RankedEntry

__all__ = [
    "ForkNode",
    "LeaderboardRanker",
    "LeaderboardService",
    "RankedEntry",
]
